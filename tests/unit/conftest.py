"""
Unit Test Fixtures.

Fixtures for unit tests - all external dependencies are mocked.
Unit tests should be fast and isolated, never touching real databases.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from modules.backend.events.schemas import Event


# =============================================================================
# Database Mock Fixtures
# =============================================================================


@pytest.fixture
def mock_db_session() -> AsyncMock:
    """
    Mock database session for unit tests.

    Usage:
        def test_repository(mock_db_session: AsyncMock):
            repo = EventOutboxRepository(mock_db_session)
    """
    session = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.flush = AsyncMock()
    session.execute = AsyncMock()
    session.add = MagicMock()
    session.delete = AsyncMock()
    return session


@pytest.fixture
def mock_db_result() -> MagicMock:
    """
    Mock database query result.

    Usage:
        def test_query(mock_db_session, mock_db_result):
            mock_db_result.rowcount = 1
            mock_db_session.execute.return_value = mock_db_result
    """
    result = MagicMock()
    result.scalar_one_or_none = MagicMock(return_value=None)
    result.scalars = MagicMock()
    result.scalars.return_value.all = MagicMock(return_value=[])
    result.rowcount = 0
    return result


# =============================================================================
# Event Fixtures
# =============================================================================


class InMemoryProcessingLog:
    """Processing log kept in a set, standing in for the outbox tables."""

    def __init__(self) -> None:
        self.entries: set[tuple[str, str]] = set()
        self.recorded: list[tuple[str, str, str]] = []

    async def has_processed(self, handler_name: str, idempotency_key: str) -> bool:
        return (handler_name, idempotency_key) in self.entries

    async def record_processed(self, event_id: str, handler_name: str, idempotency_key: str) -> None:
        self.entries.add((handler_name, idempotency_key))
        self.recorded.append((event_id, handler_name, idempotency_key))


@pytest.fixture
def processing_log() -> InMemoryProcessingLog:
    """In-memory idempotency store."""
    return InMemoryProcessingLog()


@pytest.fixture
def make_event():
    """
    Factory for events.

    Usage:
        event = make_event("notes:note.created", {"note_id": "n1"})
    """

    def _make(event_name: str = "test:thing.happened", data=None, source_module: str = "test", correlation_id=None) -> Event:
        return Event.create(event_name, data if data is not None else {}, source_module, correlation_id)

    return _make


@pytest.fixture
def mock_outbox() -> MagicMock:
    """Outbox with every coroutine method mocked."""
    outbox = MagicMock()
    outbox.store_in_outbox = AsyncMock(return_value="outbox-id")
    outbox.record_history = AsyncMock()
    outbox.has_processed = AsyncMock(return_value=False)
    outbox.record_processed = AsyncMock()
    outbox.get_pending_events = AsyncMock(return_value=[])
    outbox.get_outbox_event = AsyncMock(return_value=None)
    outbox.get_stuck_events = AsyncMock(return_value=[])
    outbox.mark_as_processing = AsyncMock(return_value=True)
    outbox.mark_as_completed = AsyncMock()
    outbox.mark_as_failed = AsyncMock(return_value=True)
    return outbox


# =============================================================================
# Logging Mock Fixtures
# =============================================================================


@pytest.fixture
def mock_logger() -> MagicMock:
    """
    Mock logger for testing logging calls.

    Usage:
        def test_logging(mock_logger):
            with patch("module.logger", mock_logger):
                mock_logger.info.assert_called_once()
    """
    logger = MagicMock()
    logger.debug = MagicMock()
    logger.info = MagicMock()
    logger.warning = MagicMock()
    logger.error = MagicMock()
    logger.exception = MagicMock()
    return logger
