"""
Integration Test Fixtures.

Fixtures for integration tests - uses a real database.
These fixtures build on the root conftest.py fixtures.

The outbox opens a session per operation and the worker runs several at
once, so SQLite runs from a temporary file with one connection per
session instead of the shared in-memory connection.
"""

import os
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from modules.backend.events.bus import EventBus
from modules.backend.events.config import EventConfigStore
from modules.backend.events.outbox import Outbox
from modules.backend.events.registry import EventRegistry
from modules.backend.events.worker import OutboxWorker
from modules.backend.models.base import Base


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """
    Create the integration database engine with the event tables.

    For SQLite: a database file under tmp_path, no connection pooling.
    For PostgreSQL: TEST_DATABASE_URL, tables dropped at the end.
    """
    url = os.environ.get("TEST_DATABASE_URL")
    if url is None:
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'events.db'}",
            echo=False,
            poolclass=NullPool,
            connect_args={"timeout": 10},
        )
    else:
        engine = create_async_engine(url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


# =============================================================================
# Event System Fixtures
# =============================================================================


@pytest.fixture
def event_bus(outbox: Outbox, config_store: EventConfigStore) -> EventBus:
    """Event bus on the test database with immediate processing off."""
    return EventBus(EventRegistry(), outbox, config_store)


@pytest.fixture
def outbox_worker(event_bus: EventBus, outbox: Outbox, config_store: EventConfigStore) -> OutboxWorker:
    """Outbox worker that retries without waiting."""
    config_store.set(default_retry_policy={"backoff_ms": 0})
    return OutboxWorker(event_bus, outbox, config_store)

