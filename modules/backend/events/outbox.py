"""
Transactional Outbox.

Durable store for emitted events. An event is written to event_outbox
before any handler runs; the worker claims pending rows with a conditional
UPDATE, replays them through the bus and marks the outcome. Rows that
exhaust their retries move to event_dead_letter.

Each operation is its own unit of work and commits, unless the caller
passes a session, in which case the caller commits. That is how a producer
writes the outbox row in the same transaction as its own changes:

    async with session_factory() as session:
        session.add(note)
        await outbox.store_in_outbox(event, session=session)
        await session.commit()
"""

import math
import random
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

from pydantic_core import to_jsonable_python
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from modules.backend.core.logging import get_logger
from modules.backend.core.utils import utc_now
from modules.backend.events.schemas import Event, EventMetadata
from modules.backend.models.event import EventDeadLetter, EventOutbox, EventProcessingLog
from modules.backend.repositories.event import (
    EventDeadLetterRepository,
    EventHistoryRepository,
    EventOutboxRepository,
    EventProcessingLogRepository,
)

logger = get_logger(__name__)

DEFAULT_FAILURE_REASON = "Max retries exceeded"


def calculate_backoff_delay(
    retry_count: int,
    base_delay_ms: int = 1000,
    max_delay_ms: int = 60000,
    jitter: bool = True,
) -> int:
    """
    Exponential backoff delay in milliseconds.

    min(base * 2**retry_count, max), plus a uniform offset of up to ±10%
    when jitter is set, floored to an integer.
    """
    delay = min(base_delay_ms * (2 ** retry_count), max_delay_ms)
    if jitter:
        delay += delay * 0.1 * (random.random() * 2 - 1)
    return math.floor(delay)


class Outbox:
    """
    Outbox, dead-letter, processing-log and history operations.

    Args:
        session_factory: Async session factory bound to the event tables
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _unit_of_work(self, session: AsyncSession | None = None) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
            return

        async with self._session_factory() as own_session:
            try:
                yield own_session
                await own_session.commit()
            except Exception:
                await own_session.rollback()
                raise

    # -------------------------------------------------------------------------
    # Outbox
    # -------------------------------------------------------------------------

    async def store_in_outbox(
        self,
        event: Event,
        max_retries: int = 3,
        session: AsyncSession | None = None,
    ) -> str:
        """
        Insert a pending outbox row for an event.

        Returns:
            The outbox row id
        """
        async with self._unit_of_work(session) as s:
            record = await EventOutboxRepository(s).create(
                event_name=event.metadata.event_name,
                event_data=to_jsonable_python(event.data),
                event_metadata=event.metadata.model_dump(mode="json"),
                status="pending",
                retry_count=0,
                max_retries=max_retries,
            )
            record_id = record.id

        logger.debug(
            "Event stored in outbox",
            extra={"outbox_id": record_id, "event_id": event.metadata.event_id},
        )
        return record_id

    async def get_pending_events(self, limit: int = 100) -> list[EventOutbox]:
        """Get pending rows whose retry delay has passed, oldest first."""
        async with self._session_factory() as s:
            return await EventOutboxRepository(s).get_pending(limit, now=utc_now())

    async def get_outbox_event(self, id: str) -> EventOutbox | None:
        async with self._session_factory() as s:
            return await EventOutboxRepository(s).get_by_id_or_none(id)

    async def mark_as_processing(self, id: str) -> bool:
        """
        Claim a pending row.

        Returns:
            True if this caller now owns the row
        """
        async with self._unit_of_work() as s:
            return await EventOutboxRepository(s).claim(id, utc_now())

    async def mark_as_completed(self, id: str) -> None:
        async with self._unit_of_work() as s:
            await EventOutboxRepository(s).mark_completed(id, utc_now())

    async def mark_as_failed(self, id: str, error_message: str, retry_delay_ms: int = 0) -> bool:
        """
        Record a failed processing attempt.

        Requeues the row, spending one retry, or moves it to the dead-letter
        table once its retries are used up. A completed row is left alone.

        Args:
            id: Outbox row id
            error_message: Why the attempt failed
            retry_delay_ms: The requeued row is not returned by
                get_pending_events() until this much time has passed

        Returns:
            True if the row was requeued for another attempt; False if it
            does not exist, is completed, or was moved to the dead-letter table
        """
        next_attempt_at = None
        if retry_delay_ms > 0:
            next_attempt_at = utc_now() + timedelta(milliseconds=retry_delay_ms)

        async with self._unit_of_work() as s:
            outbox = EventOutboxRepository(s)
            requeued = await outbox.requeue(id, error_message, next_attempt_at)
            dead_letter_fields = None
            if not requeued:
                record = await outbox.get_unfinished(id)
                if record is not None and await self._dead_letter(s, record, error_message):
                    dead_letter_fields = self._dead_letter_fields(record, error_message)

        if requeued:
            logger.info(
                "Outbox event requeued",
                extra={"outbox_id": id, "error": error_message, "retry_delay_ms": retry_delay_ms},
            )
        elif dead_letter_fields is not None:
            logger.warning("Event moved to dead letter queue", extra=dead_letter_fields)
        return requeued

    async def move_to_dead_letter(self, record: EventOutbox, failure_reason: str | None = None) -> bool:
        """
        Move a row to the dead-letter table in one transaction.

        The outbox row is removed only if it is not completed, and the
        dead-letter row is written only by the call that removed it, so
        repeating the move is harmless.

        Returns:
            True if this call moved the row
        """
        reason = failure_reason or record.error_message
        fields = self._dead_letter_fields(record, reason)
        async with self._unit_of_work() as s:
            moved = await self._dead_letter(s, record, reason)

        if moved:
            logger.warning("Event moved to dead letter queue", extra=fields)
        return moved

    @staticmethod
    async def _dead_letter(session: AsyncSession, record: EventOutbox, reason: str | None) -> bool:
        if not await EventOutboxRepository(session).delete_unfinished(record.id):
            return False

        dead_letters = EventDeadLetterRepository(session)
        if await dead_letters.get_by_original_id(record.id) is None:
            await dead_letters.create(
                original_event_id=record.id,
                event_name=record.event_name,
                event_data=record.event_data,
                event_metadata=record.event_metadata,
                failure_reason=reason or DEFAULT_FAILURE_REASON,
                retry_count=record.retry_count,
                failed_at=utc_now(),
            )
        return True

    @staticmethod
    def _dead_letter_fields(record: EventOutbox, reason: str | None) -> dict[str, Any]:
        return {
            "outbox_id": record.id,
            "event_name": record.event_name,
            "retry_count": record.retry_count,
            "error": reason,
        }

    async def get_stuck_events(self, timeout_minutes: int = 30, limit: int = 100) -> list[EventOutbox]:
        """Get rows left in processing for longer than timeout_minutes."""
        threshold = utc_now() - timedelta(minutes=timeout_minutes)
        async with self._session_factory() as s:
            return await EventOutboxRepository(s).get_stuck(threshold, limit)

    async def get_status_counts(self) -> dict[str, int]:
        async with self._session_factory() as s:
            return await EventOutboxRepository(s).count_by_status()

    @staticmethod
    def calculate_backoff_delay(
        retry_count: int,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 60000,
        jitter: bool = True,
    ) -> int:
        return calculate_backoff_delay(retry_count, base_delay_ms, max_delay_ms, jitter)

    @staticmethod
    def reconstruct_event(record: EventOutbox) -> Event:
        """Rebuild the Event envelope from a stored row."""
        return Event(
            metadata=EventMetadata.model_validate(record.event_metadata),
            data=record.event_data,
        )

    # -------------------------------------------------------------------------
    # Dead letters
    # -------------------------------------------------------------------------

    async def get_dead_letters(self, limit: int = 50) -> list[EventDeadLetter]:
        async with self._session_factory() as s:
            return await EventDeadLetterRepository(s).get_recent(limit)

    async def count_dead_letters(self) -> int:
        async with self._session_factory() as s:
            return await EventDeadLetterRepository(s).count()

    # -------------------------------------------------------------------------
    # Processing log (idempotency)
    # -------------------------------------------------------------------------

    async def has_processed(self, handler_name: str, idempotency_key: str) -> bool:
        async with self._session_factory() as s:
            return await EventProcessingLogRepository(s).exists_for(handler_name, idempotency_key)

    async def record_processed(self, event_id: str, handler_name: str, idempotency_key: str) -> None:
        """
        Record a successful handler run.

        A concurrent run that recorded the same pair first wins; the unique
        constraint violation is treated as already recorded.
        """
        async with self._session_factory() as s:
            s.add(
                EventProcessingLog(
                    event_id=event_id,
                    handler_name=handler_name,
                    idempotency_key=idempotency_key,
                )
            )
            try:
                await s.commit()
            except IntegrityError:
                await s.rollback()
                logger.debug(
                    "Processing log entry already exists",
                    extra={"handler_name": handler_name, "idempotency_key": idempotency_key},
                )

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    async def record_history(self, event: Event) -> None:
        """Append an emitted event to the history table. Failures are logged, never raised."""
        try:
            async with self._unit_of_work() as s:
                await EventHistoryRepository(s).record(
                    event_id=event.metadata.event_id,
                    event_name=event.metadata.event_name,
                    event_data=to_jsonable_python(event.data),
                    metadata=event.metadata.model_dump(mode="json"),
                )
        except Exception as e:
            logger.error(
                "Failed to record event history",
                extra={"event_id": event.metadata.event_id, "error": str(e)},
            )
