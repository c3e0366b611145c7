"""
Event Repositories.

Data access layer for the event system tables. Every method runs inside
the caller's session and never commits; modules.backend.events.outbox
decides where a unit of work starts and ends.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, update

from modules.backend.models.event import (
    EventDeadLetter,
    EventHistory,
    EventOutbox,
    EventProcessingLog,
    OutboxStatus,
)
from modules.backend.repositories.base import BaseRepository


class EventOutboxRepository(BaseRepository[EventOutbox]):
    """Repository for outbox rows."""

    model = EventOutbox

    async def get_pending(self, limit: int = 100, now: datetime | None = None) -> list[EventOutbox]:
        """
        Get pending rows, oldest first.

        Args:
            limit: Maximum number of rows to return
            now: When given, rows whose next_attempt_at is still in the
                future are left out

        Returns:
            List of pending outbox rows
        """
        query = select(EventOutbox).where(EventOutbox.status == OutboxStatus.PENDING.value)
        if now is not None:
            query = query.where(
                or_(EventOutbox.next_attempt_at.is_(None), EventOutbox.next_attempt_at <= now)
            )
        result = await self.session.execute(
            query.order_by(EventOutbox.created_at).limit(limit)
        )
        return list(result.scalars().all())

    async def get_stuck(self, older_than: datetime, limit: int = 100) -> list[EventOutbox]:
        """
        Get rows left in processing since before a cutoff.

        Args:
            older_than: Rows claimed at or before this time are stuck
            limit: Maximum number of rows to return

        Returns:
            List of stuck rows, longest-stuck first
        """
        result = await self.session.execute(
            select(EventOutbox)
            .where(EventOutbox.status == OutboxStatus.PROCESSING.value)
            .where(EventOutbox.processed_at <= older_than)
            .order_by(EventOutbox.processed_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def claim(self, id: str, now: datetime) -> bool:
        """
        Conditionally move a row from pending to processing.

        A single UPDATE guarded by status = 'pending', so two workers racing
        for the same row can never both succeed.

        Returns:
            True if this call claimed the row
        """
        result = await self.session.execute(
            update(EventOutbox)
            .where(EventOutbox.id == id)
            .where(EventOutbox.status == OutboxStatus.PENDING.value)
            .values(status=OutboxStatus.PROCESSING.value, processed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_completed(self, id: str, now: datetime) -> None:
        """Set a row to completed."""
        await self.session.execute(
            update(EventOutbox)
            .where(EventOutbox.id == id)
            .values(status=OutboxStatus.COMPLETED.value, processed_at=now)
            .execution_options(synchronize_session=False)
        )

    async def requeue(self, id: str, error_message: str, next_attempt_at: datetime | None = None) -> bool:
        """
        Put a failed row back to pending and spend one retry.

        The increment happens in the UPDATE itself, guarded by the row not
        being completed and still having retries left, so concurrent
        failures each count once.

        Returns:
            True if the row was requeued
        """
        result = await self.session.execute(
            update(EventOutbox)
            .where(EventOutbox.id == id)
            .where(EventOutbox.status != OutboxStatus.COMPLETED.value)
            .where(EventOutbox.retry_count < EventOutbox.max_retries)
            .values(
                status=OutboxStatus.PENDING.value,
                retry_count=EventOutbox.retry_count + 1,
                error_message=error_message,
                processed_at=None,
                next_attempt_at=next_attempt_at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def get_unfinished(self, id: str) -> EventOutbox | None:
        """Get a row unless it is missing or completed."""
        result = await self.session.execute(
            select(EventOutbox)
            .where(EventOutbox.id == id)
            .where(EventOutbox.status != OutboxStatus.COMPLETED.value)
        )
        return result.scalar_one_or_none()

    async def delete_unfinished(self, id: str) -> bool:
        """
        Delete a row unless it is completed.

        Returns:
            True if this call deleted the row
        """
        result = await self.session.execute(
            delete(EventOutbox)
            .where(EventOutbox.id == id)
            .where(EventOutbox.status != OutboxStatus.COMPLETED.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def count_by_status(self) -> dict[str, int]:
        """Count rows per status."""
        result = await self.session.execute(
            select(EventOutbox.status, func.count()).group_by(EventOutbox.status)
        )
        return {status: count for status, count in result.all()}


class EventDeadLetterRepository(BaseRepository[EventDeadLetter]):
    """Repository for dead-lettered events."""

    model = EventDeadLetter

    async def get_by_original_id(self, original_event_id: str) -> EventDeadLetter | None:
        """Get the dead-letter row created from an outbox row, if any."""
        result = await self.session.execute(
            select(EventDeadLetter).where(EventDeadLetter.original_event_id == original_event_id)
        )
        return result.scalar_one_or_none()

    async def get_recent(self, limit: int = 50) -> list[EventDeadLetter]:
        """Get the most recently dead-lettered events."""
        result = await self.session.execute(
            select(EventDeadLetter).order_by(EventDeadLetter.failed_at.desc()).limit(limit)
        )
        return list(result.scalars().all())


class EventProcessingLogRepository(BaseRepository[EventProcessingLog]):
    """Repository for idempotency records."""

    model = EventProcessingLog

    async def exists_for(self, handler_name: str, idempotency_key: str) -> bool:
        """Check whether a handler already succeeded for a key."""
        result = await self.session.execute(
            select(EventProcessingLog.id)
            .where(EventProcessingLog.handler_name == handler_name)
            .where(EventProcessingLog.idempotency_key == idempotency_key)
            .limit(1)
        )
        return result.scalar_one_or_none() is not None


class EventHistoryRepository(BaseRepository[EventHistory]):
    """Repository for the emitted-event history."""

    model = EventHistory

    async def record(self, event_id: str, event_name: str, event_data: Any, metadata: dict[str, Any]) -> EventHistory:
        """Append one emitted event."""
        return await self.create(
            event_id=event_id,
            event_name=event_name,
            event_data=event_data,
            event_metadata=metadata,
        )
