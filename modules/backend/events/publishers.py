"""
Event Publishers.

Domain-specific event publishers. Each publisher wraps EventBus.emit() with
the correct event name and payload schema, so producers never build raw
payload dicts.

Pass the producer's session to write the outbox row in the same
transaction as the change that caused the event.

Usage:
    from modules.backend.events.publishers import NoteEventPublisher

    publisher = NoteEventPublisher(get_event_bus())
    await publisher.note_created(note.id, note.title, session=session)
"""

from typing import TYPE_CHECKING

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from modules.backend.core.logging import get_logger
from modules.backend.events.schemas import (
    Event,
    NoteArchivedPayload,
    NoteCreatedPayload,
    NoteUpdatedPayload,
)

if TYPE_CHECKING:
    from modules.backend.events.bus import EventBus

logger = get_logger(__name__)


class NoteEventPublisher:
    """Publishes note domain events through the event bus."""

    SOURCE_MODULE = "notes"

    EVENT_CREATED = "notes:note.created"
    EVENT_UPDATED = "notes:note.updated"
    EVENT_ARCHIVED = "notes:note.archived"

    def __init__(self, bus: "EventBus") -> None:
        self._bus = bus

    async def note_created(
        self,
        note_id: str,
        title: str,
        correlation_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> Event | None:
        """Publish a notes:note.created event."""
        return await self._publish(
            self.EVENT_CREATED,
            NoteCreatedPayload(note_id=note_id, title=title),
            correlation_id,
            session,
        )

    async def note_updated(
        self,
        note_id: str,
        fields: list[str],
        correlation_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> Event | None:
        """Publish a notes:note.updated event."""
        return await self._publish(
            self.EVENT_UPDATED,
            NoteUpdatedPayload(note_id=note_id, fields_updated=fields),
            correlation_id,
            session,
        )

    async def note_archived(
        self,
        note_id: str,
        correlation_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> Event | None:
        """Publish a notes:note.archived event."""
        return await self._publish(
            self.EVENT_ARCHIVED,
            NoteArchivedPayload(note_id=note_id),
            correlation_id,
            session,
        )

    async def _publish(
        self,
        event_name: str,
        payload: BaseModel,
        correlation_id: str | None,
        session: AsyncSession | None,
    ) -> Event | None:
        event = await self._bus.emit(
            event_name,
            payload.model_dump(mode="json"),
            self.SOURCE_MODULE,
            correlation_id=correlation_id,
            session=session,
        )
        if event is not None:
            logger.debug(
                "Event published",
                extra={"event_name": event_name, "event_id": event.metadata.event_id},
            )
        return event
