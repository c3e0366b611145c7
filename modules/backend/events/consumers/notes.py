"""
Note Event Consumer.

Handlers for note domain events, registered at startup by
modules.backend.events.bootstrap. They keep an in-memory activity
projection that the notes:note.count query answers from.

Every note handler is schema-validated and idempotent on the event id, so
an event delivered both immediately and by the outbox worker is counted
once.

This is a reference implementation showing the consumer pattern.
In a real application, the handler would trigger downstream actions
(search indexing, notifications, analytics, etc.).
"""

from typing import TYPE_CHECKING

from modules.backend.core.logging import get_logger
from modules.backend.events.schemas import (
    Event,
    EventOptions,
    HandlerEntry,
    NoteArchivedPayload,
    NoteCreatedPayload,
    NoteUpdatedPayload,
)

if TYPE_CHECKING:
    from modules.backend.events.bus import EventBus

logger = get_logger(__name__)

MODULE = "notes"


class NoteActivity:
    """Counts of note events seen by this process."""

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.created = 0
        self.updated = 0
        self.archived = 0
        self.active: set[str] = set()

    def snapshot(self) -> dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "archived": self.archived,
            "active": len(self.active),
        }


note_activity = NoteActivity()


def by_event_id(event: Event) -> str:
    """Idempotency key: one successful run per handler per event."""
    return event.metadata.event_id


async def handle_note_created(event: Event) -> None:
    """Process a notes:note.created event."""
    payload: NoteCreatedPayload = event.data

    logger.info(
        "Processing note created event",
        extra={
            "note_id": payload.note_id,
            "title": payload.title,
            "correlation_id": event.metadata.correlation_id,
        },
    )

    note_activity.created += 1
    note_activity.active.add(payload.note_id)


async def handle_note_updated(event: Event) -> None:
    """Process a notes:note.updated event."""
    payload: NoteUpdatedPayload = event.data

    logger.info(
        "Processing note updated event",
        extra={
            "note_id": payload.note_id,
            "fields": payload.fields_updated,
            "correlation_id": event.metadata.correlation_id,
        },
    )

    note_activity.updated += 1


async def handle_note_archived(event: Event) -> None:
    """Process a notes:note.archived event."""
    payload: NoteArchivedPayload = event.data

    logger.info(
        "Processing note archived event",
        extra={
            "note_id": payload.note_id,
            "correlation_id": event.metadata.correlation_id,
        },
    )

    note_activity.archived += 1
    note_activity.active.discard(payload.note_id)


NOTE_EVENT_HANDLERS: list[HandlerEntry] = [
    HandlerEntry(
        event_name="notes:note.created",
        handler=handle_note_created,
        options=EventOptions(
            module=MODULE,
            handler_id="notes-activity-created",
            idempotency_key=by_event_id,
            schema=NoteCreatedPayload,
        ),
    ),
    HandlerEntry(
        event_name="notes:note.updated",
        handler=handle_note_updated,
        options=EventOptions(
            module=MODULE,
            handler_id="notes-activity-updated",
            idempotency_key=by_event_id,
            schema=NoteUpdatedPayload,
        ),
    ),
    HandlerEntry(
        event_name="notes:note.archived",
        handler=handle_note_archived,
        options=EventOptions(
            module=MODULE,
            handler_id="notes-activity-archived",
            idempotency_key=by_event_id,
            schema=NoteArchivedPayload,
        ),
    ),
]


def note_query_handlers(bus: "EventBus") -> list[HandlerEntry]:
    """Query handlers that answer through the given bus."""

    async def handle_note_count(event: Event) -> None:
        """Answer notes:note.count with the current activity counts."""
        bus.respond(event.metadata.correlation_id, note_activity.snapshot())

    return [
        HandlerEntry(
            event_name="notes:note.count",
            handler=handle_note_count,
            options=EventOptions(module=MODULE, handler_id="notes-count-query", timeout=5.0),
        ),
    ]
