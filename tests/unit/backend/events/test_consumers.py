"""Unit tests for event consumers."""

import pytest

from modules.backend.core.exceptions import AllHandlersFailedError
from modules.backend.events.bootstrap import bootstrap, collect_module_handlers
from modules.backend.events.bus import EventBus
from modules.backend.events.consumers.notes import (
    by_event_id,
    handle_note_archived,
    handle_note_created,
    note_activity,
)
from modules.backend.events.registry import EventRegistry
from modules.backend.events.schemas import Event, NoteArchivedPayload, NoteCreatedPayload


@pytest.fixture(autouse=True)
def reset_activity():
    note_activity.reset()
    yield
    note_activity.reset()


@pytest.fixture
def notes_bus(mock_outbox, config_store) -> EventBus:
    bus = EventBus(EventRegistry(), mock_outbox, config_store)
    bootstrap(collect_module_handlers(bus), bus.registry)
    return bus


class TestNoteHandlers:
    @pytest.mark.asyncio
    async def test_created_then_archived(self):
        """Created and archived events should update the activity counts."""
        created = Event.create("notes:note.created", NoteCreatedPayload(note_id="n1", title="T"), "notes")
        archived = Event.create("notes:note.archived", NoteArchivedPayload(note_id="n1"), "notes")

        await handle_note_created(created)
        await handle_note_archived(archived)

        assert note_activity.snapshot() == {"created": 1, "updated": 0, "archived": 1, "active": 0}

    def test_idempotency_key_is_event_id(self):
        event = Event.create("notes:note.created", {}, "notes")

        assert by_event_id(event) == event.metadata.event_id


class TestNoteHandlersThroughBus:
    @pytest.mark.asyncio
    async def test_process_validates_raw_payload(self, notes_bus):
        """Raw JSON payloads should be coerced to the payload model before the handler runs."""
        event = Event.create("notes:note.created", {"note_id": "n1", "title": "Groceries"}, "notes")

        await notes_bus.process(event)

        assert note_activity.created == 1
        assert note_activity.active == {"n1"}

    @pytest.mark.asyncio
    async def test_invalid_payload_fails(self, notes_bus):
        """A payload missing required fields should fail the only handler."""
        event = Event.create("notes:note.created", {"title": "no id"}, "notes")

        with pytest.raises(AllHandlersFailedError):
            await notes_bus.process(event)

        assert note_activity.created == 0

    @pytest.mark.asyncio
    async def test_count_query(self, notes_bus):
        """notes:note.count should answer with the activity snapshot."""
        notes_bus.config_store.set(enable_immediate_processing=True)
        await notes_bus.process(Event.create("notes:note.updated", {"note_id": "n1", "fields_updated": ["title"]}, "notes"))

        response = await notes_bus.query("notes:note.count", {}, "dashboard", timeout=1.0)

        assert response.error is None
        assert response.data == {"created": 0, "updated": 1, "archived": 0, "active": 0}
