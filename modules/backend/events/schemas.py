"""
Event Schemas.

Standardized event envelope and handler registration types.
Every event emitted through the bus is an Event whose metadata carries
identity, origin and the correlation id used for tracing and queries.

Naming convention for event_name: module:action (colon-separated),
e.g. notes:note.created.

Usage:
    from modules.backend.events.schemas import Event, EventOptions

    event = Event.create("notes:note.created", {"note_id": note.id}, "notes")
    options = EventOptions(module="search", idempotency_key=lambda e: e.metadata.event_id)
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from modules.backend.core.utils import utc_now


def _new_id() -> str:
    return str(uuid4())


class EventMetadata(BaseModel):
    """Envelope metadata shared by every event.

    Fields:
        event_id: Unique event identifier (auto-generated UUID)
        event_name: Event name in module:action notation
        timestamp: Emission time, naive UTC
        source_module: Module that emitted the event
        correlation_id: Identifier for tracing and query/respond pairing
        version: Envelope version
    """

    event_id: str = Field(default_factory=_new_id)
    event_name: str
    timestamp: datetime = Field(default_factory=utc_now)
    source_module: str
    correlation_id: str = Field(default_factory=_new_id)
    version: Literal["v1"] = "v1"


class Event(BaseModel):
    """An emitted event: metadata plus an arbitrary JSON-serializable payload."""

    metadata: EventMetadata
    data: Any = None

    @classmethod
    def create(
        cls,
        event_name: str,
        data: Any,
        source_module: str,
        correlation_id: str | None = None,
    ) -> "Event":
        """Build a new event with fresh id and timestamp."""
        metadata = EventMetadata(
            event_name=event_name,
            source_module=source_module,
            correlation_id=correlation_id or _new_id(),
        )
        return cls(metadata=metadata, data=data)


class RetryPolicy(BaseModel):
    """Retry budget and backoff for outbox redelivery."""

    max_attempts: int = Field(default=3, ge=0)
    backoff_ms: int = Field(default=1000, ge=0)
    exponential_backoff: bool = True
    jitter: bool = True


class QueryResponse(BaseModel):
    """Reply to a query; error is set when the query could not be answered."""

    data: Any = None
    error: str | None = None


EventHandler = Callable[[Event], Awaitable[None] | None]


@dataclass
class EventOptions:
    """Registration options for one handler.

    module is required and names the subscribing module. schema may be a
    pydantic model or any type pydantic.TypeAdapter accepts; timeout is in
    seconds.
    """

    module: str
    handler_id: str | None = None
    idempotency_key: Callable[[Event], str] | None = None
    retry_policy: RetryPolicy | None = None
    timeout: float | None = None
    sequential: bool = False
    schema: Any = None


@dataclass
class HandlerConfig:
    """A registered handler together with its options and resolved id."""

    handler: EventHandler
    options: EventOptions
    id: str


@dataclass
class HandlerFailure:
    """One handler's failure as reported by EventRegistry.execute_handlers()."""

    handler_id: str
    error: BaseException


@dataclass
class HandlerEntry:
    """A handler waiting to be registered by bootstrap()."""

    event_name: str
    handler: EventHandler
    options: EventOptions


@dataclass
class BootstrapResult:
    """Outcome of a bootstrap() batch."""

    registered: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


def handler_name(handler: Callable[..., Any]) -> str:
    """Qualified name of a handler callable, used to derive ids."""
    return getattr(handler, "__qualname__", None) or getattr(handler, "__name__", None) or type(handler).__name__


def resolve_handler_id(handler: Callable[..., Any], options: EventOptions) -> str:
    """Registry and idempotency id: explicit handler_id, else module-qualname."""
    return options.handler_id or f"{options.module}-{handler_name(handler)}"


def circuit_breaker_key(handler: Callable[..., Any], options: EventOptions) -> str:
    """Breaker key: module-handler_id, else module-qualname."""
    return f"{options.module}-{options.handler_id or handler_name(handler)}"


# =============================================================================
# Note event payloads
# =============================================================================


class NoteCreatedPayload(BaseModel):
    """Payload of notes:note.created."""

    note_id: str
    title: str


class NoteUpdatedPayload(BaseModel):
    """Payload of notes:note.updated."""

    note_id: str
    fields_updated: list[str] = Field(default_factory=list)


class NoteArchivedPayload(BaseModel):
    """Payload of notes:note.archived."""

    note_id: str
