"""
Event System Models.

Four tables back the event bus:

    event_outbox          - durable queue of emitted events (transactional outbox)
    event_dead_letter     - events that exhausted their retry budget
    event_processing_log  - (handler_name, idempotency_key) proof of success
    event_history         - append-only log of every emitted event

Payloads and metadata are stored as JSON so the same models work on
PostgreSQL and SQLite.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from modules.backend.core.utils import utc_now
from modules.backend.models.base import Base, CreatedAtMixin, UUIDMixin


class OutboxStatus(str, Enum):
    """Lifecycle of an outbox row."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class EventOutbox(UUIDMixin, CreatedAtMixin, Base):
    """
    Outbox row for one emitted event.

    Moves pending → processing → completed, or back to pending for a
    retry no earlier than next_attempt_at. Rows that run out of retries
    are replaced by an EventDeadLetter.
    Completed rows are kept for audit.
    """

    __tablename__ = "event_outbox"
    __table_args__ = (
        Index("idx_event_outbox_status_created", "status", "created_at"),
    )

    event_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    event_data: Mapped[Any] = mapped_column(JSON, nullable=True)
    event_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False)
    status: Mapped[str] = mapped_column(
        String(50),
        default=OutboxStatus.PENDING.value,
        nullable=False,
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<EventOutbox(id={self.id}, event_name={self.event_name!r}, status={self.status})>"


class EventDeadLetter(UUIDMixin, Base):
    """Snapshot of an outbox row that exhausted its retries."""

    __tablename__ = "event_dead_letter"

    original_event_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    event_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    event_data: Mapped[Any] = mapped_column(JSON, nullable=True)
    event_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False)
    failed_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<EventDeadLetter(original_event_id={self.original_event_id}, event_name={self.event_name!r})>"


class EventProcessingLog(UUIDMixin, Base):
    """Proof that a handler already succeeded for one idempotency key."""

    __tablename__ = "event_processing_log"
    __table_args__ = (
        UniqueConstraint(
            "handler_name",
            "idempotency_key",
            name="uq_event_processing_log_handler_idempotency",
        ),
    )

    event_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    handler_name: Mapped[str] = mapped_column(String(255), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(500), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)


class EventHistory(UUIDMixin, Base):
    """Observability copy of every emitted event."""

    __tablename__ = "event_history"

    event_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    event_data: Mapped[Any] = mapped_column(JSON, nullable=True)
    event_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False)
    emitted_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False, index=True)
