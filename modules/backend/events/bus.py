"""
Event Bus.

Facade over the registry, the outbox and the middleware pipeline.

    emit()     - fire-and-forget publish; durable once the outbox row is written
    query()    - request/reply on top of emit, paired by correlation id
    respond()  - answer a pending query
    process()  - run every handler for an event (used by the outbox worker)

Usage:
    from modules.backend.events.broker import get_event_bus

    bus = get_event_bus()
    await bus.emit("notes:note.created", {"note_id": note.id}, "notes")

    response = await bus.query("notes:note.count", {}, "dashboard", timeout=2.0)
"""

import asyncio
from typing import Any
from uuid import uuid4

from pydantic_core import to_json
from sqlalchemy import event as sa_event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from modules.backend.core.exceptions import (
    AllHandlersFailedError,
    EventSystemDisabledError,
    PayloadTooLargeError,
    QueryTimeoutError,
)
from modules.backend.core.logging import get_logger
from modules.backend.events.circuit_breaker import CircuitBreakerRegistry
from modules.backend.events.config import EventConfigStore
from modules.backend.events.middleware import Middleware, create_default_pipeline, execute_with_middleware
from modules.backend.events.outbox import Outbox
from modules.backend.events.registry import EventRegistry
from modules.backend.events.schemas import (
    Event,
    EventHandler,
    EventOptions,
    HandlerConfig,
    HandlerFailure,
    QueryResponse,
)

logger = get_logger(__name__)


class EventBus:
    """
    Event bus bound to one registry, outbox and config store.

    Args:
        registry: Handler registry
        outbox: Outbox service used for durability, history and idempotency
        config_store: Live event configuration
        pipeline: Middleware wrapped around every handler; defaults to the
            standard logging → validation → idempotency → circuit breaker →
            timeout → error handling pipeline
        breakers: Circuit breaker states used by the default pipeline
    """

    def __init__(
        self,
        registry: EventRegistry,
        outbox: Outbox,
        config_store: EventConfigStore,
        pipeline: Middleware | None = None,
        breakers: CircuitBreakerRegistry | None = None,
    ) -> None:
        self.registry = registry
        self.outbox = outbox
        self.config_store = config_store
        self.breakers = breakers or CircuitBreakerRegistry(lambda: config_store.get().circuit_breaker)
        self.pipeline = pipeline or create_default_pipeline(
            outbox,
            self.breakers,
            lambda: config_store.get().default_timeout,
        )
        self._pending_queries: dict[str, asyncio.Future[QueryResponse]] = {}
        self._background_tasks: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, event_name: str, handler: EventHandler, options: EventOptions) -> str:
        """Register a handler. See EventRegistry.register()."""
        return self.registry.register(event_name, handler, options)

    def unregister(self, event_name: str, handler_id: str) -> bool:
        return self.registry.unregister(event_name, handler_id)

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    async def emit(
        self,
        event_name: str,
        data: Any,
        source_module: str,
        *,
        correlation_id: str | None = None,
        bypass_outbox: bool = False,
        session: AsyncSession | None = None,
    ) -> Event | None:
        """
        Emit an event.

        Returns once the outbox row is written, not when handlers finish.
        When immediate processing is enabled, handlers are also dispatched
        in the background; their failures are logged, never raised here.

        Args:
            event_name: Event name in module:action notation
            data: JSON-serializable payload
            source_module: Emitting module
            correlation_id: Correlation id to carry; generated when omitted
            bypass_outbox: Skip the durable outbox write
            session: Write the outbox row in the caller's transaction; immediate
                dispatch then waits for that transaction to commit

        Returns:
            The emitted event, or None when the event system is disabled

        Raises:
            PayloadTooLargeError: Serialized payload exceeds max_event_payload_size
        """
        config = self.config_store.get()
        if not config.enabled:
            logger.warning(
                "Event system is disabled, event not emitted",
                extra={"event_name": event_name, "source_module": source_module},
            )
            return None

        payload_size = len(to_json(data))
        if payload_size > config.max_event_payload_size:
            raise PayloadTooLargeError(payload_size, config.max_event_payload_size)

        event = Event.create(event_name, data, source_module, correlation_id)

        if config.enable_event_history:
            await self.outbox.record_history(event)

        if not bypass_outbox:
            await self.outbox.store_in_outbox(
                event,
                max_retries=config.default_retry_policy.max_attempts,
                session=session,
            )

        if config.enable_immediate_processing:
            if session is not None and not bypass_outbox:
                self._dispatch_after_commit(session, event)
            else:
                self._schedule_dispatch(event)

        logger.debug(
            "Event emitted",
            extra={
                "event_id": event.metadata.event_id,
                "event_name": event_name,
                "source_module": source_module,
                "bypass_outbox": bypass_outbox,
            },
        )
        return event

    async def query(
        self,
        event_name: str,
        data: Any,
        source_module: str,
        timeout: float = 5.0,
    ) -> QueryResponse:
        """
        Emit an event and wait for a handler to respond().

        The query bypasses the outbox, so it is answered only when immediate
        processing is enabled.

        Raises:
            EventSystemDisabledError: The event system is disabled
            QueryTimeoutError: No response within timeout seconds
        """
        if not self.config_store.enabled:
            raise EventSystemDisabledError()

        correlation_id = str(uuid4())
        future: asyncio.Future[QueryResponse] = asyncio.get_running_loop().create_future()
        self._pending_queries[correlation_id] = future

        try:
            await self.emit(
                event_name,
                data,
                source_module,
                correlation_id=correlation_id,
                bypass_outbox=True,
            )
            try:
                return await asyncio.wait_for(future, timeout)
            except TimeoutError:
                logger.warning(
                    "Query timed out",
                    extra={"event_name": event_name, "correlation_id": correlation_id, "timeout": timeout},
                )
                raise QueryTimeoutError(event_name, timeout) from None
        finally:
            self._pending_queries.pop(correlation_id, None)

    def respond(self, correlation_id: str, response: Any) -> None:
        """
        Answer a pending query.

        A value that is not a QueryResponse is wrapped as QueryResponse(data=value).
        Responses for unknown or expired queries are logged and dropped.
        """
        future = self._pending_queries.get(correlation_id)
        if future is None or future.done():
            logger.warning("No pending query for response", extra={"correlation_id": correlation_id})
            return

        if not isinstance(response, QueryResponse):
            response = QueryResponse(data=response)
        future.set_result(response)

    def has_pending_query(self, correlation_id: str) -> bool:
        return correlation_id in self._pending_queries

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def process(self, event: Event) -> None:
        """
        Run every handler for an event through the pipeline.

        Mixed outcomes count as success.

        Raises:
            AllHandlersFailedError: Every handler failed
        """
        handler_count, failures = await self._dispatch(event)
        if handler_count == 0:
            logger.warning(
                "No handlers registered for event",
                extra={"event_name": event.metadata.event_name, "event_id": event.metadata.event_id},
            )
            return

        if len(failures) == handler_count:
            raise AllHandlersFailedError(event.metadata.event_name, [f.error for f in failures])

    async def drain(self) -> None:
        """Wait for every in-flight immediate dispatch to finish."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def _run_handler(self, config: HandlerConfig, event: Event) -> None:
        await execute_with_middleware(event, config, self.pipeline)

    async def _dispatch(self, event: Event) -> tuple[int, list[HandlerFailure]]:
        event_name = event.metadata.event_name
        handler_count = self.registry.handler_count(event_name)
        if handler_count == 0:
            return 0, []

        failures = await self.registry.execute_handlers(event_name, event, self._run_handler)

        if failures and len(failures) == handler_count:
            self._respond_with_errors(event.metadata.correlation_id, failures)

        return handler_count, failures

    def _respond_with_errors(self, correlation_id: str, failures: list[HandlerFailure]) -> None:
        if not self.has_pending_query(correlation_id):
            return
        self.respond(
            correlation_id,
            QueryResponse(error="; ".join(str(f.error) for f in failures)),
        )

    async def _dispatch_immediately(self, event: Event) -> None:
        _, failures = await self._dispatch(event)
        for failure in failures:
            logger.warning(
                "Immediate event handler failed",
                extra={
                    "event_id": event.metadata.event_id,
                    "event_name": event.metadata.event_name,
                    "handler_id": failure.handler_id,
                    "error": str(failure.error),
                },
            )

    def _dispatch_after_commit(self, session: AsyncSession, event: Event) -> None:
        """Dispatch once the caller's transaction commits; never if it rolls back."""
        settled = False

        def on_commit(sync_session: Session) -> None:
            nonlocal settled
            if not settled:
                settled = True
                self._schedule_dispatch(event)

        def on_rollback(sync_session: Session) -> None:
            nonlocal settled
            settled = True

        sa_event.listen(session.sync_session, "after_commit", on_commit, once=True)
        sa_event.listen(session.sync_session, "after_rollback", on_rollback, once=True)

    def _schedule_dispatch(self, event: Event) -> None:
        task = asyncio.create_task(
            self._dispatch_immediately(event),
            name=f"event-dispatch-{event.metadata.event_id}",
        )
        self._background_tasks.add(task)
        task.add_done_callback(self._on_dispatch_done)

    def _on_dispatch_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Immediate event dispatch failed",
                extra={"task": task.get_name(), "error": str(error)},
            )
