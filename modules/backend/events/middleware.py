"""
Event Handler Middleware.

Cross-cutting stages wrapped around every handler invocation. A stage is

    async def stage(event, handler, options, call_next) -> None

and must either await call_next() exactly once, call call_next.skip(reason)
to short-circuit successfully, or raise. compose_middleware() enforces this
contract with MiddlewareError.

Default pipeline, outermost first:

    logging → validation → idempotency → circuit breaker → timeout → error handling → handler

Each handler runs its pipeline on its own deep copy of the event, so neither
validation coercing event.data nor a handler mutating it in place leaks
into another handler.
"""

import asyncio
import time
import traceback
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic_core import to_jsonable_python

from modules.backend.core.exceptions import EventValidationError, HandlerTimeoutError, MiddlewareError
from modules.backend.core.logging import get_logger, log_context
from modules.backend.events.circuit_breaker import CircuitBreakerRegistry
from modules.backend.events.registry import invoke_handler
from modules.backend.events.schemas import (
    Event,
    EventHandler,
    EventOptions,
    HandlerConfig,
    circuit_breaker_key,
    resolve_handler_id,
)

logger = get_logger(__name__)


class NextFn(Protocol):
    called: bool
    skipped: bool

    async def __call__(self) -> None: ...

    def skip(self, reason: str | None = None) -> None: ...


Middleware = Callable[[Event, EventHandler, EventOptions, NextFn], Awaitable[None]]


class ProcessingLog(Protocol):
    """Idempotency store; implemented by modules.backend.events.outbox.Outbox."""

    async def has_processed(self, handler_name: str, idempotency_key: str) -> bool: ...

    async def record_processed(self, event_id: str, handler_name: str, idempotency_key: str) -> None: ...


class _Next:
    """call_next continuation handed to one stage."""

    def __init__(self, proceed: Callable[[], Awaitable[Any]], stage_name: str) -> None:
        self._proceed = proceed
        self._stage_name = stage_name
        self.called = False
        self.skipped = False
        self.skip_reason: str | None = None

    async def __call__(self) -> None:
        if self.called or self.skipped:
            raise MiddlewareError(f"Middleware {self._stage_name} called call_next() multiple times")
        self.called = True
        await self._proceed()

    def skip(self, reason: str | None = None) -> None:
        if self.called or self.skipped:
            raise MiddlewareError(f"Middleware {self._stage_name} skipped after calling call_next()")
        self.skipped = True
        self.skip_reason = reason


def _stage_name(stage: Middleware) -> str:
    return getattr(stage, "__name__", type(stage).__name__)


def compose_middleware(stages: Sequence[Middleware]) -> Middleware:
    """
    Compose stages into a single middleware.

    The composed middleware is itself a valid stage, so pipelines nest.

    Raises:
        MiddlewareError: A stage called call_next() twice, or returned
            without calling or skipping it
    """
    stages = list(stages)

    async def composed(event: Event, handler: EventHandler, options: EventOptions, call_next: NextFn) -> None:
        async def dispatch(index: int) -> None:
            if index == len(stages):
                await call_next()
                return

            stage = stages[index]
            name = _stage_name(stage)
            next_fn = _Next(lambda: dispatch(index + 1), name)
            await stage(event, handler, options, next_fn)

            if next_fn.skipped:
                skip = getattr(call_next, "skip", None)
                if skip is not None:
                    skip(next_fn.skip_reason)
                return
            if not next_fn.called:
                raise MiddlewareError(f"Middleware {name} returned without calling call_next()")

        await dispatch(0)

    return composed


async def execute_with_middleware(event: Event, config: HandlerConfig, pipeline: Middleware) -> None:
    """Run one handler through the pipeline on its own deep copy of the event."""
    event_copy = event.model_copy(deep=True)

    terminal = _Next(lambda: invoke_handler(config.handler, event_copy), "handler")
    await pipeline(event_copy, config.handler, config.options, terminal)

    if not terminal.called and not terminal.skipped:
        raise MiddlewareError("Pipeline returned without invoking the handler")


# =============================================================================
# Stages
# =============================================================================


async def logging_middleware(
    event: Event, handler: EventHandler, options: EventOptions, call_next: NextFn,
) -> None:
    """Bind event context for everything logged inside the handler and time it."""
    metadata = event.metadata
    with log_context(
        "events",
        event_id=metadata.event_id,
        event_name=metadata.event_name,
        correlation_id=metadata.correlation_id,
        handler=resolve_handler_id(handler, options),
    ):
        start_time = time.perf_counter()
        logger.debug("Event handler started", extra={"module": options.module})

        try:
            await call_next()
        except Exception as e:
            duration_ms = round((time.perf_counter() - start_time) * 1000, 1)
            logger.warning(
                "Event handler failed",
                extra={"duration_ms": duration_ms, "error": str(e), "error_type": type(e).__name__},
            )
            raise

        duration_ms = round((time.perf_counter() - start_time) * 1000, 1)
        logger.info("Event handler completed", extra={"duration_ms": duration_ms})


async def validation_middleware(
    event: Event, handler: EventHandler, options: EventOptions, call_next: NextFn,
) -> None:
    """Validate event.data against options.schema and replace it with the coerced value."""
    if options.schema is None:
        await call_next()
        return

    try:
        event.data = TypeAdapter(options.schema).validate_python(event.data)
    except PydanticValidationError as e:
        logger.warning(
            "Event validation failed",
            extra={"event_id": event.metadata.event_id, "errors": e.error_count()},
        )
        raise EventValidationError(
            f"Event validation failed for {event.metadata.event_name}: {e.error_count()} error(s)",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e

    await call_next()


def create_idempotency_middleware(store: ProcessingLog) -> Middleware:
    """Skip handlers that already succeeded for the event's idempotency key."""

    async def idempotency_middleware(
        event: Event, handler: EventHandler, options: EventOptions, call_next: NextFn,
    ) -> None:
        if options.idempotency_key is None:
            await call_next()
            return

        key = options.idempotency_key(event)
        name = resolve_handler_id(handler, options)

        if await store.has_processed(name, key):
            logger.info(
                "Event already processed, skipping",
                extra={"handler_name": name, "idempotency_key": key},
            )
            call_next.skip("already processed")
            return

        await call_next()
        await store.record_processed(event.metadata.event_id, name, key)

    return idempotency_middleware


def create_circuit_breaker_middleware(breakers: CircuitBreakerRegistry) -> Middleware:
    """Reject calls to handlers whose breaker is open and track their outcomes."""

    async def circuit_breaker_middleware(
        event: Event, handler: EventHandler, options: EventOptions, call_next: NextFn,
    ) -> None:
        await breakers.call(circuit_breaker_key(handler, options), call_next)

    return circuit_breaker_middleware


def create_timeout_middleware(default_timeout: Callable[[], float]) -> Middleware:
    """
    Stop waiting for a handler after options.timeout (or the default) seconds.

    The handler is shielded, not cancelled: it keeps running in the
    background and its eventual failure is logged.
    """

    async def timeout_middleware(
        event: Event, handler: EventHandler, options: EventOptions, call_next: NextFn,
    ) -> None:
        timeout = options.timeout or default_timeout()
        task = asyncio.ensure_future(call_next())

        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except TimeoutError:
            if task.done():
                raise
            task.add_done_callback(_abandoned_handler_callback(event, options, timeout))
            logger.warning(
                "Event handler timed out",
                extra={"event_id": event.metadata.event_id, "module": options.module, "timeout": timeout},
            )
            raise HandlerTimeoutError(timeout) from None

    return timeout_middleware


def _abandoned_handler_callback(
    event: Event, options: EventOptions, timeout: float,
) -> Callable[[asyncio.Future], None]:
    def _on_done(task: asyncio.Future) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Event handler failed after timeout",
                extra={
                    "event_id": event.metadata.event_id,
                    "module": options.module,
                    "timeout": timeout,
                    "error": str(error),
                },
            )
        else:
            logger.info(
                "Event handler completed after timeout",
                extra={"event_id": event.metadata.event_id, "module": options.module, "timeout": timeout},
            )

    return _on_done


async def error_handling_middleware(
    event: Event, handler: EventHandler, options: EventOptions, call_next: NextFn,
) -> None:
    """Log handler failures with full context and re-raise them unchanged."""
    try:
        await call_next()
    except Exception as e:
        logger.error(
            "Event handler error",
            extra={
                "event_id": event.metadata.event_id,
                "event_name": event.metadata.event_name,
                "module": options.module,
                "error": str(e),
                "error_type": type(e).__name__,
                "stack": traceback.format_exc(),
                "payload": to_jsonable_python(event.data, fallback=str),
            },
        )
        raise


def create_default_pipeline(
    processing_log: ProcessingLog,
    breakers: CircuitBreakerRegistry,
    default_timeout: Callable[[], float],
) -> Middleware:
    """Build the standard pipeline used by the event bus."""
    return compose_middleware([
        logging_middleware,
        validation_middleware,
        create_idempotency_middleware(processing_log),
        create_circuit_breaker_middleware(breakers),
        create_timeout_middleware(default_timeout),
        error_handling_middleware,
    ])
