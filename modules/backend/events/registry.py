"""
Event Registry.

In-process dispatch table mapping event names to their handlers.
Each EventRegistry instance is isolated; the process-wide one is owned by
modules.backend.events.broker.

Handlers run concurrently by default. If any handler for an event is
registered with sequential=True, every handler for that event runs one
after another in registration order. A failing handler never stops its
siblings in either mode.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from modules.backend.core.exceptions import DuplicateHandlerError, RegistrationError
from modules.backend.core.logging import get_logger
from modules.backend.events.schemas import (
    Event,
    EventHandler,
    EventOptions,
    HandlerConfig,
    HandlerFailure,
    resolve_handler_id,
)

logger = get_logger(__name__)

HandlerRunner = Callable[[HandlerConfig, Event], Awaitable[None]]


async def invoke_handler(handler: EventHandler, event: Event) -> Any:
    """Call a handler, awaiting the result when it is a coroutine function or returns an awaitable."""
    result = handler(event)
    if inspect.isawaitable(result):
        return await result
    return result


async def _run_directly(config: HandlerConfig, event: Event) -> None:
    await invoke_handler(config.handler, event)


class EventRegistry:
    """Registry of handlers keyed by event name."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[HandlerConfig]] = {}

    def register(self, event_name: str, handler: EventHandler, options: EventOptions) -> str:
        """
        Register a handler for an event.

        Args:
            event_name: Event name in module:action notation
            handler: Sync or async callable taking the Event
            options: Registration options; module is required

        Returns:
            The handler id

        Raises:
            RegistrationError: Invalid event name, handler or options
            DuplicateHandlerError: Handler id already registered for the event
        """
        if not isinstance(event_name, str) or not event_name.strip():
            raise RegistrationError("Event name must be a non-empty string")
        if not callable(handler):
            raise RegistrationError("Handler must be callable")
        if options is None or not options.module:
            raise RegistrationError("Handler options must include a module")

        handler_id = resolve_handler_id(handler, options)
        configs = self._handlers.get(event_name, [])

        if any(config.id == handler_id for config in configs):
            raise DuplicateHandlerError(handler_id, event_name)

        self._handlers[event_name] = configs
        configs.append(HandlerConfig(handler=handler, options=options, id=handler_id))
        logger.debug(
            "Event handler registered",
            extra={"event_name": event_name, "handler_id": handler_id, "module": options.module},
        )
        return handler_id

    def unregister(self, event_name: str, handler_id: str) -> bool:
        """
        Remove a handler.

        Returns:
            True if the handler was found and removed
        """
        configs = self._handlers.get(event_name)
        if not configs:
            return False

        remaining = [config for config in configs if config.id != handler_id]
        if len(remaining) == len(configs):
            return False

        if remaining:
            self._handlers[event_name] = remaining
        else:
            del self._handlers[event_name]

        logger.debug("Event handler unregistered", extra={"event_name": event_name, "handler_id": handler_id})
        return True

    def get_handlers(self, event_name: str) -> list[HandlerConfig]:
        """Get handlers for an event in registration order."""
        return list(self._handlers.get(event_name, []))

    def get_registered_event_names(self) -> list[str]:
        return list(self._handlers)

    def handler_count(self, event_name: str) -> int:
        return len(self._handlers.get(event_name, []))

    def has_handlers(self, event_name: str) -> bool:
        return bool(self._handlers.get(event_name))

    def clear(self) -> None:
        """Remove every registration."""
        self._handlers.clear()

    async def execute_handlers(
        self,
        event_name: str,
        event: Event,
        runner: HandlerRunner | None = None,
    ) -> list[HandlerFailure]:
        """
        Run every handler registered for an event.

        Args:
            event_name: Event to dispatch
            event: The event passed to each handler
            runner: Called as runner(config, event) per handler; defaults to
                invoking the handler directly

        Returns:
            One HandlerFailure per handler that raised, in registration order
        """
        configs = self.get_handlers(event_name)
        if not configs:
            return []

        run = runner or _run_directly
        failures: list[HandlerFailure] = []

        if any(config.options.sequential for config in configs):
            for config in configs:
                try:
                    await run(config, event)
                except Exception as e:
                    failures.append(HandlerFailure(handler_id=config.id, error=e))
            return failures

        results = await asyncio.gather(
            *(run(config, event) for config in configs),
            return_exceptions=True,
        )
        for config, result in zip(configs, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                failures.append(HandlerFailure(handler_id=config.id, error=result))
        return failures
