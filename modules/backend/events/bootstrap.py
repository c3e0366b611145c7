"""
Event Handler Bootstrap.

Registers every module's handlers at startup from a statically assembled
list. A bad entry is logged and counted; it never stops the rest of the
batch from registering.

Usage:
    from modules.backend.events.bootstrap import bootstrap, collect_module_handlers

    result = bootstrap(collect_module_handlers(bus), bus.registry)
"""

from collections.abc import Iterable
from typing import TYPE_CHECKING

from modules.backend.core.exceptions import ApplicationError
from modules.backend.core.logging import get_logger
from modules.backend.events.registry import EventRegistry
from modules.backend.events.schemas import BootstrapResult, HandlerEntry

if TYPE_CHECKING:
    from modules.backend.events.bus import EventBus

logger = get_logger(__name__)


def bootstrap(entries: Iterable[HandlerEntry], registry: EventRegistry) -> BootstrapResult:
    """
    Register a batch of handlers.

    Args:
        entries: Handlers to register
        registry: Target registry

    Returns:
        Counts of registered and failed entries
    """
    entries = list(entries)
    logger.info("Registering event handlers", extra={"count": len(entries)})

    result = BootstrapResult()
    for entry in entries:
        module = getattr(entry.options, "module", None)
        try:
            handler_id = registry.register(entry.event_name, entry.handler, entry.options)
        except ApplicationError as e:
            result.failed += 1
            result.errors.append(f"{entry.event_name}: {e.message}")
            logger.error(
                "Failed to register event handler",
                extra={"event_name": entry.event_name, "module": module, "error": e.message, "code": e.code},
            )
            continue

        result.registered += 1
        logger.info(
            "Event handler registered",
            extra={"event_name": entry.event_name, "module": module, "handler_id": handler_id},
        )

    logger.info(
        "Event handler registration complete",
        extra={"registered": result.registered, "failed": result.failed},
    )
    return result


def collect_module_handlers(bus: "EventBus") -> list[HandlerEntry]:
    """
    Assemble the handler entries of every module.

    New modules add their entries here.
    """
    from modules.backend.events.consumers.notes import NOTE_EVENT_HANDLERS, note_query_handlers

    return [
        *NOTE_EVENT_HANDLERS,
        *note_query_handlers(bus),
    ]
