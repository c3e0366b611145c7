"""
Event Bus Composition Root.

Builds the process-wide event bus with lazy initialization: one registry,
one outbox on the shared database session factory, the default config
store, and every module's handlers registered by bootstrap().

Usage:
    from modules.backend.events.broker import get_event_bus

    bus = get_event_bus()
"""

from modules.backend.core.logging import get_logger
from modules.backend.events.bootstrap import bootstrap, collect_module_handlers
from modules.backend.events.bus import EventBus
from modules.backend.events.config import get_event_config_store
from modules.backend.events.outbox import Outbox
from modules.backend.events.registry import EventRegistry
from modules.backend.events.worker import OutboxWorker

logger = get_logger(__name__)

_bus: EventBus | None = None


def create_event_bus() -> EventBus:
    """Create a new EventBus with module handlers registered.

    Returns:
        Configured EventBus instance
    """
    from modules.backend.core.database import get_session_factory

    bus = EventBus(
        registry=EventRegistry(),
        outbox=Outbox(get_session_factory()),
        config_store=get_event_config_store(),
    )
    result = bootstrap(collect_module_handlers(bus), bus.registry)
    logger.info(
        "Event bus created",
        extra={"handlers_registered": result.registered, "handlers_failed": result.failed},
    )
    return bus


def get_event_bus() -> EventBus:
    """Get the shared event bus (lazy initialization).

    Returns:
        Shared EventBus instance
    """
    global _bus
    if _bus is None:
        _bus = create_event_bus()
    return _bus


def create_event_worker() -> OutboxWorker:
    """Create an outbox worker bound to the shared event bus.

    Run with: python cli.py --service worker
    """
    bus = get_event_bus()
    return OutboxWorker(bus, bus.outbox, bus.config_store)


def reset_event_bus() -> None:
    """Drop the shared bus so the next get_event_bus() builds a fresh one."""
    global _bus
    _bus = None
