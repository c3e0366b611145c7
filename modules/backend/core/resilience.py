"""
Resilience Infrastructure.

Circuit breaker listener, retry callback, and the composed retry policy used
for the outbox database dependency. Every transition and retry is logged with
a `resilience_event` field so it can be filtered:

    jq 'select(.resilience_event != null)' logs/system.jsonl

The outbox worker applies the stack in this order (outside-in):
    Circuit Breaker (aiobreaker) → Retry (tenacity) → Call

Usage:
    from modules.backend.core.resilience import create_circuit_breaker, database_retry

    breaker = create_circuit_breaker("event_outbox")

    @database_retry
    async def fetch_pending():
        return await outbox.get_pending_events(limit=100)

    rows = await breaker.call_async(fetch_pending)

Event handlers are protected by their own per-handler breaker in
modules.backend.events.circuit_breaker, which needs an injectable clock and
must surface the handler's original error.
"""

from datetime import timedelta
from typing import Any

import aiobreaker
from sqlalchemy.exc import InterfaceError, OperationalError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from modules.backend.core.logging import get_logger

logger = get_logger(__name__)

# Errors worth retrying: the database was unreachable, not the query wrong.
TRANSIENT_DATABASE_ERRORS = (OperationalError, InterfaceError, ConnectionError, TimeoutError)

RESILIENCE_EVENTS = {
    "open": "circuit_breaker_opened",
    "half-open": "circuit_breaker_half_open",
    "closed": "circuit_breaker_closed",
}


class ResilienceLogger(aiobreaker.CircuitBreakerListener):
    """Circuit breaker listener that emits structured resilience events."""

    def __init__(self, dependency: str) -> None:
        self.dependency = dependency

    def state_change(self, cb: aiobreaker.CircuitBreaker, old_state: Any, new_state: Any) -> None:
        new_str = _state_name(new_state)
        event = RESILIENCE_EVENTS.get(new_str, f"circuit_breaker_{new_str}")
        log_level = "error" if new_str == "open" else "info"

        getattr(logger, log_level)(
            f"Circuit breaker {self.dependency}: {_state_name(old_state)} → {new_str}",
            extra={
                "resilience_event": event,
                "dependency": self.dependency,
                "failure_count": cb.fail_counter,
            },
        )

    def failure(self, cb: aiobreaker.CircuitBreaker, exception: Exception) -> None:
        logger.warning(
            f"Circuit breaker {self.dependency}: failure recorded",
            extra={
                "resilience_event": "circuit_breaker_failure",
                "dependency": self.dependency,
                "failure_count": cb.fail_counter,
                "error": str(exception),
            },
        )


def _state_name(state: Any) -> str:
    """Normalize an aiobreaker state (enum, state object or string) to its name."""
    value = getattr(state, "state", state)
    name = getattr(value, "name", value)
    return str(name).lower().replace("_", "-")


def log_retry(retry_state: Any) -> None:
    """Tenacity before_sleep callback that emits structured retry events.

    Args:
        retry_state: tenacity.RetryCallState instance
    """
    duration_ms = None
    if retry_state.outcome_timestamp and retry_state.start_time:
        duration_ms = round(
            (retry_state.outcome_timestamp - retry_state.start_time) * 1000
        )

    error = None
    if retry_state.outcome and retry_state.outcome.failed:
        error = str(retry_state.outcome.exception())

    fn_name = getattr(retry_state.fn, "__name__", "unknown")

    logger.warning(
        f"Retrying {fn_name} (attempt {retry_state.attempt_number})",
        extra={
            "resilience_event": "retry_attempt",
            "dependency": fn_name,
            "attempt": retry_state.attempt_number,
            "duration_ms": duration_ms,
            "error": error,
        },
    )


def create_circuit_breaker(
    dependency: str,
    fail_max: int = 5,
    timeout_duration: float = 30,
) -> aiobreaker.CircuitBreaker:
    """Create a circuit breaker with structured logging.

    Args:
        dependency: Name of the protected dependency (for logging)
        fail_max: Number of failures before opening
        timeout_duration: Seconds to wait before half-open test

    Returns:
        Configured CircuitBreaker instance
    """
    return aiobreaker.CircuitBreaker(
        fail_max=fail_max,
        timeout_duration=timedelta(seconds=timeout_duration),
        listeners=[ResilienceLogger(dependency)],
    )


database_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
    retry=retry_if_exception_type(TRANSIENT_DATABASE_ERRORS),
    before_sleep=log_retry,
    reraise=True,
)
