"""
Handler Circuit Breakers.

One in-memory breaker per handler key ("<module>-<handler id>"), driven by
the circuit breaker middleware stage:

    closed ──(failure_threshold failures within time_window)──▶ open
    open ──(recovery_timeout elapsed, next call)──▶ half-open (one trial call)
    half-open ──success──▶ closed
    half-open ──failure──▶ open

While open, and while a half-open trial call is in flight, calls are
rejected with CircuitOpenError and the handler is not invoked. The
handler's own exception is always re-raised unchanged, which is why this
does not reuse aiobreaker (its tripping call raises its own error).

Transitions are logged with the same resilience_event fields as
modules.backend.core.resilience.ResilienceLogger.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from modules.backend.core.exceptions import CircuitOpenError
from modules.backend.core.logging import get_logger
from modules.backend.core.resilience import RESILIENCE_EVENTS
from modules.backend.events.config import CircuitBreakerConfig

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass
class CircuitBreakerState:
    """Breaker state for one handler key. Times come from the registry clock."""

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: float | None = None
    next_attempt_time: float | None = None
    trial_in_flight: bool = False


def _default_config() -> CircuitBreakerConfig:
    from modules.backend.events.config import get_event_config

    return get_event_config().circuit_breaker


class CircuitBreakerRegistry:
    """
    Per-handler breaker states.

    Args:
        config_provider: Returns the thresholds to apply; read on every
            transition so runtime config changes take effect
        clock: Monotonic clock in seconds, injectable for tests
    """

    def __init__(
        self,
        config_provider: Callable[[], CircuitBreakerConfig] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config_provider = config_provider or _default_config
        self._clock = clock
        self._states: dict[str, CircuitBreakerState] = {}

    def get_state(self, key: str) -> CircuitBreakerState:
        """Get the state for a key, creating a closed breaker on first use."""
        state = self._states.get(key)
        if state is None:
            state = CircuitBreakerState()
            self._states[key] = state
        return state

    def reset(self, key: str | None = None) -> None:
        """Forget one breaker, or all of them."""
        if key is None:
            self._states.clear()
        else:
            self._states.pop(key, None)

    def before_call(self, key: str) -> None:
        """
        Gate a call.

        After recovery_timeout the breaker goes half-open and admits a single
        trial call; it must be settled with record_success() or
        record_failure() before another call is let through.

        Raises:
            CircuitOpenError: The breaker is open and recovery_timeout has not
                elapsed, or a half-open trial call is already in flight
        """
        state = self.get_state(key)
        if state.state == CircuitState.CLOSED:
            return

        if state.state == CircuitState.OPEN:
            now = self._clock()
            if state.next_attempt_time is not None and now < state.next_attempt_time:
                raise CircuitOpenError(key, state.next_attempt_time)
            self._transition(key, state, CircuitState.HALF_OPEN)
        elif state.trial_in_flight:
            raise CircuitOpenError(key, state.next_attempt_time)

        state.trial_in_flight = True

    def record_success(self, key: str) -> None:
        state = self.get_state(key)
        state.trial_in_flight = False
        if state.state == CircuitState.HALF_OPEN:
            self._transition(key, state, CircuitState.CLOSED)
        state.failure_count = 0

    def record_failure(self, key: str, error: BaseException | None = None) -> None:
        config = self._config_provider()
        state = self.get_state(key)
        state.trial_in_flight = False
        now = self._clock()

        if state.state == CircuitState.HALF_OPEN:
            state.failure_count += 1
            state.last_failure_time = now
            state.next_attempt_time = now + config.recovery_timeout
            self._transition(key, state, CircuitState.OPEN)
            return

        if state.last_failure_time is not None and now - state.last_failure_time > config.time_window:
            state.failure_count = 0

        state.failure_count += 1
        state.last_failure_time = now

        logger.warning(
            f"Circuit breaker {key}: failure recorded",
            extra={
                "resilience_event": "circuit_breaker_failure",
                "dependency": key,
                "failure_count": state.failure_count,
                "error": str(error) if error is not None else None,
            },
        )

        if state.state == CircuitState.CLOSED and state.failure_count >= config.failure_threshold:
            state.next_attempt_time = now + config.recovery_timeout
            self._transition(key, state, CircuitState.OPEN)

    async def call(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run fn under the breaker for key.

        Raises:
            CircuitOpenError: fn was not called
            Exception: Whatever fn raised, unchanged
        """
        self.before_call(key)
        try:
            result = await fn()
        except asyncio.CancelledError:
            self.get_state(key).trial_in_flight = False
            raise
        except Exception as e:
            self.record_failure(key, e)
            raise
        self.record_success(key)
        return result

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Plain-dict view of every breaker, for diagnostics."""
        return {
            key: {
                "state": state.state.value,
                "failure_count": state.failure_count,
                "last_failure_time": state.last_failure_time,
                "next_attempt_time": state.next_attempt_time,
                "trial_in_flight": state.trial_in_flight,
            }
            for key, state in self._states.items()
        }

    def _transition(self, key: str, state: CircuitBreakerState, new_state: CircuitState) -> None:
        old_state = state.state
        state.state = new_state
        log_level = "error" if new_state == CircuitState.OPEN else "info"
        getattr(logger, log_level)(
            f"Circuit breaker {key}: {old_state.value} → {new_state.value}",
            extra={
                "resilience_event": RESILIENCE_EVENTS[new_state.value],
                "dependency": key,
                "failure_count": state.failure_count,
                "next_attempt_time": state.next_attempt_time,
            },
        )
