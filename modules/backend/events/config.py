"""
Event System Configuration.

Tunables for the event bus, read from EVENT_* environment variables
(nested sections use a double underscore, e.g.
EVENT_CIRCUIT_BREAKER__FAILURE_THRESHOLD=3). Durations are in seconds;
RetryPolicy.backoff_ms stays in milliseconds.

Usage:
    from modules.backend.events.config import get_event_config, set_event_config

    if get_event_config().enable_immediate_processing:
        ...

    set_event_config(enabled=False)
"""

from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from modules.backend.events.schemas import RetryPolicy


class CircuitBreakerConfig(BaseModel):
    """Per-handler circuit breaker thresholds."""

    failure_threshold: int = Field(default=5, ge=1)
    time_window: float = Field(default=60.0, gt=0)
    recovery_timeout: float = Field(default=30.0, gt=0)


class EventConfig(BaseSettings):
    """Event bus settings with defaults overridable from the environment."""

    enabled: bool = True
    outbox_polling_interval: float = Field(default=5.0, gt=0)
    default_retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    default_timeout: float = Field(default=30.0, gt=0)
    max_event_payload_size: int = Field(default=1024 * 1024, gt=0)
    enable_event_history: bool = True
    enable_immediate_processing: bool = True
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    worker_batch_size: int = Field(default=100, ge=1)
    worker_concurrency: int = Field(default=10, ge=1)
    stuck_timeout_minutes: int = Field(default=30, ge=1)
    stuck_check_interval: float = Field(default=60.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="EVENT_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


_NESTED_SECTIONS = ("default_retry_policy", "circuit_breaker")


class EventConfigStore:
    """Holds the live EventConfig and applies partial updates to it."""

    def __init__(self, config: EventConfig | None = None) -> None:
        self._config = config or EventConfig()

    def get(self) -> EventConfig:
        """Return a copy; mutating it does not affect the store."""
        return self._config.model_copy(deep=True)

    def set(self, **updates: Any) -> EventConfig:
        """
        Merge updates into the current config.

        The nested default_retry_policy and circuit_breaker sections are
        merged field by field, so set(circuit_breaker={"failure_threshold": 3})
        keeps the other breaker settings.

        Returns:
            The updated config (a copy)
        """
        merged = self._config.model_dump()
        for key, value in updates.items():
            if key in _NESTED_SECTIONS and value is not None:
                if isinstance(value, BaseModel):
                    value = value.model_dump(exclude_unset=True)
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
        self._config = EventConfig.model_validate(merged)
        return self.get()

    def reset(self) -> EventConfig:
        """Rebuild the config from defaults and the environment."""
        self._config = EventConfig()
        return self.get()

    @property
    def enabled(self) -> bool:
        return self._config.enabled


_default_store: EventConfigStore | None = None


def get_event_config_store() -> EventConfigStore:
    """Get the process-wide config store (lazy initialization)."""
    global _default_store
    if _default_store is None:
        _default_store = EventConfigStore()
    return _default_store


def get_event_config() -> EventConfig:
    """Get a copy of the current event configuration."""
    return get_event_config_store().get()


def set_event_config(**updates: Any) -> EventConfig:
    """Merge updates into the process-wide event configuration."""
    return get_event_config_store().set(**updates)


def reset_event_config() -> EventConfig:
    """Restore the process-wide event configuration to its defaults."""
    return get_event_config_store().reset()


def is_event_system_enabled() -> bool:
    """Check whether the event system is enabled."""
    return get_event_config_store().enabled
