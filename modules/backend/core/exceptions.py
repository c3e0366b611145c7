"""
Custom Exceptions.

Application-specific exception classes for consistent error handling.
Event system errors carry an EVT_* code so callers can tell a handler that
was never attempted (circuit open, validation) from one that actually failed.
"""


class ApplicationError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, code: str = "SYS_INTERNAL_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


class ValidationError(ApplicationError):
    """Raised when validation fails."""

    def __init__(self, message: str = "Validation failed", details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message, code="VAL_VALIDATION_ERROR")


# =============================================================================
# Event system
# =============================================================================


class RegistrationError(ApplicationError):
    """Raised when a handler registration is rejected."""

    def __init__(self, message: str, code: str = "EVT_REGISTRATION_INVALID") -> None:
        super().__init__(message, code=code)


class DuplicateHandlerError(RegistrationError):
    """Raised when a handler id is already registered for an event name."""

    def __init__(self, handler_id: str, event_name: str) -> None:
        self.handler_id = handler_id
        self.event_name = event_name
        super().__init__(
            f'Handler with ID "{handler_id}" already registered for event "{event_name}"',
            code="EVT_HANDLER_DUPLICATE",
        )


class EventValidationError(ValidationError):
    """Raised when an event payload fails its handler's schema."""

    def __init__(self, message: str = "Event validation failed", details: dict | None = None) -> None:
        super().__init__(message, details=details)
        self.code = "EVT_VALIDATION_FAILED"


class MiddlewareError(ApplicationError):
    """Raised when a middleware stage breaks the call_next() contract."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="EVT_PIPELINE_INVALID")


class CircuitOpenError(ApplicationError):
    """Raised instead of calling a handler whose circuit is open."""

    def __init__(self, handler_key: str, next_attempt_at: float) -> None:
        self.handler_key = handler_key
        self.next_attempt_at = next_attempt_at
        super().__init__(
            f"Circuit breaker is open for handler {handler_key}",
            code="EVT_CIRCUIT_OPEN",
        )


class HandlerTimeoutError(ApplicationError):
    """Raised when the pipeline stops waiting for a slow handler.

    The handler itself may still be running.
    """

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Handler timeout after {timeout}s", code="EVT_HANDLER_TIMEOUT")


class PayloadTooLargeError(ApplicationError):
    """Raised when an emitted payload exceeds the configured size cap."""

    def __init__(self, size: int, max_size: int) -> None:
        self.size = size
        self.max_size = max_size
        super().__init__(
            f"Event payload exceeds maximum size: {size} bytes (max: {max_size})",
            code="EVT_PAYLOAD_TOO_LARGE",
        )


class QueryTimeoutError(ApplicationError):
    """Raised when a query receives no response in time."""

    def __init__(self, event_name: str, timeout: float) -> None:
        self.event_name = event_name
        self.timeout = timeout
        super().__init__(
            f"Query timeout after {timeout}s for event: {event_name}",
            code="EVT_QUERY_TIMEOUT",
        )


class AllHandlersFailedError(ApplicationError):
    """Raised by process() when every handler for an event failed."""

    def __init__(self, event_name: str, errors: list[BaseException]) -> None:
        self.event_name = event_name
        self.errors = errors
        joined = "; ".join(str(e) for e in errors)
        super().__init__(
            f"All handlers failed for event {event_name}: {joined}",
            code="EVT_ALL_HANDLERS_FAILED",
        )


class EventSystemDisabledError(ApplicationError):
    """Raised when a query is attempted while the event system is disabled."""

    def __init__(self, message: str = "Event system is disabled") -> None:
        super().__init__(message, code="EVT_DISABLED")
