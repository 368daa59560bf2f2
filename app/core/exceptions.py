"""
Custom exception hierarchy for TaskPulse.

All application-specific exceptions inherit from TaskPulseError,
enabling catch-all handling at the API layer while allowing
fine-grained handling in the scanner, consumers and limiter.
"""


class TaskPulseError(Exception):
    """Base exception for all TaskPulse application errors."""

    def __init__(self, message: str = "", details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


# ─── Admission Errors ─────────────────────────────────────────


class RateLimitExceededError(TaskPulseError):
    """The caller's token bucket for an operation class is empty."""

    def __init__(self, operation: str, retry_after: float, **kwargs):
        self.operation = operation
        self.retry_after = retry_after
        message = (
            f"Too many '{operation}' requests. "
            f"Retry in {retry_after:.1f} seconds."
        )
        super().__init__(message=message, **kwargs)


class RateLimiterUnavailableError(TaskPulseError):
    """
    The shared bucket store could not be reached and the limiter is
    configured to fail closed.
    """

    def __init__(self, operation: str, retry_after: float = 0, **kwargs):
        self.operation = operation
        self.retry_after = retry_after
        message = f"Rate limiter unavailable for '{operation}'"
        super().__init__(message=message, **kwargs)


# ─── Event Bus Errors ─────────────────────────────────────────


class EventBusError(TaskPulseError):
    """General error talking to the event bus."""

    pass


class PublishError(EventBusError):
    """An event could not be appended to its topic partition."""

    pass


class ConsumeError(EventBusError):
    """Reading, acknowledging or dead-lettering an event failed."""

    pass


class MalformedEventError(EventBusError):
    """A stream entry could not be decoded into an Event."""

    pass


# ─── Delivery Errors ──────────────────────────────────────────


class MailDeliveryError(TaskPulseError):
    """The mail transport rejected or failed to send a digest."""

    pass


# ─── Authentication Errors ────────────────────────────────────


class SessionAuthError(TaskPulseError):
    """Bearer credential presented at WebSocket handshake is unusable."""

    def __init__(self, message: str = "Invalid or expired token", close_code: int = 4001, **kwargs):
        self.close_code = close_code
        super().__init__(message=message, **kwargs)


# ─── Persistence Errors ───────────────────────────────────────


class SnapshotReadError(TaskPulseError):
    """The task snapshot could not be read from the persistence store."""

    pass
