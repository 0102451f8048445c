"""Error taxonomy shared by the resilience layer."""

from typing import Optional


RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


class RelayError(Exception):
    """Base class for every error raised by hubrelay."""

    retryable = False


class OperationTimeoutError(RelayError, TimeoutError):
    """An operation exceeded its deadline and was cancelled."""

    retryable = True

    def __init__(self, timeout: float):
        super().__init__(f"Operation timed out after {timeout:g}s")
        self.timeout = timeout


class NetworkError(RelayError):
    """The remote service could not be reached."""

    retryable = True


class ApiError(RelayError):
    """The remote service answered with an error status."""

    def __init__(self, status: int, message: str = ""):
        super().__init__(f"API error {status}: {message}" if message else f"API error {status}")
        self.status = status
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.status in RETRYABLE_STATUSES


class ValidationError(RelayError):
    """Bad input or a malformed response. Never retried."""


class CircuitBreakerOpenError(RelayError):
    """The named dependency is known to be down."""

    def __init__(self, name: str, message: Optional[str] = None):
        super().__init__(message or f"Circuit breaker '{name}' is open - service unavailable")
        self.name = name


class MaxRetriesExceededError(RelayError):
    """All attempts of a retryable operation failed."""

    def __init__(self, last_error: BaseException, attempts: int):
        super().__init__(
            f"Max retries exceeded after {attempts} attempts. Last error: {last_error}"
        )
        self.last_error = last_error
        self.attempts = attempts


class OfflineQueueFullError(RelayError):
    """The offline queue reached its capacity."""


def is_transient(error: BaseException) -> bool:
    """Return True if the error says the dependency is unhealthy.

    Exhausted retries are judged by their last underlying error.
    """
    if isinstance(error, MaxRetriesExceededError):
        error = error.last_error
    if isinstance(error, ValidationError):
        return False
    return bool(getattr(error, "retryable", False))
