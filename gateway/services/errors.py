"""
Service layer exceptions.

Retry eligibility is decided from these types (see services.retry), never
from exception messages.
"""

from datetime import datetime


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class InvalidArgumentError(ServiceError):
    """A cache key, value or TTL was rejected."""

    pass


class CircuitOpenError(ServiceError):
    """Circuit breaker is open, request blocked."""

    def __init__(
        self,
        service_id: str,
        next_attempt_at: datetime | None,
        reset_after_seconds: float = 0.0,
    ):
        self.next_attempt_at = next_attempt_at
        self.reset_after_seconds = reset_after_seconds
        super().__init__(
            f"Circuit breaker open for service '{service_id}', "
            f"retry after {self.reset_after_seconds:.1f}s",
            service_id=service_id,
        )


class OperationFailedError(ServiceError):
    """Retries exhausted or a non-retryable failure occurred."""

    def __init__(self, service_id: str, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Operation for service '{service_id}' failed after {attempts} "
            f"attempt(s): {type(last_error).__name__}: {last_error}",
            service_id=service_id,
        )


class OperationCancelledError(ServiceError):
    """Caller cancelled the operation while it was waiting or retrying."""

    def __init__(self, service_id: str):
        super().__init__(
            f"Operation for service '{service_id}' was cancelled",
            service_id=service_id,
        )


class TransientError(ServiceError):
    """Network-level failure worth retrying."""

    pass


class RequestTimeoutError(TransientError):
    """Request timed out."""

    def __init__(self, service_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Request to service '{service_id}' timed out after {timeout}s",
            service_id=service_id,
        )


class UpstreamStatusError(ServiceError):
    """Upstream answered with a non-success HTTP status."""

    def __init__(self, service_id: str, status_code: int, reason: str = ""):
        self.status_code = status_code
        self.reason = reason
        msg = f"HTTP {status_code}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, service_id=service_id)


class RateLimitError(UpstreamStatusError):
    """Rate limit exceeded."""

    def __init__(self, service_id: str, retry_after: float | None = None):
        self.retry_after = retry_after
        reason = f"Rate limit exceeded for service '{service_id}'"
        if retry_after:
            reason += f", retry after {retry_after}s"
        super().__init__(service_id, 429, reason)
