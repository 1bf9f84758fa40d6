"""
RetryPolicy - Decides which failures are worth another attempt and how long
to wait before it.

Classification is a pure function of the exception type (and, for upstream
HTTP errors, the status code). Backoff is exponential with up to 10% jitter:

    delay(attempt) = base_delay * 2 ** (attempt - 1) * (1 + jitter)
"""

import asyncio
import random
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable

import httpx

from gateway.services.errors import (
    OperationCancelledError,
    TransientError,
    UpstreamStatusError,
)

RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})


def is_retryable_error(
    error: BaseException,
    retryable_status_codes: frozenset[int] = RETRYABLE_STATUS_CODES,
) -> bool:
    """Default retry classification over the service error taxonomy."""
    if isinstance(error, (asyncio.CancelledError, OperationCancelledError)):
        return False
    if isinstance(error, UpstreamStatusError):
        return error.status_code in retryable_status_codes
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in retryable_status_codes
    if isinstance(error, (TransientError, httpx.TimeoutException, httpx.NetworkError)):
        return True
    return isinstance(error, (TimeoutError, ConnectionError))


@dataclass
class RetryPolicy:
    """Retry configuration shared by every call through a registry."""

    max_retries: int = 3
    base_delay: timedelta = timedelta(seconds=1)
    max_jitter: float = 0.1
    retryable_status_codes: frozenset[int] = RETRYABLE_STATUS_CODES
    # Extra predicate; an error is retried if the default rules or this say so.
    extra_retryable: Callable[[BaseException], bool] | None = None
    rng: random.Random = field(default_factory=random.Random)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < timedelta(0):
            raise ValueError("base_delay must not be negative")

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, (asyncio.CancelledError, OperationCancelledError)):
            return False
        if is_retryable_error(error, self.retryable_status_codes):
            return True
        return bool(self.extra_retryable and self.extra_retryable(error))

    def compute_delay(self, attempt: int, base_delay: timedelta | None = None) -> float:
        """Seconds to sleep after failed attempt number `attempt` (1-based)."""
        base = (base_delay if base_delay is not None else self.base_delay).total_seconds()
        exponential = base * 2 ** (max(attempt, 1) - 1)
        jitter = self.rng.random() * self.max_jitter
        return exponential * (1 + jitter)
