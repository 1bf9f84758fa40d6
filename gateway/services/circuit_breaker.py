"""
CircuitBreaker - Prevents cascading failures by stopping requests to failing services.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Service is failing, requests are blocked until the cooldown elapses
- HALF_OPEN: One trial request is testing if the service has recovered

Transitions:
- CLOSED → OPEN: When a terminal failure brings failure_count to the threshold
- OPEN → HALF_OPEN: On the first call after the cooldown expires
- HALF_OPEN → CLOSED: On successful request
- HALF_OPEN → OPEN: On failed request (cooldown restarts)

CircuitBreakerRegistry.execute wraps an async operation with retry/backoff
and breaker-gated execution, one breaker per operation key.
"""

import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from gateway.services.errors import (
    CircuitOpenError,
    OperationCancelledError,
    OperationFailedError,
)
from gateway.services.retry import RetryPolicy
from gateway.utils import Clock, utcnow

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Blocking requests
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5  # Failures before opening
    cooldown: timedelta = timedelta(minutes=5)  # Time before half-open

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")


@dataclass
class CircuitBreakerStats:
    """Read-only snapshot of one breaker."""

    key: str
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_at: datetime | None = None
    next_attempt_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure": (
                self.last_failure_at.isoformat() if self.last_failure_at else None
            ),
            "next_attempt": (
                self.next_attempt_at.isoformat() if self.next_attempt_at else None
            ),
        }


class CircuitBreaker:
    """
    Circuit breaker state machine for a single operation key.

    All transitions happen under a per-breaker lock that is never held
    across an await.
    """

    def __init__(
        self,
        key: str,
        config: CircuitBreakerConfig | None = None,
        clock: Clock = utcnow,
    ):
        self.key = key
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at: datetime | None = None
        self._next_attempt_at: datetime | None = None
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def try_acquire(self) -> bool:
        """
        Admit a call or raise CircuitOpenError.

        Returns True when the caller holds the half-open trial slot and must
        call release_trial() when done.
        """
        with self._lock:
            now = self._clock()
            if self._state == CircuitState.OPEN:
                if self._next_attempt_at and now < self._next_attempt_at:
                    raise CircuitOpenError(
                        self.key,
                        self._next_attempt_at,
                        (self._next_attempt_at - now).total_seconds(),
                    )
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
                logger.info(f"Circuit breaker '{self.key}' transitioned to HALF_OPEN")

            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(self.key, self._next_attempt_at)
                self._trial_in_flight = True
                return True

            return False

    def release_trial(self) -> None:
        with self._lock:
            self._trial_in_flight = False

    def record_success(self) -> bool:
        """Record a successful call. Returns True if the breaker was reset."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN or self._failure_count > 0:
                self._close()
                return True
            return False

    def record_failure(self, terminal: bool = True) -> bool:
        """
        Record a failed attempt. Returns True if the breaker is now OPEN.

        Non-terminal (about to be retried) failures only count; the threshold
        is checked when the call gives up. Any failure in HALF_OPEN reopens.
        """
        with self._lock:
            self._failure_count += 1
            self._last_failure_at = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._open()
            elif (
                self._state == CircuitState.CLOSED
                and terminal
                and self._failure_count >= self.config.failure_threshold
            ):
                self._open()
            return self._state == CircuitState.OPEN

    def _open(self) -> None:
        """Transition to OPEN state."""
        self._state = CircuitState.OPEN
        self._next_attempt_at = self._clock() + self.config.cooldown
        logger.warning(
            f"Circuit breaker '{self.key}' OPENED after {self._failure_count} failures, "
            f"next attempt at {self._next_attempt_at.isoformat()}"
        )

    def _close(self) -> None:
        """Transition to CLOSED state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at = None
        self._next_attempt_at = None
        logger.info(f"Circuit breaker '{self.key}' CLOSED (recovered)")

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_at = None
            self._next_attempt_at = None
            self._trial_in_flight = False
        logger.info(f"Circuit breaker '{self.key}' manually reset")

    def snapshot(self) -> CircuitBreakerStats:
        with self._lock:
            return CircuitBreakerStats(
                key=self.key,
                state=self._state,
                failure_count=self._failure_count,
                last_failure_at=self._last_failure_at,
                next_attempt_at=(
                    self._next_attempt_at if self._state != CircuitState.CLOSED else None
                ),
            )


class CircuitBreakerRegistry:
    """
    One circuit breaker per operation key, plus retry-wrapped execution.

    Usage:
        registry = CircuitBreakerRegistry()
        movies = await registry.execute("tmdb-search", lambda: tmdb.search(q))

    Breakers are created on first use and kept for the registry's lifetime;
    callers with unbounded dynamic keys should reset or drop the registry.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Clock = utcnow,
    ):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._config = config or CircuitBreakerConfig()
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def get(
        self,
        key: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        """Get or create the circuit breaker for an operation key."""
        breaker = self._breakers.get(key)
        if breaker is not None:
            return breaker
        with self._lock:
            return self._breakers.setdefault(
                key, CircuitBreaker(key, config or self._config, self._clock)
            )

    async def execute(
        self,
        key: str,
        operation: Callable[[], Awaitable[T]],
        max_retries: int | None = None,
        base_delay: timedelta | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> T:
        """
        Run operation under the breaker for key, retrying transient failures.

        Args:
            key: Breaker key of the logical operation (e.g. "tmdb-search")
            operation: Zero-argument async callable
            max_retries: Retries after the first attempt (policy default if None)
            base_delay: Backoff unit (policy default if None)
            cancel_event: Setting it stops further attempts and backoff sleeps

        Raises:
            CircuitOpenError: Breaker rejected the call; operation not invoked
            OperationFailedError: Non-retryable failure or retries exhausted
            OperationCancelledError: cancel_event was set
        """
        policy = self._retry_policy
        retries = policy.max_retries if max_retries is None else max_retries
        if retries < 0:
            raise ValueError("max_retries must be >= 0")

        breaker = self.get(key)
        try:
            is_trial = breaker.try_acquire()
        except CircuitOpenError as e:
            logger.warning(f"{e}; operation not attempted")
            raise

        attempt = 0
        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    raise OperationCancelledError(key)

                try:
                    result = await operation()
                except OperationCancelledError:
                    raise
                except Exception as e:
                    attempt += 1
                    retryable = attempt <= retries and policy.is_retryable(e)
                    opened = self._record_failure(breaker, terminal=not retryable)

                    if retryable and not opened:
                        delay = policy.compute_delay(attempt, base_delay)
                        logger.warning(
                            f"Operation failed (attempt {attempt}/{retries + 1}) for "
                            f"'{key}'. Retrying in {delay * 1000:.0f}ms. Error: {e}"
                        )
                        await self._backoff(key, delay, cancel_event)
                        continue

                    if attempt <= retries and not retryable:
                        logger.error(f"Non-retryable error for '{key}': {type(e).__name__}: {e}")
                    logger.error(f"Operation failed after {attempt} attempt(s) for '{key}'")
                    raise OperationFailedError(key, attempt, e) from e

                self._record_success(breaker)
                return result
        finally:
            if is_trial:
                breaker.release_trial()

    @staticmethod
    def _record_failure(breaker: CircuitBreaker, terminal: bool) -> bool:
        try:
            return breaker.record_failure(terminal=terminal)
        except Exception:
            logger.exception(f"Failed to record failure for circuit breaker '{breaker.key}'")
            return False

    @staticmethod
    def _record_success(breaker: CircuitBreaker) -> None:
        # The caller still gets its value if bookkeeping breaks.
        try:
            if breaker.record_success():
                logger.debug(f"Circuit breaker reset for '{breaker.key}' after successful operation")
        except Exception:
            logger.exception(f"Failed to record success for circuit breaker '{breaker.key}'")

    @staticmethod
    async def _backoff(key: str, delay: float, cancel_event: asyncio.Event | None) -> None:
        if cancel_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        logger.warning(f"Retry for '{key}' cancelled during backoff")
        raise OperationCancelledError(key)

    def stats(self, key: str) -> CircuitBreakerStats:
        """Snapshot for key; unknown keys report a closed breaker without creating one."""
        breaker = self._breakers.get(key)
        if breaker is None:
            return CircuitBreakerStats(key=key)
        return breaker.snapshot()

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        """Get status of all circuit breakers."""
        return {key: cb.snapshot().to_dict() for key, cb in list(self._breakers.items())}

    def reset_all(self) -> None:
        """Force-close every circuit breaker."""
        breakers = list(self._breakers.values())
        for cb in breakers:
            cb.reset()
        logger.info(f"Reset {len(breakers)} circuit breakers")

    def reset(self, key: str) -> bool:
        """Reset a specific circuit breaker."""
        breaker = self._breakers.get(key)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def get_open_circuits(self) -> list[str]:
        """Get list of keys with open circuits."""
        return [
            key
            for key, cb in list(self._breakers.items())
            if cb.state == CircuitState.OPEN
        ]
