"""
RequestDeduplicator - Collapses concurrent calls for the same key into one.

When multiple callers request the same not-yet-available result,
only one computation runs and the result (or exception) is shared.
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


class RequestDeduplicator:
    """
    Single-flight execution keyed by string.

    Usage:
        dedup = RequestDeduplicator()

        async def load(key: str):
            return await dedup.dedupe(key, lambda: fetch(key))

    A caller that gets cancelled stops waiting but does not cancel the
    shared computation; the remaining waiters still receive its result.
    """

    def __init__(self, debug: bool = False):
        self._in_flight: dict[str, asyncio.Task[Any]] = {}
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def dedupe(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Run request_fn for key, or join the run already in flight.

        Args:
            key: Unique identifier for this computation
            request_fn: Async function to execute if no run is in flight

        Returns:
            Result from request_fn (either fresh or from the in-flight run)
        """
        # No await between lookup and insert, so two callers cannot both start.
        task = self._in_flight.get(key)
        if task is not None:
            self._stats.deduplicated += 1
            self._log(f"DEDUPE: Joining in-flight run: {key[:50]}...")
        else:
            self._stats.total += 1
            self._log(f"NEW: Starting run: {key[:50]}...")
            task = asyncio.ensure_future(request_fn())
            self._in_flight[key] = task
            task.add_done_callback(lambda t, k=key: self._cleanup(k, t))

        return await asyncio.shield(task)

    def _cleanup(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        # Mark the exception retrieved so an unobserved failure is not reported twice.
        if not task.cancelled():
            task.exception()
        self._log(f"DONE: Run completed: {key[:50]}...")

    async def cancel_all(self) -> int:
        """Cancel all in-flight runs."""
        tasks = list(self._in_flight.values())
        self._in_flight.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            self._log(f"CANCEL_ALL: {len(tasks)} runs cancelled")
        return len(tasks)

    def get_in_flight_count(self) -> int:
        """Get number of in-flight runs."""
        return len(self._in_flight)

    def get_stats(self) -> "DeduplicatorStats":
        """Get deduplication statistics."""
        self._stats.in_flight = len(self._in_flight)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")


class DeduplicatorStats:
    """Statistics for request deduplication."""

    def __init__(self):
        self.total: int = 0  # Computations actually started
        self.deduplicated: int = 0  # Callers that joined an existing run
        self.in_flight: int = 0

    @property
    def dedup_rate(self) -> float:
        """Calculate deduplication rate."""
        total = self.total + self.deduplicated
        if total == 0:
            return 0.0
        return self.deduplicated / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_requests": self.total,
            "deduplicated": self.deduplicated,
            "in_flight": self.in_flight,
            "dedup_rate": f"{self.dedup_rate:.2%}",
        }
