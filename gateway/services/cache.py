"""
TTLCache - In-process key/value cache where every entry carries an expiry.

Features:
- Per-entry TTL; an entry is live while now < expires_at
- Expired entries are never returned, they are purged on read or by sweep
- get_or_create with single-flight per key, so concurrent misses share one
  factory run
- Striped locks: compound updates lock one bucket, not the whole cache
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Generic, TypeVar

from loguru import logger

from gateway.services.deduplicator import DeduplicatorStats, RequestDeduplicator
from gateway.services.errors import InvalidArgumentError
from gateway.utils import Clock, utcnow

T = TypeVar("T")

_MISSING = object()


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with its expiry instant."""

    value: T
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at


class TTLCache:
    """
    Async-friendly TTL cache.

    Usage:
        cache = TTLCache(default_ttl=timedelta(minutes=30))

        cache.set("tmdb:popular", payload, ttl=timedelta(minutes=5))
        payload = cache.get("tmdb:popular")

        # Populate on miss; concurrent callers share one fetch
        payload = await cache.get_or_create(
            "tmdb:popular", fetch_popular, ttl=timedelta(minutes=5)
        )
    """

    def __init__(
        self,
        default_ttl: timedelta = timedelta(minutes=30),
        lock_stripes: int = 16,
        clock: Clock = utcnow,
        debug: bool = False,
    ):
        if default_ttl <= timedelta(0):
            raise InvalidArgumentError("default_ttl must be positive")
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._default_ttl = default_ttl
        self._locks = [threading.Lock() for _ in range(max(1, lock_stripes))]
        self._clock = clock
        self._debug = debug
        self._single_flight = RequestDeduplicator(debug=debug)
        self._hits = 0
        self._misses = 0

    @property
    def default_ttl(self) -> timedelta:
        return self._default_ttl

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    @staticmethod
    def _valid_key(key: str | None) -> bool:
        return bool(key) and bool(key.strip())

    def _lookup(self, key: str, record: bool = True) -> Any:
        """Return the live value for key or _MISSING, purging an expired entry."""
        with self._lock_for(key):
            entry = self._entries.get(key)
            if entry is None:
                self._misses += record
                self._log(f"MISS: {key[:50]}")
                return _MISSING

            if not entry.is_live(self._clock()):
                del self._entries[key]
                self._misses += record
                self._log(f"EXPIRED: {key[:50]}")
                return _MISSING

            self._hits += record
            self._log(f"HIT: {key[:50]}")
            return entry.value

    def get(self, key: str) -> Any | None:
        """Get a live value, or None if absent or expired."""
        if not self._valid_key(key):
            return None
        value = self._lookup(key)
        return None if value is _MISSING else value

    def set(self, key: str, value: Any, ttl: timedelta | None = None) -> None:
        """
        Store value under key until now + ttl, replacing any existing entry.

        Raises:
            InvalidArgumentError: blank key, None value or non-positive ttl
        """
        if not self._valid_key(key):
            raise InvalidArgumentError("Cache key cannot be null or empty")
        if value is None:
            raise InvalidArgumentError(f"Cache value for '{key}' cannot be None")
        ttl = ttl if ttl is not None else self._default_ttl
        if ttl <= timedelta(0):
            raise InvalidArgumentError(f"Cache TTL for '{key}' must be positive")

        entry = CacheEntry(value=value, expires_at=self._clock() + ttl)
        with self._lock_for(key):
            self._entries[key] = entry
        self._log(f"SET: {key[:50]} (TTL: {ttl.total_seconds()}s)")

    async def get_or_create(
        self,
        key: str,
        factory: Callable[[], Awaitable[T | None]],
        ttl: timedelta | None = None,
    ) -> T | None:
        """
        Return the live value for key, or run factory and cache its result.

        Concurrent callers on the same cold key share a single factory run.
        A factory exception reaches every waiter unchanged and nothing is
        cached; a None result is returned but not cached.
        """
        if not self._valid_key(key):
            logger.warning("Cache key cannot be null or empty, bypassing cache")
            return await factory()

        value = self._lookup(key)
        if value is not _MISSING:
            return value

        async def populate() -> T | None:
            # A run that finished just before this one started may have filled the key.
            cached = self._lookup(key, record=False)
            if cached is not _MISSING:
                return cached
            try:
                result = await factory()
            except Exception as e:
                logger.error(f"Cache factory failed for key '{key}': {e}")
                raise
            if result is not None:
                self.set(key, result, ttl)
            return result

        return await self._single_flight.dedupe(key, populate)

    def remove(self, key: str) -> bool:
        """Delete a specific key. Returns True if an entry was removed."""
        if not self._valid_key(key):
            return False
        with self._lock_for(key):
            removed = self._entries.pop(key, None) is not None
        if removed:
            self._log(f"DELETE: {key[:50]}")
        return removed

    def clear(self) -> int:
        """Remove every entry. Returns the number removed."""
        for lock in self._locks:
            lock.acquire()
        try:
            count = len(self._entries)
            self._entries.clear()
        finally:
            for lock in self._locks:
                lock.release()
        logger.info(f"Cache cleared. Removed {count} items")
        return count

    def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns count of removed entries."""
        now = self._clock()
        removed = 0
        for key, entry in list(self._entries.items()):
            if entry.is_live(now):
                continue
            with self._lock_for(key):
                # Only drop the entry we inspected; a concurrent set may have replaced it.
                if self._entries.get(key) is entry:
                    del self._entries[key]
                    removed += 1

        if removed:
            self._log(f"CLEANUP: {removed} expired entries removed")
        return removed

    def statistics(self) -> "CacheStatistics":
        """Snapshot of entry counts and hit/miss counters."""
        now = self._clock()
        entries = list(self._entries.values())
        expired = sum(1 for entry in entries if not entry.is_live(now))
        return CacheStatistics(
            total=len(entries),
            expired=expired,
            active=len(entries) - expired,
            hits=self._hits,
            misses=self._misses,
            in_flight=self._single_flight.get_in_flight_count(),
        )

    def single_flight_stats(self) -> DeduplicatorStats:
        """Counters for factory runs started versus callers that joined one."""
        return self._single_flight.get_stats()

    async def cancel_pending(self) -> int:
        """Cancel every in-flight get_or_create factory run."""
        cancelled = await self._single_flight.cancel_all()
        if cancelled:
            logger.info(f"Cancelled {cancelled} pending cache fills")
        return cancelled

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[TTLCache] {message}")


@dataclass
class CacheStatistics:
    """Cache statistics."""

    total: int = 0
    expired: int = 0
    active: int = 0
    hits: int = 0
    misses: int = 0
    in_flight: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        lookups = self.hits + self.misses
        if lookups == 0:
            return 0.0
        return self.hits / lookups

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total": self.total,
            "expired": self.expired,
            "active": self.active,
            "hits": self.hits,
            "misses": self.misses,
            "in_flight": self.in_flight,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
