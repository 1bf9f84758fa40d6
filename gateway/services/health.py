"""
Health orchestration for external services.

Each service is checked with a lightweight probe. Results are throttled
through a TTLCache so repeated checks inside the cache TTL reuse the last
status, and all statuses are folded into one overall status.
"""

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable

from loguru import logger
from pydantic import BaseModel

from gateway.services.cache import TTLCache
from gateway.services.errors import InvalidArgumentError
from gateway.utils import Clock, utcnow


class HealthState(str, Enum):
    """Severity of a service (or of the whole system)."""

    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    UNHEALTHY = "Unhealthy"

    @property
    def http_status_code(self) -> int:
        """Status code the API boundary reports for this state."""
        return _HTTP_STATUS_CODES[self]


_HTTP_STATUS_CODES = {
    HealthState.HEALTHY: 200,
    HealthState.DEGRADED: 207,
    HealthState.UNHEALTHY: 503,
}


class ServiceHealthStatus(BaseModel):
    """Health of a single external service."""

    service_name: str
    status: HealthState = HealthState.UNHEALTHY
    message: str = ""
    response_time_ms: int | None = None
    checked_at: datetime


class OverallHealthStatus(BaseModel):
    """Aggregate of all checked services, in the order they were given."""

    overall_status: HealthState
    services: list[ServiceHealthStatus]
    checked_at: datetime


@dataclass
class ProbeResult:
    """What a probe reports back when it completes without raising."""

    ok: bool = True
    message: str = ""


Probe = Callable[[], Awaitable[ProbeResult | None]]


@dataclass
class ServiceCheck:
    """One service to check: its name, probe and throttling parameters."""

    name: str
    probe: Probe
    cache_ttl: timedelta | None = None
    slow_threshold_ms: int | None = None
    label: str | None = None


def aggregate_status(statuses: Sequence[HealthState]) -> HealthState:
    """
    Fold individual states into an overall state.

    Any DEGRADED service makes the whole DEGRADED, even alongside UNHEALTHY
    ones; otherwise any UNHEALTHY makes it UNHEALTHY. No services is HEALTHY.
    """
    if HealthState.DEGRADED in statuses:
        return HealthState.DEGRADED
    if HealthState.UNHEALTHY in statuses:
        return HealthState.UNHEALTHY
    return HealthState.HEALTHY


class HealthOrchestrator:
    """
    Runs probes for named services and aggregates the outcome.

    Usage:
        orchestrator = HealthOrchestrator(TTLCache())
        overall = await orchestrator.check_all([
            ServiceCheck("TMDB", tmdb_probe),
            ServiceCheck("Sonarr", sonarr_probe, slow_threshold_ms=3000),
        ])

    Probe failures and timeouts become UNHEALTHY statuses, never exceptions.
    Those are not cached, so the next check probes again.
    """

    def __init__(
        self,
        cache: TTLCache,
        default_cache_ttl: timedelta = timedelta(minutes=2),
        slow_threshold_ms: int = 5000,
        probe_timeout: timedelta = timedelta(seconds=10),
        clock: Clock = utcnow,
    ):
        self._cache = cache
        self._default_cache_ttl = default_cache_ttl
        self._slow_threshold_ms = slow_threshold_ms
        self._probe_timeout = probe_timeout
        self._clock = clock

    @staticmethod
    def cache_key(name: str) -> str:
        return f"health_check_{name.lower()}"

    async def check_service(
        self,
        name: str,
        probe: Probe,
        cache_ttl: timedelta | None = None,
        slow_threshold_ms: int | None = None,
        label: str | None = None,
    ) -> ServiceHealthStatus:
        """
        Check one service, reusing a cached status younger than cache_ttl.

        label names the service in status messages (e.g. "TMDB API");
        defaults to name.

        Raises:
            InvalidArgumentError: cache_ttl is not positive
        """
        ttl = self._default_cache_ttl if cache_ttl is None else cache_ttl
        if ttl <= timedelta(0):
            raise InvalidArgumentError(f"Health check TTL for '{name}' must be positive")
        threshold = self._slow_threshold_ms if slow_threshold_ms is None else slow_threshold_ms
        label = label or name

        async def run_probe() -> ServiceHealthStatus:
            return await self._run_probe(name, label, probe, threshold)

        try:
            status = await self._cache.get_or_create(self.cache_key(name), run_probe, ttl)
        except (TimeoutError, asyncio.CancelledError) as e:
            # Only a cancellation aimed at this task is allowed through.
            if isinstance(e, asyncio.CancelledError) and _being_cancelled():
                raise
            logger.warning(f"{label} health check timed out")
            return self._status(name, HealthState.UNHEALTHY, f"{label} request timed out")
        except Exception as e:
            logger.error(f"{label} health check failed: {e}")
            return self._status(
                name, HealthState.UNHEALTHY, f"{label} health check failed: {e}"
            )

        return status

    async def _run_probe(
        self, name: str, label: str, probe: Probe, threshold_ms: int
    ) -> ServiceHealthStatus:
        started = time.perf_counter()
        result = await asyncio.wait_for(probe(), timeout=self._probe_timeout.total_seconds())
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        result = result or ProbeResult()

        if not result.ok:
            return self._status(
                name,
                HealthState.UNHEALTHY,
                result.message or f"{label} reported unhealthy",
            )

        state = HealthState.DEGRADED if elapsed_ms > threshold_ms else HealthState.HEALTHY
        message = result.message or f"{label} is responding. Response time: {elapsed_ms}ms"
        return self._status(name, state, message, elapsed_ms)

    def _status(
        self,
        name: str,
        state: HealthState,
        message: str,
        response_time_ms: int | None = None,
    ) -> ServiceHealthStatus:
        return ServiceHealthStatus(
            service_name=name,
            status=state,
            message=message,
            response_time_ms=response_time_ms,
            checked_at=self._clock(),
        )

    async def check_all(self, checks: Sequence[ServiceCheck]) -> OverallHealthStatus:
        """Probe every service concurrently and aggregate the results."""
        logger.info(f"Starting health check of {len(checks)} external services")

        services = await asyncio.gather(
            *[
                self.check_service(
                    check.name,
                    check.probe,
                    check.cache_ttl,
                    check.slow_threshold_ms,
                    check.label,
                )
                for check in checks
            ]
        )

        overall = OverallHealthStatus(
            overall_status=aggregate_status([s.status for s in services]),
            services=list(services),
            checked_at=self._clock(),
        )
        logger.info(f"Health check completed. Overall status: {overall.overall_status.value}")
        return overall

    def invalidate(self, name: str) -> bool:
        """Drop the cached status for a service so the next check probes."""
        return self._cache.remove(self.cache_key(name))


def _being_cancelled() -> bool:
    task = asyncio.current_task()
    return task is not None and task.cancelling() > 0
