"""
ServiceClient - The resilience context shared by every external API client.

Combines:
- TTLCache for response caching (single-flight on misses)
- CircuitBreakerRegistry for retry/backoff and failure protection
- HealthOrchestrator for throttled service probes

Construct one per application and pass it to the API clients; there is no
module-level instance.
"""

import asyncio
import hashlib
from collections.abc import Sequence
from datetime import timedelta
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from loguru import logger

from gateway.services.cache import TTLCache
from gateway.services.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)
from gateway.services.errors import (
    RateLimitError,
    RequestTimeoutError,
    ServiceError,
    TransientError,
    UpstreamStatusError,
)
from gateway.services.health import (
    HealthOrchestrator,
    OverallHealthStatus,
    ServiceCheck,
)
from gateway.services.probes import default_service_checks
from gateway.services.retry import RetryPolicy
from gateway.settings import ResilienceSettings
from gateway.utils import Clock, utcnow

T = TypeVar("T")


class ServiceClient:
    """
    Unified entry point for resilient calls to external services.

    Usage:
        async with ServiceClient.from_settings(settings) as client:
            # Any async operation, under the "tmdb-search" breaker
            movies = await client.execute("tmdb-search", lambda: tmdb.search(q))

            # HTTP GET with breaker, retry and a 5 minute cache
            data = await client.request(
                "tmdb-popular",
                "https://api.themoviedb.org/3/movie/popular",
                params={"api_key": key},
                cache_ttl=timedelta(minutes=5),
            )

            overall = await client.check_health()
    """

    def __init__(
        self,
        cache: TTLCache | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        health: HealthOrchestrator | None = None,
        settings: ResilienceSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock = utcnow,
    ):
        self._settings = settings or ResilienceSettings()
        s = self._settings

        self._owns_cache = cache is None
        self._cache = cache or TTLCache(
            default_ttl=s.cache_default_ttl, clock=clock, debug=s.cache_debug
        )
        self._breakers = breakers or CircuitBreakerRegistry(
            config=CircuitBreakerConfig(
                failure_threshold=s.breaker_failure_threshold,
                cooldown=s.breaker_cooldown,
            ),
            retry_policy=RetryPolicy(
                max_retries=s.retry_max_retries,
                base_delay=s.retry_base_delay,
            ),
            clock=clock,
        )
        self._health = health or HealthOrchestrator(
            self._cache,
            default_cache_ttl=s.health_cache_ttl,
            slow_threshold_ms=s.health_slow_threshold_ms,
            probe_timeout=s.health_probe_timeout,
            clock=clock,
        )

        # HTTP client (lazy initialization unless injected)
        self._http_client = http_client
        self._owns_http_client = http_client is None

    @classmethod
    def from_settings(cls, settings: ResilienceSettings) -> "ServiceClient":
        return cls(settings=settings)

    @property
    def cache(self) -> TTLCache:
        return self._cache

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    @property
    def health(self) -> HealthOrchestrator:
        return self._health

    def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.http_timeout_seconds),
                follow_redirects=True,
            )
        return self._http_client

    @staticmethod
    def generate_key(url: str, params: dict[str, Any] | None = None) -> str:
        """Generate a cache key from URL and params."""
        if params:
            sorted_params = "&".join(f"{k}={v}" for k, v in sorted(params.items()))
            full_key = f"{url}?{sorted_params}"
        else:
            full_key = url

        # Hash long keys
        if len(full_key) > 200:
            return f"svc_{hashlib.md5(full_key.encode()).hexdigest()[:16]}"

        return f"svc_{full_key}"

    async def execute(
        self,
        breaker_key: str,
        operation: Callable[[], Awaitable[T]],
        max_retries: int | None = None,
        base_delay: timedelta | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> T:
        """Run an arbitrary async operation under the breaker for breaker_key."""
        return await self._breakers.execute(
            breaker_key, operation, max_retries, base_delay, cancel_event
        )

    async def cached(
        self,
        cache_key: str,
        breaker_key: str,
        operation: Callable[[], Awaitable[T]],
        ttl: timedelta | None = None,
    ) -> T | None:
        """Serve cache_key from the cache, populating it through the breaker."""
        return await self._cache.get_or_create(
            cache_key,
            lambda: self._breakers.execute(breaker_key, operation),
            ttl,
        )

    async def request(
        self,
        breaker_key: str,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        method: str = "GET",
        json_data: dict[str, Any] | None = None,
        use_cache: bool | None = None,
        cache_ttl: timedelta | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Any:
        """
        Make an HTTP request with breaker, retry and (for GET) caching.

        Args:
            breaker_key: Identifier of the logical operation (for circuit breaker)
            url: Full URL to request
            params: Query parameters
            headers: Additional headers
            method: HTTP method (GET, POST, etc.)
            json_data: JSON body for POST/PUT requests
            use_cache: Override cache usage (default: True for GET)
            cache_ttl: Override cache TTL
            timeout: Override request timeout
            max_retries: Override retry count

        Returns:
            Decoded JSON response

        Raises:
            CircuitOpenError: If circuit breaker is open
            OperationFailedError: If the request failed for good
            OperationCancelledError: If cancel_event was set
        """
        req_timeout = timeout or self._settings.http_timeout_seconds
        should_cache = use_cache if use_cache is not None else method == "GET"

        async def do_request() -> Any:
            return await self._execute_request(
                url=url,
                params=params,
                headers=headers or {},
                method=method,
                json_data=json_data,
                timeout=req_timeout,
                service_id=breaker_key,
            )

        async def guarded() -> Any:
            return await self._breakers.execute(
                breaker_key, do_request, max_retries=max_retries, cancel_event=cancel_event
            )

        if should_cache:
            return await self._cache.get_or_create(
                self.generate_key(url, params), guarded, cache_ttl
            )
        return await guarded()

    async def _execute_request(
        self,
        url: str,
        params: dict[str, Any] | None,
        headers: dict[str, str],
        method: str,
        json_data: dict[str, Any] | None,
        timeout: float,
        service_id: str,
    ) -> Any:
        """Execute the actual HTTP request, mapping failures onto service errors."""
        client = self._get_http_client()

        try:
            response = await client.request(
                method=method,
                url=url,
                params=params,
                headers=headers,
                json=json_data,
                timeout=timeout,
            )
            response.raise_for_status()
            return response.json()

        except httpx.TimeoutException as e:
            raise RequestTimeoutError(service_id, timeout) from e

        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if status_code == 429:
                retry_after = e.response.headers.get("Retry-After")
                raise RateLimitError(
                    service_id,
                    float(retry_after) if retry_after and retry_after.isdigit() else None,
                ) from e
            raise UpstreamStatusError(
                service_id, status_code, e.response.text[:200]
            ) from e

        except (httpx.NetworkError, httpx.ProxyError, httpx.RemoteProtocolError) as e:
            raise TransientError(str(e), service_id=service_id) from e

        except httpx.RequestError as e:
            raise ServiceError(str(e), service_id=service_id) from e

    async def check_health(
        self,
        checks: Sequence[ServiceCheck] | None = None,
    ) -> OverallHealthStatus:
        """Probe the given services (default: TMDB, Sonarr, Radarr from settings)."""
        if checks is None:
            checks = default_service_checks(self._settings, self._get_http_client())
        return await self._health.check_all(checks)

    async def close(self) -> None:
        """Release what this instance created: pending cache fills and the HTTP client."""
        if self._owns_cache:
            await self._cache.cancel_pending()
        if self._http_client and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None
        logger.debug("ServiceClient closed")

    async def __aenter__(self) -> "ServiceClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    # Health and status methods

    def get_health_status(self) -> dict[str, Any]:
        """Get cache statistics and breaker state for admin tooling."""
        return {
            "cache": self._cache.statistics().to_dict(),
            "single_flight": self._cache.single_flight_stats().to_dict(),
            "circuit_breakers": self._breakers.get_all_status(),
            "open_circuits": self._breakers.get_open_circuits(),
        }

    def reset_circuits(self) -> None:
        """Force-close every circuit breaker."""
        self._breakers.reset_all()

    def clear_cache(self) -> int:
        """Drop every cached entry, returning how many were removed."""
        return self._cache.clear()
