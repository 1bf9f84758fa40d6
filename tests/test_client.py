"""Tests for ServiceClient."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest
from gateway.services.circuit_breaker import CircuitState
from gateway.services.errors import (
    CircuitOpenError,
    OperationFailedError,
    RateLimitError,
    RequestTimeoutError,
    ServiceError,
    TransientError,
    UpstreamStatusError,
)
from gateway.services.cache import TTLCache
from gateway.services.health import HealthState, ServiceCheck
from gateway.services.client import ServiceClient
from gateway.settings import ResilienceSettings

URL = "https://api.themoviedb.org/3/movie/popular"


def _settings(**overrides) -> ResilienceSettings:
    values = {"retry_base_delay_seconds": 0, "retry_max_retries": 2}
    values.update(overrides)
    return ResilienceSettings(**values)


def _service_client(handler, **overrides) -> ServiceClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ServiceClient(settings=_settings(**overrides), http_client=http_client)


class TestRequest:
    @pytest.mark.asyncio
    async def test_get_is_cached(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"results": [1, 2]})

        client = _service_client(handler)
        first = await client.request("tmdb-popular", URL, params={"page": 1})
        second = await client.request("tmdb-popular", URL, params={"page": 1})

        assert first == second == {"results": [1, 2]}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_post_is_not_cached(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"queued": True})

        client = _service_client(handler)
        await client.request("sonarr-add", "http://sonarr/api/v3/series", method="POST", json_data={})
        await client.request("sonarr-add", "http://sonarr/api/v3/series", method="POST", json_data={})

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_retryable_status_is_retried(self):
        responses = iter([httpx.Response(503), httpx.Response(200, json={"ok": True})])
        client = _service_client(lambda request: next(responses))

        assert await client.request("tmdb-popular", URL, use_cache=False) == {"ok": True}
        assert client.breakers.stats("tmdb-popular").failure_count == 0

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404, text="not found")

        client = _service_client(handler)
        with pytest.raises(OperationFailedError) as exc_info:
            await client.request("tmdb-popular", URL)

        assert len(calls) == 1
        error = exc_info.value.last_error
        assert isinstance(error, UpstreamStatusError)
        assert error.status_code == 404
        assert client.cache.statistics().total == 0

    @pytest.mark.asyncio
    async def test_rate_limit_maps_to_rate_limit_error(self):
        client = _service_client(
            lambda request: httpx.Response(429, headers={"Retry-After": "3"})
        )
        with pytest.raises(OperationFailedError) as exc_info:
            await client.request("tmdb-popular", URL)

        error = exc_info.value.last_error
        assert isinstance(error, RateLimitError)
        assert error.retry_after == 3.0
        assert exc_info.value.attempts == 3

    @pytest.mark.asyncio
    async def test_timeout_maps_to_request_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = _service_client(handler, retry_max_retries=0)
        with pytest.raises(OperationFailedError) as exc_info:
            await client.request("tmdb-popular", URL)
        assert isinstance(exc_info.value.last_error, RequestTimeoutError)

    @pytest.mark.asyncio
    async def test_connect_error_maps_to_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = _service_client(handler, retry_max_retries=0)
        with pytest.raises(OperationFailedError) as exc_info:
            await client.request("sonarr-status", "http://sonarr/api/v3/system/status")
        assert isinstance(exc_info.value.last_error, TransientError)

    @pytest.mark.asyncio
    async def test_dropped_connection_is_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.RemoteProtocolError("peer closed connection", request=request)
            return httpx.Response(200, json={"ok": True})

        client = _service_client(handler)
        assert await client.request("tmdb-popular", URL, use_cache=False) == {"ok": True}
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_misconfigured_url_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.UnsupportedProtocol("unsupported protocol", request=request)

        client = _service_client(handler)
        with pytest.raises(OperationFailedError) as exc_info:
            await client.request("sonarr-status", "http://sonarr/api/v3/system/status")

        assert len(calls) == 1
        assert exc_info.value.attempts == 1
        error = exc_info.value.last_error
        assert isinstance(error, ServiceError)
        assert not isinstance(error, TransientError)

    @pytest.mark.asyncio
    async def test_open_breaker_blocks_requests(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400)

        client = _service_client(handler, breaker_failure_threshold=1)
        with pytest.raises(OperationFailedError):
            await client.request("tmdb-popular", URL)
        with pytest.raises(CircuitOpenError):
            await client.request("tmdb-popular", URL)

        assert len(calls) == 1
        assert client.get_health_status()["open_circuits"] == ["tmdb-popular"]

        client.reset_circuits()
        assert client.breakers.stats("tmdb-popular").state == CircuitState.CLOSED


class TestExecute:
    @pytest.mark.asyncio
    async def test_execute_passes_through(self):
        client = ServiceClient(settings=_settings())
        assert await client.execute("tmdb-search", AsyncMock(return_value="hit")) == "hit"

    @pytest.mark.asyncio
    async def test_cached_runs_operation_once(self):
        client = ServiceClient(settings=_settings())
        op = AsyncMock(return_value={"id": 1})

        await client.cached("movie:1", "tmdb-details", op, ttl=timedelta(minutes=5))
        await client.cached("movie:1", "tmdb-details", op, ttl=timedelta(minutes=5))

        assert op.await_count == 1
        assert client.clear_cache() == 1


class TestHealth:
    @pytest.mark.asyncio
    async def test_check_health_with_custom_checks(self):
        client = ServiceClient(settings=_settings())

        overall = await client.check_health(
            [
                ServiceCheck("TMDB", AsyncMock(return_value=None)),
                ServiceCheck("Sonarr", AsyncMock(side_effect=asyncio.TimeoutError())),
            ]
        )

        assert overall.overall_status == HealthState.UNHEALTHY
        assert overall.services[1].message == "Sonarr request timed out"

    @pytest.mark.asyncio
    async def test_check_health_defaults_to_configured_services(self):
        async with _service_client(lambda request: httpx.Response(200)) as client:
            overall = await client.check_health()

        assert [s.service_name for s in overall.services] == ["TMDB", "Sonarr", "Radarr"]

    def test_health_status_shape(self):
        status = ServiceClient(settings=_settings()).get_health_status()
        assert set(status) == {"cache", "single_flight", "circuit_breakers", "open_circuits"}
        assert status["cache"]["total"] == 0
        assert status["cache"]["in_flight"] == 0
        assert status["single_flight"]["total_requests"] == 0


class TestKeysAndLifecycle:
    def test_generate_key_sorts_params(self):
        assert ServiceClient.generate_key(URL, {"page": 2, "lang": "en"}) == (
            f"svc_{URL}?lang=en&page=2"
        )

    def test_generate_key_hashes_long_urls(self):
        key = ServiceClient.generate_key(URL, {"q": "x" * 300})
        assert key.startswith("svc_")
        assert len(key) == 20

    @pytest.mark.asyncio
    async def test_close_owned_http_client(self):
        client = ServiceClient(settings=_settings())
        http_client = client._get_http_client()

        await client.close()

        assert http_client.is_closed

    @pytest.mark.asyncio
    async def test_injected_http_client_is_left_open(self):
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        async with ServiceClient(settings=_settings(), http_client=http_client):
            pass

        assert not http_client.is_closed
        await http_client.aclose()

    @pytest.mark.asyncio
    async def test_close_cancels_pending_cache_fills(self):
        client = ServiceClient(settings=_settings())
        release = asyncio.Event()

        async def fetch():
            await release.wait()
            return "late"

        waiter = asyncio.create_task(client.cached("movie:1", "tmdb-details", fetch))
        await asyncio.sleep(0)
        assert client.cache.statistics().in_flight == 1

        await client.close()

        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert client.cache.statistics().in_flight == 0
        assert client.cache.get("movie:1") is None

    @pytest.mark.asyncio
    async def test_close_leaves_injected_cache_fills_running(self):
        cache = TTLCache()
        client = ServiceClient(cache=cache, settings=_settings())
        release = asyncio.Event()

        async def fetch():
            await release.wait()
            return "done"

        waiter = asyncio.create_task(cache.get_or_create("movie:1", fetch))
        await asyncio.sleep(0)

        await client.close()
        release.set()

        assert await waiter == "done"
