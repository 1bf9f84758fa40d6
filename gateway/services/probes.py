"""
HTTP probes for the external services the gateway depends on.

A probe only checks that the service answers; it never parses the payload.
"""

import httpx
from loguru import logger

from gateway.services.health import Probe, ProbeResult, ServiceCheck
from gateway.settings import ResilienceSettings

TMDB_CONFIGURATION_URL = "https://api.themoviedb.org/3/configuration"


def http_probe(
    http_client: httpx.AsyncClient,
    service_name: str,
    url: str,
    params: dict[str, str] | None = None,
    headers: dict[str, str] | None = None,
) -> Probe:
    """Probe that GETs url and treats any 2xx answer as healthy."""

    async def probe() -> ProbeResult:
        response = await http_client.get(url, params=params, headers=headers)
        if response.is_success:
            return ProbeResult(ok=True)
        return ProbeResult(
            ok=False,
            message=f"{service_name} returned {response.status_code}: {response.reason_phrase}",
        )

    return probe


def unconfigured_probe(service_name: str, reason: str | None = None) -> Probe:
    """Probe for a service that cannot be reached because it is not set up."""
    message = reason or f"{service_name} is not configured or disabled"

    async def probe() -> ProbeResult:
        return ProbeResult(ok=False, message=message)

    return probe


def _arr_check(
    http_client: httpx.AsyncClient,
    name: str,
    server_url: str,
    api_key: str,
    enabled: bool,
    settings: ResilienceSettings,
) -> ServiceCheck:
    if not enabled or not server_url:
        probe = unconfigured_probe(name)
    else:
        probe = http_probe(
            http_client,
            name,
            f"{server_url.rstrip('/')}/api/v3/system/status",
            headers={"X-Api-Key": api_key},
        )
    return ServiceCheck(
        name=name,
        probe=probe,
        cache_ttl=settings.health_cache_ttl,
        slow_threshold_ms=settings.health_arr_slow_threshold_ms,
    )


def default_service_checks(
    settings: ResilienceSettings,
    http_client: httpx.AsyncClient,
) -> list[ServiceCheck]:
    """Checks for TMDB, Sonarr and Radarr built from settings."""
    if settings.tmdb_api_key:
        tmdb_probe = http_probe(
            http_client,
            "TMDB API",
            TMDB_CONFIGURATION_URL,
            params={"api_key": settings.tmdb_api_key},
        )
    else:
        logger.warning("TMDB API key is not configured")
        tmdb_probe = unconfigured_probe("TMDB", "TMDB API key is not configured")

    return [
        ServiceCheck(
            name="TMDB",
            probe=tmdb_probe,
            cache_ttl=settings.health_cache_ttl,
            slow_threshold_ms=settings.health_slow_threshold_ms,
            label="TMDB API",
        ),
        _arr_check(
            http_client,
            "Sonarr",
            settings.sonarr_url,
            settings.sonarr_api_key,
            settings.sonarr_enabled,
            settings,
        ),
        _arr_check(
            http_client,
            "Radarr",
            settings.radarr_url,
            settings.radarr_api_key,
            settings.radarr_enabled,
            settings,
        ),
    ]
