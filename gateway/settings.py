import os
from datetime import timedelta

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()


class ResilienceSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Cache Configuration
    cache_default_ttl_seconds: float = Field(
        default=1800, gt=0, alias="CACHE_DEFAULT_TTL_SECONDS"
    )
    cache_debug: bool = Field(default=False, alias="CACHE_DEBUG")

    # Retry / Circuit Breaker Configuration
    retry_max_retries: int = Field(default=3, ge=0, alias="RETRY_MAX_RETRIES")
    retry_base_delay_seconds: float = Field(
        default=1.0, ge=0, alias="RETRY_BASE_DELAY_SECONDS"
    )
    breaker_failure_threshold: int = Field(
        default=5, ge=1, alias="BREAKER_FAILURE_THRESHOLD"
    )
    breaker_cooldown_seconds: float = Field(
        default=300, gt=0, alias="BREAKER_COOLDOWN_SECONDS"
    )

    # Health Check Configuration
    health_cache_ttl_seconds: float = Field(
        default=120, gt=0, alias="HEALTH_CACHE_TTL_SECONDS"
    )
    health_slow_threshold_ms: int = Field(
        default=5000, ge=0, alias="HEALTH_SLOW_THRESHOLD_MS"
    )
    health_arr_slow_threshold_ms: int = Field(
        default=3000, ge=0, alias="HEALTH_ARR_SLOW_THRESHOLD_MS"
    )
    health_probe_timeout_seconds: float = Field(
        default=10, gt=0, alias="HEALTH_PROBE_TIMEOUT_SECONDS"
    )

    # HTTP Configuration
    http_timeout_seconds: float = Field(default=30, gt=0, alias="HTTP_TIMEOUT_SECONDS")

    # External Services
    tmdb_api_key: str = Field(default="", alias="TMDB_API_KEY")
    sonarr_url: str = Field(default="", alias="SONARR_URL")
    sonarr_enabled: bool = Field(default=True, alias="SONARR_ENABLED")
    sonarr_api_key: str = Field(default="", alias="SONARR_API_KEY")
    radarr_url: str = Field(default="", alias="RADARR_URL")
    radarr_enabled: bool = Field(default=True, alias="RADARR_ENABLED")
    radarr_api_key: str = Field(default="", alias="RADARR_API_KEY")

    @property
    def cache_default_ttl(self) -> timedelta:
        return timedelta(seconds=self.cache_default_ttl_seconds)

    @property
    def retry_base_delay(self) -> timedelta:
        return timedelta(seconds=self.retry_base_delay_seconds)

    @property
    def breaker_cooldown(self) -> timedelta:
        return timedelta(seconds=self.breaker_cooldown_seconds)

    @property
    def health_cache_ttl(self) -> timedelta:
        return timedelta(seconds=self.health_cache_ttl_seconds)

    @property
    def health_probe_timeout(self) -> timedelta:
        return timedelta(seconds=self.health_probe_timeout_seconds)


def load_settings() -> ResilienceSettings:
    """Build settings from the process environment (after .env is loaded)."""
    return ResilienceSettings.model_validate(dict(os.environ))


global_settings = load_settings()
