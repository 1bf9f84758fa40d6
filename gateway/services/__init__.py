"""
Service layer infrastructure - resilience patterns for external API calls.

Provides:
- TTLCache: Per-entry TTL cache with single-flight population
- CircuitBreakerRegistry: Per-operation circuit breakers with retry/backoff
- HealthOrchestrator: Throttled, concurrent health probes with aggregation
- ServiceClient: Context object combining all patterns
"""

from gateway.services.errors import (
    ServiceError,
    InvalidArgumentError,
    CircuitOpenError,
    OperationFailedError,
    OperationCancelledError,
    TransientError,
    RequestTimeoutError,
    UpstreamStatusError,
    RateLimitError,
)
from gateway.services.cache import TTLCache, CacheEntry, CacheStatistics
from gateway.services.retry import RetryPolicy, is_retryable_error
from gateway.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitBreakerStats,
    CircuitState,
)
from gateway.services.health import (
    HealthOrchestrator,
    HealthState,
    OverallHealthStatus,
    ProbeResult,
    ServiceCheck,
    ServiceHealthStatus,
    aggregate_status,
)
from gateway.services.deduplicator import RequestDeduplicator
from gateway.services.client import ServiceClient

__all__ = [
    # Errors
    "ServiceError",
    "InvalidArgumentError",
    "CircuitOpenError",
    "OperationFailedError",
    "OperationCancelledError",
    "TransientError",
    "RequestTimeoutError",
    "UpstreamStatusError",
    "RateLimitError",
    # Cache
    "TTLCache",
    "CacheEntry",
    "CacheStatistics",
    # Retry / Circuit Breaker
    "RetryPolicy",
    "is_retryable_error",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitBreakerStats",
    "CircuitState",
    # Health
    "HealthOrchestrator",
    "HealthState",
    "OverallHealthStatus",
    "ProbeResult",
    "ServiceCheck",
    "ServiceHealthStatus",
    "aggregate_status",
    # Deduplicator
    "RequestDeduplicator",
    # Client
    "ServiceClient",
]
