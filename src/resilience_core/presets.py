"""Per-dependency-class defaults for ``ResilientOperationExecutor``.

Payments fail loudly: their fallback chain is a single ``ErrorFallback``.
Search provider calls retry hard and accept day-old cached rank data.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from resilience_core.circuit_breaker import CircuitBreakerConfig
from resilience_core.fallback import CachedFallback, ErrorFallback, FallbackStrategy
from resilience_core.retry import (
    AGGRESSIVE_RETRY,
    FAST_RETRY,
    PAYMENT_RETRY,
    STANDARD_RETRY,
    RetryConfig,
)


@dataclass(frozen=True)
class DependencyPreset:
    """Breaker, retry and fallback defaults for one class of dependency."""

    name: str
    breaker_config: CircuitBreakerConfig
    retry_config: RetryConfig
    cache_ttl: float | None = None
    cache_fallback: bool = True
    fail_loudly: bool = False

    def fallbacks(
        self,
        cache_key: str | None,
        extra: Sequence[FallbackStrategy] = (),
    ) -> tuple[FallbackStrategy, ...]:
        """Return the strategy chain for one call.

        The cached strategy is only used when the call supplies a cache key.
        ``extra`` strategies follow it, except for fail-loudly presets.
        """
        if self.fail_loudly:
            return (ErrorFallback(),)
        strategies: list[FallbackStrategy] = []
        if self.cache_fallback and cache_key is not None:
            strategies.append(CachedFallback())
        strategies.extend(extra)
        return tuple(strategies)


DATABASE_PRESET = DependencyPreset(
    name="database",
    breaker_config=CircuitBreakerConfig(
        failure_threshold=5,
        success_threshold=2,
        recovery_timeout=30.0,
        monitoring_window=60.0,
    ),
    retry_config=FAST_RETRY,
    cache_ttl=60.0,
)

EXTERNAL_API_PRESET = DependencyPreset(
    name="external_api",
    breaker_config=CircuitBreakerConfig(),
    retry_config=STANDARD_RETRY,
    cache_ttl=300.0,
)

PAYMENT_PRESET = DependencyPreset(
    name="payment",
    breaker_config=CircuitBreakerConfig(
        failure_threshold=3,
        success_threshold=2,
        recovery_timeout=120.0,
        monitoring_window=300.0,
    ),
    retry_config=PAYMENT_RETRY,
    cache_fallback=False,
    fail_loudly=True,
)

SEARCH_PROVIDER_PRESET = DependencyPreset(
    name="search_provider",
    breaker_config=CircuitBreakerConfig(
        failure_threshold=10,
        success_threshold=2,
        recovery_timeout=300.0,
        monitoring_window=600.0,
    ),
    retry_config=AGGRESSIVE_RETRY,
    cache_ttl=86_400.0,
)
