"""Framework-agnostic async circuit breaker.

This package implements the circuit breaker pattern from *Release It!*.

Key behavior notes:
  - Failures are counted over a sliding ``monitoring_window``; stale failures
    are pruned before the count is compared against ``failure_threshold``.
  - ``OPEN`` becomes ``HALF_OPEN`` lazily, on the first call after
    ``recovery_timeout``. No background timer changes breaker state.
  - Any counted failure while ``HALF_OPEN`` reopens the circuit and restarts
    the timeout; ``success_threshold`` successes close it.
  - Excluded exceptions pass through without touching counters or state.
  - The breaker never swallows the protected operation's errors.
"""

from resilience_core.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from resilience_core.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
)
from resilience_core.circuit_breaker.metrics import BreakerListener
from resilience_core.circuit_breaker.registry import CircuitBreakerRegistry
from resilience_core.circuit_breaker.state import BreakerMetrics, CircuitState

__all__ = [
    "BreakerListener",
    "BreakerMetrics",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CircuitState",
]
