"""Circuit breaker state primitives."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerMetrics:
    """Point-in-time view of breaker internals useful for metrics/logging.

    Attributes:
        name: Breaker name.
        state: Current breaker state.
        failure_count: Failures inside the monitoring window.
        success_count: Consecutive successes while ``HALF_OPEN``.
        total_requests: Lifetime calls made through the breaker, rejected
            calls included.
        total_successes: Lifetime successful calls.
        total_failures: Lifetime counted failures.
        last_failure_at: Timestamp of the last counted failure, if any.
        next_attempt_at: Earliest time a probe is allowed while ``OPEN``.
    """

    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    total_requests: int
    total_successes: int
    total_failures: int
    last_failure_at: datetime | None
    next_attempt_at: datetime | None
