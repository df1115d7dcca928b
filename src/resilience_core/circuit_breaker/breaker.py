"""Core circuit breaker implementation."""

import time
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import ParamSpec, TypeVar

from resilience_core._sync import StateGuard
from resilience_core.circuit_breaker.exceptions import CircuitOpenError
from resilience_core.circuit_breaker.metrics import BreakerListener
from resilience_core.circuit_breaker.state import BreakerMetrics, CircuitState
from resilience_core.logging import AnyLogger, get_logger, log_info, log_warning

T = TypeVar("T")
P = ParamSpec("P")

_Transition = tuple[CircuitState, CircuitState]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        failure_threshold: Failures inside ``monitoring_window`` required while
            ``CLOSED`` before opening.
        success_threshold: Successes required while ``HALF_OPEN`` before closing.
        recovery_timeout: Seconds to wait while ``OPEN`` before allowing a probe.
        monitoring_window: Seconds over which failures are counted.
        expected_exceptions: Exceptions that count as failures.
        excluded_exceptions: Exceptions that must not count as failures.
    """

    failure_threshold: int = 5
    success_threshold: int = 2
    recovery_timeout: float = 60.0
    monitoring_window: float = 120.0
    expected_exceptions: tuple[type[Exception], ...] = (Exception,)
    excluded_exceptions: tuple[type[Exception], ...] = ()

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.recovery_timeout < 0:
            raise ValueError("recovery_timeout must be >= 0")
        if self.monitoring_window <= 0:
            raise ValueError("monitoring_window must be > 0")


class CircuitBreaker:
    """Stateful proxy around a dangerous async operation."""

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        listeners: Sequence[BreakerListener] | None = None,
        logger: AnyLogger | None = None,
    ) -> None:
        """Build a circuit breaker with optional custom dependencies.

        Args:
            name: Unique breaker name used for registry lookup and logging.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            listeners: Optional listener hooks for breaker events.
            logger: Structured logger for state transitions.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._logger = get_logger(__name__) if logger is None else logger
        self._guard = StateGuard()

        self._state = CircuitState.CLOSED
        self._failure_times: deque[datetime] = deque()
        self._failure_count = 0
        self._success_count = 0
        self._next_attempt_at: datetime | None = None
        self._total_requests = 0
        self._total_successes = 0
        self._total_failures = 0

    async def _emit_state_changes(self, transitions: Sequence[_Transition]) -> None:
        for old, new in transitions:
            for listener in self._listeners:
                try:
                    await listener.on_state_change(self.name, old, new)
                except Exception:
                    continue

    async def _emit_call_rejected(self) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_rejected(self.name)
            except Exception:
                continue

    async def _emit_call_succeeded(self, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_succeeded(self.name, elapsed)
            except Exception:
                continue

    async def _emit_call_failed(self, exc: Exception, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_failed(self.name, exc, elapsed)
            except Exception:
                continue

    def _transition_to(self, new: CircuitState, now: datetime) -> _Transition:
        # Caller holds the state guard.
        old = self._state
        self._state = new
        if new == CircuitState.OPEN:
            self._success_count = 0
            self._next_attempt_at = now + timedelta(
                seconds=self.config.recovery_timeout
            )
        elif new == CircuitState.HALF_OPEN:
            self._success_count = 0
        else:
            self._failure_times.clear()
            self._failure_count = 0
            self._success_count = 0
            self._next_attempt_at = None

        log_info(
            self._logger,
            "circuit_breaker.state_changed",
            breaker=self.name,
            old_state=str(old),
            new_state=str(new),
            failure_count=self._failure_count,
            success_count=self._success_count,
            next_attempt_at=(
                None
                if self._next_attempt_at is None
                else self._next_attempt_at.isoformat()
            ),
        )
        return old, new

    def _prune_failures(self, now: datetime) -> None:
        window = timedelta(seconds=self.config.monitoring_window)
        while self._failure_times and now - self._failure_times[0] > window:
            self._failure_times.popleft()
        self._failure_count = len(self._failure_times)

    def _admit(self) -> tuple[float | None, list[_Transition]]:
        """Count the request and decide whether it may proceed.

        Returns the ``retry_after`` seconds when the call must be rejected.
        """
        transitions: list[_Transition] = []
        with self._guard:
            self._total_requests += 1
            if self._state != CircuitState.OPEN:
                return None, transitions

            now = _utcnow()
            if self._next_attempt_at is not None and now < self._next_attempt_at:
                return (self._next_attempt_at - now).total_seconds(), transitions

            transitions.append(self._transition_to(CircuitState.HALF_OPEN, now))
            return None, transitions

    def _record_success(self) -> list[_Transition]:
        transitions: list[_Transition] = []
        with self._guard:
            self._total_successes += 1
            self._failure_times.clear()
            self._failure_count = 0
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    transitions.append(
                        self._transition_to(CircuitState.CLOSED, _utcnow())
                    )
        return transitions

    def _record_failure(self) -> list[_Transition]:
        transitions: list[_Transition] = []
        with self._guard:
            now = _utcnow()
            self._total_failures += 1
            self._failure_times.append(now)
            self._prune_failures(now)
            if self._state == CircuitState.HALF_OPEN:
                transitions.append(self._transition_to(CircuitState.OPEN, now))
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.config.failure_threshold
            ):
                transitions.append(self._transition_to(CircuitState.OPEN, now))
        return transitions

    async def execute(
        self,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Invoke an async callable under circuit breaker protection.

        Args:
            func: Dangerous async callable to execute.
            *args: Positional arguments forwarded to ``func``.
            **kwargs: Keyword arguments forwarded to ``func``.

        Returns:
            The result of ``func`` when allowed and successful.

        Raises:
            CircuitOpenError: When the circuit is open and the call is rejected.
                ``func`` is not invoked.
            Exception: The original exception from ``func`` when it is attempted
                and fails.
        """
        retry_after, transitions = self._admit()
        if retry_after is not None:
            log_warning(
                self._logger,
                "circuit_breaker.call_rejected",
                breaker=self.name,
                retry_after=retry_after,
            )
            await self._emit_call_rejected()
            raise CircuitOpenError(self.name, retry_after=retry_after)
        await self._emit_state_changes(transitions)

        start = time.monotonic()
        try:
            result = await func(*args, **kwargs)
        except self.config.excluded_exceptions:
            raise
        except self.config.expected_exceptions as exc:
            elapsed = max(time.monotonic() - start, 0.0)
            transitions = self._record_failure()
            await self._emit_call_failed(exc, elapsed)
            await self._emit_state_changes(transitions)
            raise
        else:
            elapsed = max(time.monotonic() - start, 0.0)
            transitions = self._record_success()
            await self._emit_state_changes(transitions)
            await self._emit_call_succeeded(elapsed)
            return result

    def get_state(self) -> CircuitState:
        """Return the current state without triggering the lazy probe transition."""
        with self._guard:
            return self._state

    def is_available(self) -> bool:
        """Return whether the next call would be attempted rather than rejected."""
        with self._guard:
            if self._state != CircuitState.OPEN:
                return True
            return self._next_attempt_at is None or _utcnow() >= self._next_attempt_at

    def get_metrics(self) -> BreakerMetrics:
        """Return a read-only snapshot of state and lifetime counters."""
        with self._guard:
            return BreakerMetrics(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                success_count=self._success_count,
                total_requests=self._total_requests,
                total_successes=self._total_successes,
                total_failures=self._total_failures,
                last_failure_at=(
                    self._failure_times[-1] if self._failure_times else None
                ),
                next_attempt_at=self._next_attempt_at,
            )

    def reset(self) -> None:
        """Force the breaker back to ``CLOSED`` with cleared window and counters.

        Lifetime totals are kept. Listeners are not notified.
        """
        with self._guard:
            if self._state != CircuitState.CLOSED:
                self._transition_to(CircuitState.CLOSED, _utcnow())
                return
            self._failure_times.clear()
            self._failure_count = 0
            self._success_count = 0
            self._next_attempt_at = None
