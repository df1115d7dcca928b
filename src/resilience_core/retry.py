from __future__ import annotations

import asyncio
import math
import random
import re
from collections.abc import Awaitable, Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from resilience_core.classifiers import (
    CONNECTION_REFUSED,
    DEFAULT_RETRYABLE_PATTERNS,
    DNS_NOT_FOUND,
    RATE_LIMIT_PATTERNS,
    SERVICE_UNAVAILABLE,
    is_retryable_error,
)
from resilience_core.logging import (
    AnyLogger,
    get_logger,
    log_error,
    log_info,
    log_warning,
)

T = TypeVar("T")

JITTER_RATIO = 0.25

RetryObserver = Callable[[int, int, BaseException], None]
RetryPredicate = Callable[[BaseException], bool]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryConfig:
    """Retry attempt count, backoff boundaries and retryable-error policy.

    Delays are integer milliseconds. ``is_retryable`` replaces the default
    pattern classifier when given. ``on_retry`` is called with
    ``(attempt, delay_ms, error)`` before each backoff sleep.
    """

    max_attempts: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    multiplier: float = 2.0
    jitter: bool = True
    retryable_errors: tuple[re.Pattern[str], ...] = DEFAULT_RETRYABLE_PATTERNS
    is_retryable: RetryPredicate | None = field(default=None, compare=False)
    on_retry: RetryObserver | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay_ms < 0:
            raise ValueError("initial_delay_ms must be >= 0")
        if self.max_delay_ms < 0:
            raise ValueError("max_delay_ms must be >= 0")
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError("max_delay_ms must be >= initial_delay_ms")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def with_overrides(self, **changes: Any) -> RetryConfig:
        """Return a copy with ``changes`` applied and validated."""
        return replace(self, **changes)

    def classify(self, error: BaseException) -> bool:
        # Cancellation always propagates.
        if not isinstance(error, Exception):
            return False
        if self.is_retryable is not None:
            return self.is_retryable(error)
        return is_retryable_error(error, self.retryable_errors)


FAST_RETRY = RetryConfig(max_attempts=3, initial_delay_ms=500, max_delay_ms=5_000)
STANDARD_RETRY = RetryConfig(
    max_attempts=5, initial_delay_ms=1_000, max_delay_ms=30_000
)
SLOW_RETRY = RetryConfig(
    max_attempts=3, initial_delay_ms=5_000, max_delay_ms=60_000, multiplier=3.0
)
AGGRESSIVE_RETRY = RetryConfig(
    max_attempts=10, initial_delay_ms=500, max_delay_ms=120_000
)
RATE_LIMIT_RETRY = RetryConfig(
    max_attempts=5,
    initial_delay_ms=2_000,
    max_delay_ms=60_000,
    retryable_errors=RATE_LIMIT_PATTERNS,
)
# Only failures where the gateway never processed the charge.
PAYMENT_RETRY = RetryConfig(
    max_attempts=2,
    initial_delay_ms=1_000,
    max_delay_ms=5_000,
    retryable_errors=(CONNECTION_REFUSED, DNS_NOT_FOUND, SERVICE_UNAVAILABLE),
)

RETRY_PRESETS: Mapping[str, RetryConfig] = {
    "fast": FAST_RETRY,
    "standard": STANDARD_RETRY,
    "slow": SLOW_RETRY,
    "aggressive": AGGRESSIVE_RETRY,
    "rate_limit": RATE_LIMIT_RETRY,
    "payment": PAYMENT_RETRY,
}


@dataclass
class RetryMetrics:
    """Outcome of one retry-executor invocation."""

    attempts: int = 0
    total_delay_ms: int = 0
    success: bool = False
    error: BaseException | None = None


def compute_delay_ms(
    config: RetryConfig,
    attempt: int,
    rng: random.Random | None = None,
) -> int:
    """Return the backoff delay after failed ``attempt`` (1-based).

    ``min(initial * multiplier ** (attempt - 1), max)``, then, with jitter,
    shifted by a uniform factor in ``[-25%, +25%]`` and floored.
    """
    delay = min(
        config.initial_delay_ms * config.multiplier ** (attempt - 1),
        float(config.max_delay_ms),
    )
    if config.jitter:
        source = random if rng is None else rng
        delay += delay * source.uniform(-JITTER_RATIO, JITTER_RATIO)
    return max(math.floor(delay), 0)


class _BackoffWait(wait_base):
    """Tenacity wait strategy that remembers the last computed delay."""

    def __init__(self, config: RetryConfig, rng: random.Random | None) -> None:
        self._config = config
        self._rng = rng
        self.last_delay_ms = 0

    def __call__(self, retry_state: RetryCallState) -> float:
        self.last_delay_ms = compute_delay_ms(
            self._config, retry_state.attempt_number, self._rng
        )
        return self.last_delay_ms / 1000


def build_interruptible_sleep(stop_event: asyncio.Event) -> Sleep:
    """Build an async sleep that exits early when shutdown is requested."""

    async def _interruptible_sleep(delay: float) -> None:
        if stop_event.is_set():
            return

        bounded_delay = max(delay, 0.0)
        with suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=bounded_delay)

    return _interruptible_sleep


class RetryExecutor:
    """Run an async operation with exponential backoff between attempts.

    The executor holds no state between invocations; each ``execute`` call
    starts from attempt one.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        sleep: Sleep | None = None,
        rng: random.Random | None = None,
        logger: AnyLogger | None = None,
    ) -> None:
        self.config = STANDARD_RETRY if config is None else config
        self._sleep = sleep
        self._rng = rng
        self._logger = get_logger(__name__) if logger is None else logger

    def _build_retrying(
        self,
        wait: _BackoffWait,
        metrics: RetryMetrics,
        context_label: str | None,
    ) -> AsyncRetrying:
        def _before_sleep(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            assert outcome is not None
            error = outcome.exception()
            assert error is not None
            attempt = retry_state.attempt_number
            delay_ms = wait.last_delay_ms
            metrics.total_delay_ms += delay_ms
            log_warning(
                self._logger,
                "retry.attempt_failed",
                context=context_label,
                attempt=attempt,
                max_attempts=self.config.max_attempts,
                delay_ms=delay_ms,
                error=str(error),
                error_type=type(error).__name__,
            )
            if self.config.on_retry is not None:
                self.config.on_retry(attempt, delay_ms, error)

        if self._sleep is None:
            return AsyncRetrying(
                retry=retry_if_exception(self.config.classify),
                wait=wait,
                stop=stop_after_attempt(self.config.max_attempts),
                before_sleep=_before_sleep,
                reraise=True,
            )
        return AsyncRetrying(
            retry=retry_if_exception(self.config.classify),
            wait=wait,
            stop=stop_after_attempt(self.config.max_attempts),
            sleep=self._sleep,
            before_sleep=_before_sleep,
            reraise=True,
        )

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        context_label: str | None = None,
        *,
        metrics: RetryMetrics | None = None,
    ) -> T:
        """Invoke ``operation`` until it succeeds or retrying stops.

        Args:
            operation: Zero-argument coroutine function doing the unreliable work.
            context_label: Label attached to log events.
            metrics: Optional record filled in with this invocation's outcome.

        Raises:
            Exception: The last attempt's error once ``max_attempts`` is used
                up, or the first non-retryable error.
        """
        run_metrics = RetryMetrics() if metrics is None else metrics
        wait = _BackoffWait(self.config, self._rng)
        retrying = self._build_retrying(wait, run_metrics, context_label)

        try:
            async for attempt in retrying:
                with attempt:
                    run_metrics.attempts = attempt.retry_state.attempt_number
                    result = await operation()
        except Exception as error:
            run_metrics.success = False
            run_metrics.error = error
            retryable = self.config.classify(error)
            log_error(
                self._logger,
                "retry.exhausted" if retryable else "retry.non_retryable",
                context=context_label,
                attempts=run_metrics.attempts,
                total_delay_ms=run_metrics.total_delay_ms,
                error=str(error),
                error_type=type(error).__name__,
            )
            raise

        run_metrics.success = True
        if run_metrics.attempts > 1:
            log_info(
                self._logger,
                "retry.succeeded_after_retry",
                context=context_label,
                attempts=run_metrics.attempts,
                total_delay_ms=run_metrics.total_delay_ms,
            )
        return result


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    context_label: str | None = None,
    *,
    sleep: Sleep | None = None,
    metrics: RetryMetrics | None = None,
    logger: AnyLogger | None = None,
) -> T:
    """Run ``operation`` once through a throwaway ``RetryExecutor``."""
    executor = RetryExecutor(config, sleep=sleep, logger=logger)
    return await executor.execute(operation, context_label, metrics=metrics)
