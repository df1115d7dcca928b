"""Compose circuit breaking, retry and fallback around one operation.

The nesting is fixed: ``fallback(breaker(retry(operation)))``. Retries happen
inside a single breaker call, so one logical call counts once towards the
breaker no matter how many attempts it made.
"""

from __future__ import annotations

import functools
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, ParamSpec, TypeVar

from resilience_core.circuit_breaker import (
    BreakerListener,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)
from resilience_core.fallback import FallbackCache, FallbackExecutor, FallbackStrategy
from resilience_core.logging import AnyLogger, configure_structlog, get_logger
from resilience_core.presets import (
    DATABASE_PRESET,
    EXTERNAL_API_PRESET,
    PAYMENT_PRESET,
    SEARCH_PROVIDER_PRESET,
    DependencyPreset,
)
from resilience_core.retry import (
    STANDARD_RETRY,
    RetryConfig,
    RetryExecutor,
    RetryMetrics,
    Sleep,
)
from resilience_core.settings import ResilienceSettings

P = ParamSpec("P")
T = TypeVar("T")

DEFAULTS_RETRY = STANDARD_RETRY.with_overrides(max_attempts=3)


@dataclass(frozen=True)
class ResilientOperationConfig:
    """Per-call composition parameters.

    Attributes:
        dependency: Breaker name and cache-key namespace.
        use_circuit_breaker: Route the call through the dependency's breaker.
        breaker_config: Config used if the breaker does not exist yet.
        use_retry: Wrap the operation in a ``RetryExecutor``.
        retry_config: Backoff and retryable-error policy.
        fallbacks: Strategies tried after failure. Empty disables the
            fallback layer.
        cache_key: Key for storing successful results and serving
            ``CachedFallback``.
        context_label: Label for log events. Defaults to ``dependency``.
        cache_ttl: Default TTL in seconds for cached fallbacks.
    """

    dependency: str
    use_circuit_breaker: bool = True
    breaker_config: CircuitBreakerConfig | None = None
    use_retry: bool = True
    retry_config: RetryConfig = STANDARD_RETRY
    fallbacks: tuple[FallbackStrategy, ...] = ()
    cache_key: str | None = None
    context_label: str | None = None
    cache_ttl: float | None = None


class ResilientOperationExecutor:
    """Execute operations against named dependencies with composed resilience."""

    def __init__(
        self,
        registry: CircuitBreakerRegistry,
        *,
        cache: FallbackCache | None = None,
        default_cache_ttl: float | None = None,
        sleep: Sleep | None = None,
        rng: random.Random | None = None,
        logger: AnyLogger | None = None,
    ) -> None:
        """Build an executor.

        Args:
            registry: Breaker registry shared by every caller in the process.
            cache: Fallback cache. Keys are namespaced by dependency.
            default_cache_ttl: TTL in seconds when neither the strategy nor the
                call config sets one.
            sleep: Backoff sleep override, mainly for tests and shutdown-aware
                sleeping.
            rng: Random source for backoff jitter.
            logger: Structured logger passed to every layer.
        """
        self.registry = registry
        self.cache = FallbackCache() if cache is None else cache
        self._default_cache_ttl = default_cache_ttl
        self._sleep = sleep
        self._rng = rng
        self._logger = get_logger(__name__) if logger is None else logger

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        config: ResilientOperationConfig,
        *,
        metrics: RetryMetrics | None = None,
    ) -> T | Any:
        """Run ``operation`` through the layers enabled in ``config``.

        Args:
            operation: Zero-argument coroutine function doing the unreliable work.
            config: Composition parameters for this call.
            metrics: Optional record of the retry layer's outcome.

        Raises:
            CircuitOpenError: The dependency's breaker rejected the call and no
                fallback produced a value.
            Exception: The operation's own error when no fallback applies.
        """
        label = (
            config.dependency if config.context_label is None else config.context_label
        )
        call: Callable[[], Awaitable[T]] = operation

        if config.use_retry:
            retry_executor = RetryExecutor(
                config.retry_config,
                sleep=self._sleep,
                rng=self._rng,
                logger=self._logger,
            )
            call = _with_retry(retry_executor, call, label, metrics)

        if config.use_circuit_breaker:
            breaker = self.registry.get_breaker(
                config.dependency, config.breaker_config
            )
            call = _with_breaker(breaker.execute, call)

        if not config.fallbacks:
            return await call()

        cache_ttl = (
            self._default_cache_ttl if config.cache_ttl is None else config.cache_ttl
        )
        fallback = FallbackExecutor(
            config.fallbacks,
            cache=self.cache,
            default_ttl=cache_ttl,
            logger=self._logger,
        )
        cache_key = (
            None
            if config.cache_key is None
            else f"{config.dependency}:{config.cache_key}"
        )
        return await fallback.execute_with_fallback(call, cache_key, label)

    async def execute_with_defaults(
        self,
        operation: Callable[[], Awaitable[T]],
        dependency: str,
        context_label: str | None = None,
        *,
        metrics: RetryMetrics | None = None,
    ) -> T:
        """Run ``operation`` behind a breaker with three backed-off attempts."""
        config = ResilientOperationConfig(
            dependency=dependency,
            retry_config=DEFAULTS_RETRY,
            context_label=context_label,
        )
        return await self.execute(operation, config, metrics=metrics)

    async def execute_preset(
        self,
        preset: DependencyPreset,
        operation: Callable[[], Awaitable[T]],
        *,
        dependency: str | None = None,
        cache_key: str | None = None,
        context_label: str | None = None,
        fallbacks: Sequence[FallbackStrategy] = (),
        metrics: RetryMetrics | None = None,
    ) -> T | Any:
        """Run ``operation`` with the defaults of ``preset``."""
        config = ResilientOperationConfig(
            dependency=preset.name if dependency is None else dependency,
            breaker_config=preset.breaker_config,
            retry_config=preset.retry_config,
            fallbacks=preset.fallbacks(cache_key, fallbacks),
            cache_key=cache_key,
            context_label=context_label,
            cache_ttl=preset.cache_ttl,
        )
        return await self.execute(operation, config, metrics=metrics)

    async def execute_database(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        dependency: str = DATABASE_PRESET.name,
        cache_key: str | None = None,
        context_label: str | None = None,
        fallbacks: Sequence[FallbackStrategy] = (),
        metrics: RetryMetrics | None = None,
    ) -> T | Any:
        return await self.execute_preset(
            DATABASE_PRESET,
            operation,
            dependency=dependency,
            cache_key=cache_key,
            context_label=context_label,
            fallbacks=fallbacks,
            metrics=metrics,
        )

    async def execute_external_api(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        dependency: str = EXTERNAL_API_PRESET.name,
        cache_key: str | None = None,
        context_label: str | None = None,
        fallbacks: Sequence[FallbackStrategy] = (),
        metrics: RetryMetrics | None = None,
    ) -> T | Any:
        return await self.execute_preset(
            EXTERNAL_API_PRESET,
            operation,
            dependency=dependency,
            cache_key=cache_key,
            context_label=context_label,
            fallbacks=fallbacks,
            metrics=metrics,
        )

    async def execute_payment(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        dependency: str = PAYMENT_PRESET.name,
        context_label: str | None = None,
        metrics: RetryMetrics | None = None,
    ) -> T:
        """Run a payment gateway call. Failures always reach the caller."""
        return await self.execute_preset(
            PAYMENT_PRESET,
            operation,
            dependency=dependency,
            context_label=context_label,
            metrics=metrics,
        )

    async def execute_search_provider(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        dependency: str = SEARCH_PROVIDER_PRESET.name,
        cache_key: str | None = None,
        context_label: str | None = None,
        fallbacks: Sequence[FallbackStrategy] = (),
        metrics: RetryMetrics | None = None,
    ) -> T | Any:
        return await self.execute_preset(
            SEARCH_PROVIDER_PRESET,
            operation,
            dependency=dependency,
            cache_key=cache_key,
            context_label=context_label,
            fallbacks=fallbacks,
            metrics=metrics,
        )


def _with_retry(
    executor: RetryExecutor,
    operation: Callable[[], Awaitable[T]],
    label: str,
    metrics: RetryMetrics | None,
) -> Callable[[], Awaitable[T]]:
    async def _retrying() -> T:
        return await executor.execute(operation, label, metrics=metrics)

    return _retrying


def _with_breaker(
    breaker_execute: Callable[[Callable[[], Awaitable[T]]], Awaitable[T]],
    operation: Callable[[], Awaitable[T]],
) -> Callable[[], Awaitable[T]]:
    async def _guarded() -> T:
        return await breaker_execute(operation)

    return _guarded


def resilient(
    executor: ResilientOperationExecutor,
    *,
    dependency: str | None = None,
    context_label: str | None = None,
    **options: Any,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorate a coroutine function so every call runs through ``executor``.

    The dependency name and context label default to the function's
    ``__qualname__``, so a method is keyed as ``"Class.method"``. ``options``
    are the remaining ``ResilientOperationConfig`` fields and are bound
    when the function is decorated.
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        name = func.__qualname__ if dependency is None else dependency
        config = ResilientOperationConfig(
            dependency=name,
            context_label=name if context_label is None else context_label,
            **options,
        )

        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await executor.execute(
                functools.partial(func, *args, **kwargs), config
            )

        return wrapper

    return decorator


def create_resilient_executor(
    settings: ResilienceSettings | None = None,
    *,
    listeners: Sequence[BreakerListener] | None = None,
    sleep: Sleep | None = None,
    logger: AnyLogger | None = None,
    configure_logging: bool = False,
) -> ResilientOperationExecutor:
    """Build the registry, cache and executor for one process.

    Call once at startup and hand the result to the code that talks to
    external dependencies. With ``configure_logging`` set, structlog is
    configured at ``settings.log_level`` and, unless ``logger`` is given,
    the configured logger is shared by every layer.
    """
    resolved = ResilienceSettings() if settings is None else settings
    if configure_logging:
        configured = configure_structlog(log_level=resolved.log_level)
        if logger is None:
            logger = configured
    registry = CircuitBreakerRegistry(
        defaults=resolved.breaker_defaults(),
        listeners=listeners,
        logger=logger,
    )
    cache = FallbackCache(max_entries=resolved.fallback_cache_max_entries)
    return ResilientOperationExecutor(
        registry,
        cache=cache,
        default_cache_ttl=resolved.fallback_cache_ttl_seconds,
        sleep=sleep,
        logger=logger,
    )
