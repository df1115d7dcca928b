"""Ordered fallback strategies for failed operations.

A ``FallbackExecutor`` runs a primary operation and, if it fails, walks its
strategy list in order. The first strategy that produces a value wins. When
none does, the primary operation's error is re-raised, never the error of a
later strategy.
"""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, ClassVar, TypeAlias

from resilience_core._sync import StateGuard
from resilience_core.errors import FallbackConfigurationError
from resilience_core.logging import (
    AnyLogger,
    get_logger,
    log_debug,
    log_error,
    log_info,
    log_warning,
)

DEFAULT_CACHE_TTL_SECONDS = 300.0

_MISS = object()


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class DefaultFallback:
    """Return ``value``."""

    kind: ClassVar[str] = "default"
    value: Any


@dataclass(frozen=True, slots=True)
class CachedFallback:
    """Return the last successful primary result if it is fresh enough.

    ``ttl`` (seconds) overrides the executor-level default TTL.
    """

    kind: ClassVar[str] = "cached"
    ttl: float | None = None


@dataclass(frozen=True, slots=True)
class AlternativeFallback:
    """Call another operation that produces an equivalent result."""

    kind: ClassVar[str] = "alternative"
    operation: Callable[[], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class DegradedFallback:
    """Call an operation that produces a partial, best-effort result."""

    kind: ClassVar[str] = "degraded"
    operation: Callable[[], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class EmptyFallback:
    """Return a fresh empty value built by ``factory``."""

    kind: ClassVar[str] = "empty"
    factory: Callable[[], Any] = list


@dataclass(frozen=True, slots=True)
class ErrorFallback:
    """Fail this step on purpose.

    The chain moves on to the next strategy. A chain holding only error
    strategies therefore always re-raises the primary error.
    """

    kind: ClassVar[str] = "error"


FallbackStrategy: TypeAlias = (
    DefaultFallback
    | CachedFallback
    | AlternativeFallback
    | DegradedFallback
    | EmptyFallback
    | ErrorFallback
)


def cached_with_default(
    value: Any, ttl: float = DEFAULT_CACHE_TTL_SECONDS
) -> tuple[FallbackStrategy, ...]:
    """Serve the cached result if fresh, otherwise ``value``."""
    return (CachedFallback(ttl=ttl), DefaultFallback(value))


def alternative_with_empty(
    operation: Callable[[], Awaitable[Any]],
    factory: Callable[[], Any] = list,
) -> tuple[FallbackStrategy, ...]:
    return (AlternativeFallback(operation), EmptyFallback(factory))


def degraded_service(
    operation: Callable[[], Awaitable[Any]],
    factory: Callable[[], Any] = list,
) -> tuple[FallbackStrategy, ...]:
    """Prefer the cached full result, then a partial one, then an empty value."""
    return (CachedFallback(), DegradedFallback(operation), EmptyFallback(factory))


def multiple_alternatives(
    alternatives: Sequence[Callable[[], Awaitable[Any]]],
    default: Any = _MISS,
) -> tuple[FallbackStrategy, ...]:
    """Try the cache, then each alternative in order.

    The chain ends with ``default`` when one is given and with an empty list
    otherwise. ``None`` counts as a given default.
    """
    last: FallbackStrategy = (
        EmptyFallback() if default is _MISS else DefaultFallback(default)
    )
    return (
        CachedFallback(),
        *(AlternativeFallback(operation) for operation in alternatives),
        last,
    )


@dataclass(frozen=True, slots=True)
class CacheEntry:
    value: Any
    stored_at: datetime


class FallbackCache:
    """Last-known-good results keyed by caller-supplied strings.

    Expired entries are evicted lazily when read. The cache is unbounded
    unless ``max_entries`` is set, in which case the least recently used
    entry is dropped on overflow.
    """

    def __init__(self, *, max_entries: int | None = None) -> None:
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be >= 1 when provided")
        self._max_entries = max_entries
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._guard = StateGuard()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def store(self, key: str, value: Any) -> None:
        with self._guard:
            self._entries[key] = CacheEntry(value=value, stored_at=_utcnow())
            self._entries.move_to_end(key)
            if self._max_entries is not None:
                while len(self._entries) > self._max_entries:
                    self._entries.popitem(last=False)

    def get(self, key: str, ttl: float) -> CacheEntry | None:
        """Return the entry for ``key`` if it is at most ``ttl`` seconds old."""
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if _utcnow() - entry.stored_at > timedelta(seconds=ttl):
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return entry

    def discard(self, key: str) -> None:
        with self._guard:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._guard:
            self._entries.clear()


class FallbackExecutor:
    """Run a primary operation with an ordered list of fallback strategies."""

    def __init__(
        self,
        strategies: Sequence[FallbackStrategy],
        *,
        cache: FallbackCache | None = None,
        default_ttl: float | None = None,
        logger: AnyLogger | None = None,
    ) -> None:
        """Build a fallback executor.

        Args:
            strategies: Strategies tried in order after a primary failure.
            cache: Cache shared with other executors. A private one is created
                when omitted.
            default_ttl: TTL in seconds for ``CachedFallback`` entries that do
                not set their own. Defaults to five minutes.
            logger: Structured logger for fallback decisions.
        """
        self.strategies = tuple(strategies)
        self._cache = FallbackCache() if cache is None else cache
        self._default_ttl = (
            DEFAULT_CACHE_TTL_SECONDS if default_ttl is None else default_ttl
        )
        self._logger = get_logger(__name__) if logger is None else logger

    @property
    def cache(self) -> FallbackCache:
        return self._cache

    def clear_cache(self) -> None:
        self._cache.clear()

    def clear_cache_key(self, key: str) -> None:
        self._cache.discard(key)

    async def execute_with_fallback(
        self,
        operation: Callable[[], Awaitable[Any]],
        cache_key: str | None = None,
        context_label: str | None = None,
    ) -> Any:
        """Return the primary result, or the first successful fallback result.

        A successful primary result is cached under ``cache_key`` when given.

        A ``CachedFallback`` reached without a ``cache_key`` is a
        configuration error. It ends the chain at once instead of counting as
        one failed step, so strategies after it never run.

        Raises:
            FallbackConfigurationError: When a ``CachedFallback`` is reached
                without a ``cache_key``. Chained from the primary error.
            Exception: The primary operation's error when every strategy fails.
        """
        try:
            result = await operation()
        except Exception as primary_error:
            log_warning(
                self._logger,
                "fallback.primary_failed",
                context=context_label,
                cache_key=cache_key,
                error=str(primary_error),
                error_type=type(primary_error).__name__,
                strategies=[strategy.kind for strategy in self.strategies],
            )
            return await self._run_strategies(primary_error, cache_key, context_label)

        if cache_key is not None:
            self._cache.store(cache_key, result)
        return result

    async def _run_strategies(
        self,
        primary_error: Exception,
        cache_key: str | None,
        context_label: str | None,
    ) -> Any:
        for position, strategy in enumerate(self.strategies, start=1):
            if isinstance(strategy, ErrorFallback):
                log_error(
                    self._logger,
                    "fallback.error_strategy",
                    context=context_label,
                    position=position,
                    error=str(primary_error),
                )
                continue
            if isinstance(strategy, CachedFallback) and cache_key is None:
                raise FallbackConfigurationError(
                    "cached fallback strategy requires a cache_key"
                ) from primary_error

            try:
                outcome = await self._apply(strategy, cache_key)
            except Exception as strategy_error:
                log_warning(
                    self._logger,
                    "fallback.strategy_failed",
                    context=context_label,
                    strategy=strategy.kind,
                    position=position,
                    error=str(strategy_error),
                    error_type=type(strategy_error).__name__,
                )
                continue

            if outcome is _MISS:
                log_debug(
                    self._logger,
                    "fallback.cache_miss",
                    context=context_label,
                    cache_key=cache_key,
                    position=position,
                )
                continue

            log_info(
                self._logger,
                "fallback.strategy_succeeded",
                context=context_label,
                strategy=strategy.kind,
                position=position,
            )
            return outcome

        log_error(
            self._logger,
            "fallback.exhausted",
            context=context_label,
            strategies=len(self.strategies),
            error=str(primary_error),
            error_type=type(primary_error).__name__,
        )
        raise primary_error

    async def _apply(self, strategy: FallbackStrategy, cache_key: str | None) -> Any:
        if isinstance(strategy, DefaultFallback):
            return strategy.value
        if isinstance(strategy, CachedFallback):
            assert cache_key is not None
            ttl = self._default_ttl if strategy.ttl is None else strategy.ttl
            entry = self._cache.get(cache_key, ttl)
            return _MISS if entry is None else entry.value
        if isinstance(strategy, (AlternativeFallback, DegradedFallback)):
            return await strategy.operation()
        if isinstance(strategy, EmptyFallback):
            return strategy.factory()
        raise FallbackConfigurationError(f"unsupported fallback strategy: {strategy!r}")
