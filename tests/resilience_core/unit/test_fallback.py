from __future__ import annotations

import asyncio

import pytest

from resilience_core.errors import FallbackConfigurationError
from resilience_core.fallback import (
    AlternativeFallback,
    CachedFallback,
    DefaultFallback,
    DegradedFallback,
    EmptyFallback,
    ErrorFallback,
    FallbackCache,
    FallbackExecutor,
    alternative_with_empty,
    cached_with_default,
    degraded_service,
    multiple_alternatives,
)
from tests.resilience_core.support.fakes import FakeClock, FakeLogger

pytestmark = pytest.mark.asyncio


class _PrimaryError(RuntimeError):
    pass


async def _primary_fails() -> str:
    raise _PrimaryError("primary down")


def _value(result: object):
    async def _operation() -> object:
        return result

    return _operation


async def _strategy_fails() -> str:
    raise ValueError("fallback down")


async def test_primary_success_is_returned_and_cached(
    fake_logger: FakeLogger, fake_clock: FakeClock
) -> None:
    executor = FallbackExecutor([CachedFallback()], logger=fake_logger)

    assert await executor.execute_with_fallback(_value("fresh"), "rank:1") == "fresh"

    entry = executor.cache.get("rank:1", ttl=1.0)
    assert entry is not None
    assert entry.value == "fresh"
    assert fake_logger.events == []


async def test_cached_strategy_without_entry_falls_through_to_default(
    fake_logger: FakeLogger, fake_clock: FakeClock
) -> None:
    executor = FallbackExecutor(
        [CachedFallback(ttl=1.0), DefaultFallback("X")], logger=fake_logger
    )

    assert await executor.execute_with_fallback(_primary_fails, "k") == "X"
    assert "fallback.cache_miss" in fake_logger.events


async def test_cached_strategy_serves_fresh_entry(
    fake_logger: FakeLogger, fake_clock: FakeClock
) -> None:
    executor = FallbackExecutor(
        [CachedFallback(ttl=1.0), DefaultFallback("X")], logger=fake_logger
    )
    await executor.execute_with_fallback(_value("cached"), "k")
    fake_clock.advance(0.5)

    assert await executor.execute_with_fallback(_primary_fails, "k") == "cached"


async def test_cached_strategy_skips_and_evicts_expired_entry(
    fake_logger: FakeLogger, fake_clock: FakeClock
) -> None:
    executor = FallbackExecutor(
        [CachedFallback(ttl=1.0), DefaultFallback("X")], logger=fake_logger
    )
    await executor.execute_with_fallback(_value("cached"), "k")
    fake_clock.advance(1.5)

    assert await executor.execute_with_fallback(_primary_fails, "k") == "X"
    assert len(executor.cache) == 0


async def test_cached_strategy_uses_executor_default_ttl(
    fake_logger: FakeLogger, fake_clock: FakeClock
) -> None:
    executor = FallbackExecutor(
        [CachedFallback(), DefaultFallback("X")], default_ttl=10.0, logger=fake_logger
    )
    await executor.execute_with_fallback(_value("cached"), "k")

    fake_clock.advance(9.0)
    assert await executor.execute_with_fallback(_primary_fails, "k") == "cached"
    fake_clock.advance(2.0)
    assert await executor.execute_with_fallback(_primary_fails, "k") == "X"


async def test_library_default_ttl_is_five_minutes(
    fake_logger: FakeLogger, fake_clock: FakeClock
) -> None:
    executor = FallbackExecutor([CachedFallback()], logger=fake_logger)
    await executor.execute_with_fallback(_value("cached"), "k")

    fake_clock.advance(299.0)
    assert await executor.execute_with_fallback(_primary_fails, "k") == "cached"
    fake_clock.advance(2.0)
    with pytest.raises(_PrimaryError):
        await executor.execute_with_fallback(_primary_fails, "k")


async def test_all_strategies_failing_raises_primary_error(
    fake_logger: FakeLogger, fake_clock: FakeClock
) -> None:
    executor = FallbackExecutor(
        [
            CachedFallback(),
            AlternativeFallback(_strategy_fails),
            DegradedFallback(_strategy_fails),
        ],
        logger=fake_logger,
    )

    with pytest.raises(_PrimaryError, match="primary down"):
        await executor.execute_with_fallback(_primary_fails, "k", "rankings")

    assert fake_logger.events.count("fallback.strategy_failed") == 2
    [fields] = fake_logger.fields_for("fallback.exhausted")
    assert fields["context"] == "rankings"
    assert fields["error_type"] == "_PrimaryError"


async def test_empty_strategy_list_reraises_primary_error(
    fake_logger: FakeLogger,
) -> None:
    executor = FallbackExecutor([], logger=fake_logger)

    with pytest.raises(_PrimaryError):
        await executor.execute_with_fallback(_primary_fails)


async def test_first_successful_strategy_wins(fake_logger: FakeLogger) -> None:
    calls: list[str] = []

    async def _alternative() -> str:
        calls.append("alternative")
        return "mirror"

    async def _degraded() -> str:
        calls.append("degraded")
        return "partial"

    executor = FallbackExecutor(
        [
            AlternativeFallback(_strategy_fails),
            AlternativeFallback(_alternative),
            DegradedFallback(_degraded),
        ],
        logger=fake_logger,
    )

    assert await executor.execute_with_fallback(_primary_fails) == "mirror"
    assert calls == ["alternative"]
    [fields] = fake_logger.fields_for("fallback.strategy_succeeded")
    assert fields["strategy"] == "alternative"
    assert fields["position"] == 2


async def test_degraded_strategy_returns_partial_result(
    fake_logger: FakeLogger,
) -> None:
    executor = FallbackExecutor(
        [DegradedFallback(_value({"positions": [], "partial": True}))],
        logger=fake_logger,
    )

    result = await executor.execute_with_fallback(_primary_fails)

    assert result == {"positions": [], "partial": True}


async def test_empty_strategy_returns_fresh_empty_value(
    fake_logger: FakeLogger,
) -> None:
    executor = FallbackExecutor([EmptyFallback()], logger=fake_logger)

    first = await executor.execute_with_fallback(_primary_fails)
    second = await executor.execute_with_fallback(_primary_fails)

    assert first == [] and second == []
    assert first is not second
    assert await FallbackExecutor(
        [EmptyFallback(dict)], logger=fake_logger
    ).execute_with_fallback(_primary_fails) == {}


async def test_default_strategy_can_return_none(fake_logger: FakeLogger) -> None:
    executor = FallbackExecutor(
        [DefaultFallback(None), DefaultFallback("later")], logger=fake_logger
    )

    assert await executor.execute_with_fallback(_primary_fails) is None


async def test_error_strategy_fails_only_its_own_step(
    fake_logger: FakeLogger,
) -> None:
    executor = FallbackExecutor(
        [ErrorFallback(), DefaultFallback("X")], logger=fake_logger
    )

    assert await executor.execute_with_fallback(_primary_fails) == "X"
    assert fake_logger.events.index("fallback.error_strategy") < (
        fake_logger.events.index("fallback.strategy_succeeded")
    )


async def test_error_strategy_alone_reraises_primary_error(
    fake_logger: FakeLogger,
) -> None:
    executor = FallbackExecutor([ErrorFallback()], logger=fake_logger)

    with pytest.raises(_PrimaryError, match="primary down"):
        await executor.execute_with_fallback(_primary_fails)

    assert "fallback.error_strategy" in fake_logger.events
    assert "fallback.exhausted" in fake_logger.events


async def test_cached_strategy_without_cache_key_is_configuration_error(
    fake_logger: FakeLogger,
) -> None:
    executor = FallbackExecutor(
        [CachedFallback(), DefaultFallback("X")], logger=fake_logger
    )

    with pytest.raises(FallbackConfigurationError) as excinfo:
        await executor.execute_with_fallback(_primary_fails)

    assert isinstance(excinfo.value.__cause__, _PrimaryError)
    assert "fallback.strategy_succeeded" not in fake_logger.events


async def test_cancellation_is_not_converted_to_fallback(
    fake_logger: FakeLogger,
) -> None:
    async def _cancelled() -> str:
        raise asyncio.CancelledError()

    executor = FallbackExecutor([DefaultFallback("X")], logger=fake_logger)

    with pytest.raises(asyncio.CancelledError):
        await executor.execute_with_fallback(_cancelled)


async def test_clear_cache_and_clear_cache_key(
    fake_logger: FakeLogger, fake_clock: FakeClock
) -> None:
    executor = FallbackExecutor([CachedFallback()], logger=fake_logger)
    await executor.execute_with_fallback(_value(1), "a")
    await executor.execute_with_fallback(_value(2), "b")

    executor.clear_cache_key("a")
    assert executor.cache.get("a", ttl=60.0) is None
    assert len(executor.cache) == 1

    executor.clear_cache()
    assert len(executor.cache) == 0


async def test_cache_max_entries_evicts_least_recently_used(
    fake_clock: FakeClock,
) -> None:
    cache = FallbackCache(max_entries=2)
    cache.store("a", 1)
    cache.store("b", 2)
    assert cache.get("a", ttl=60.0) is not None

    cache.store("c", 3)

    assert cache.get("b", ttl=60.0) is None
    assert cache.get("a", ttl=60.0) is not None
    assert cache.get("c", ttl=60.0) is not None


async def test_cache_rejects_invalid_max_entries() -> None:
    with pytest.raises(ValueError, match="max_entries"):
        FallbackCache(max_entries=0)


async def test_cached_with_default_prefers_fresh_cache(
    fake_logger: FakeLogger, fake_clock: FakeClock
) -> None:
    executor = FallbackExecutor(cached_with_default("X", ttl=1.0), logger=fake_logger)

    assert await executor.execute_with_fallback(_primary_fails, "k") == "X"
    await executor.execute_with_fallback(_value("fresh"), "k")
    assert await executor.execute_with_fallback(_primary_fails, "k") == "fresh"
    fake_clock.advance(1.5)
    assert await executor.execute_with_fallback(_primary_fails, "k") == "X"


async def test_alternative_with_empty_falls_back_to_empty_value(
    fake_logger: FakeLogger,
) -> None:
    working = FallbackExecutor(
        alternative_with_empty(_value("mirror")), logger=fake_logger
    )
    broken = FallbackExecutor(
        alternative_with_empty(_strategy_fails, dict), logger=fake_logger
    )

    assert await working.execute_with_fallback(_primary_fails) == "mirror"
    assert await broken.execute_with_fallback(_primary_fails) == {}


async def test_degraded_service_orders_cache_partial_then_empty(
    fake_logger: FakeLogger, fake_clock: FakeClock
) -> None:
    strategies = degraded_service(_value({"summary": "partial"}))

    assert [strategy.kind for strategy in strategies] == [
        "cached",
        "degraded",
        "empty",
    ]
    executor = FallbackExecutor(strategies, logger=fake_logger)
    assert await executor.execute_with_fallback(_primary_fails, "report") == {
        "summary": "partial"
    }
    await executor.execute_with_fallback(_value({"summary": "full"}), "report")
    assert await executor.execute_with_fallback(_primary_fails, "report") == {
        "summary": "full"
    }


async def test_multiple_alternatives_tries_each_in_order(
    fake_logger: FakeLogger,
) -> None:
    executor = FallbackExecutor(
        multiple_alternatives([_strategy_fails, _value("second")], default="X"),
        logger=fake_logger,
    )

    assert await executor.execute_with_fallback(_primary_fails, "k") == "second"


@pytest.mark.parametrize(
    ("kwargs", "expected"),
    [({}, []), ({"default": None}, None), ({"default": "X"}, "X")],
)
async def test_multiple_alternatives_ends_with_default_or_empty(
    kwargs: dict[str, object], expected: object, fake_logger: FakeLogger
) -> None:
    executor = FallbackExecutor(
        multiple_alternatives([_strategy_fails], **kwargs), logger=fake_logger
    )

    assert await executor.execute_with_fallback(_primary_fails, "k") == expected
