from __future__ import annotations

import pytest

import resilience_core.circuit_breaker.breaker as breaker_mod
import resilience_core.fallback as fallback_mod
from tests.resilience_core.support.fakes import FakeClock, FakeLogger, RecordingSleep


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def fake_clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    """Install one fake clock for breaker and fallback-cache timestamps."""
    clock = FakeClock()
    monkeypatch.setattr(breaker_mod, "_utcnow", clock.now)
    monkeypatch.setattr(fallback_mod, "_utcnow", clock.now)
    return clock


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    """Provide a backoff sleep that never actually waits."""
    return RecordingSleep()
