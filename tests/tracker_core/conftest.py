from __future__ import annotations

import pytest

import tracker_core.circuit_breaker.breaker as breaker_mod
from tests.tracker_core.support.fakes import FakeClock, FakeLogger


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    """Freeze breaker time at a fixed instant; advance it explicitly."""
    fake_clock = FakeClock()
    monkeypatch.setattr(breaker_mod, "_utcnow", fake_clock.now)
    return fake_clock
