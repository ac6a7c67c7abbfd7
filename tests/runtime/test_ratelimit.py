"""Tests for RateLimiter."""

from __future__ import annotations

import threading
import time

import pytest
from pydantic import ValidationError

from toolbridge.runtime.ratelimit import RateLimitConfig, RateLimiter


class _FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch) -> _FakeClock:
    """Freeze the wall clock the limits storage reads."""
    fake = _FakeClock()
    monkeypatch.setattr(time, "time", fake)
    return fake


class TestRateLimiter:
    def test_fourth_call_rejected_then_admitted_after_window(self, clock: _FakeClock) -> None:
        limiter = RateLimiter(RateLimitConfig(max_calls=3, window_seconds=60))

        results = [limiter.admit("alice") for _ in range(4)]
        assert results == [True, True, True, False]

        clock.now += 61
        assert limiter.admit("alice") is True

    def test_callers_are_independent(self, clock: _FakeClock) -> None:
        limiter = RateLimiter(RateLimitConfig(max_calls=1, window_seconds=60))
        assert limiter.admit("alice")
        assert not limiter.admit("alice")
        assert limiter.admit("bob")

    def test_window_slides(self, clock: _FakeClock) -> None:
        limiter = RateLimiter(RateLimitConfig(max_calls=2, window_seconds=10))
        assert limiter.admit("c")
        clock.now += 5
        assert limiter.admit("c")
        clock.now += 4
        assert not limiter.admit("c")
        clock.now += 2  # first call has left the window, second has not
        assert limiter.admit("c")
        assert not limiter.admit("c")

    def test_rejected_calls_are_not_recorded(self, clock: _FakeClock) -> None:
        limiter = RateLimiter(RateLimitConfig(max_calls=1, window_seconds=10))
        assert limiter.admit("c")
        clock.now += 9
        assert not limiter.admit("c")
        clock.now += 2
        assert limiter.admit("c")

    def test_retry_after(self, clock: _FakeClock) -> None:
        limiter = RateLimiter(RateLimitConfig(max_calls=1, window_seconds=60))
        assert limiter.retry_after("c") == 0.0
        limiter.admit("c")
        clock.now += 15
        assert limiter.retry_after("c") == pytest.approx(45.0, abs=1.0)

    def test_retry_after_with_free_slot(self, clock: _FakeClock) -> None:
        limiter = RateLimiter(RateLimitConfig(max_calls=2, window_seconds=60))
        limiter.admit("c")
        assert limiter.retry_after("c") == 0.0

    def test_reset(self, clock: _FakeClock) -> None:
        limiter = RateLimiter(RateLimitConfig(max_calls=1, window_seconds=60))
        limiter.admit("a")
        limiter.admit("b")
        limiter.reset("a")
        assert limiter.admit("a")
        assert not limiter.admit("b")
        limiter.reset()
        assert limiter.admit("b")

    def test_separate_limiters_share_nothing(self, clock: _FakeClock) -> None:
        config = RateLimitConfig(max_calls=1, window_seconds=60)
        first, second = RateLimiter(config), RateLimiter(config)
        assert first.admit("c")
        assert second.admit("c")

    def test_concurrent_admission_never_exceeds_limit(self) -> None:
        limiter = RateLimiter(RateLimitConfig(max_calls=50, window_seconds=60))
        admitted: list[bool] = []
        lock = threading.Lock()

        def worker() -> None:
            for _ in range(20):
                ok = limiter.admit("shared")
                with lock:
                    admitted.append(ok)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(admitted) == 50


class TestRateLimitConfig:
    def test_defaults(self) -> None:
        config = RateLimitConfig()
        assert config.max_calls == 60
        assert config.window_seconds == 60

    @pytest.mark.parametrize("kwargs", [{"max_calls": 0}, {"window_seconds": 0}])
    def test_rejects_non_positive(self, kwargs: dict[str, int]) -> None:
        with pytest.raises(ValidationError):
            RateLimitConfig(**kwargs)

    def test_rejects_fractional_window(self) -> None:
        with pytest.raises(ValidationError):
            RateLimitConfig(window_seconds=1.5)
