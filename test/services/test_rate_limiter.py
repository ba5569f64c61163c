"""Unit tests for the rolling-window rate limiter."""

import threading

import pytest

from ralph_controller.services.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestRateLimiter:
    def test_rejects_invalid_budget(self):
        with pytest.raises(ValueError):
            RateLimiter(max_calls_per_hour=0)

    def test_never_exceeds_budget_within_window(self):
        clock = FakeClock()
        limiter = RateLimiter(max_calls_per_hour=3, clock=clock)

        granted = 0
        for _ in range(10):
            if limiter.try_acquire():
                granted += 1
            clock.advance(60)

        assert granted == 3
        assert limiter.remaining_calls == 0

    def test_slot_frees_when_oldest_call_leaves_window(self):
        clock = FakeClock()
        limiter = RateLimiter(max_calls_per_hour=2, clock=clock)
        assert limiter.try_acquire()
        clock.advance(100)
        assert limiter.try_acquire()
        assert not limiter.try_acquire()

        clock.advance(3500)

        assert limiter.calls_in_window == 1
        assert limiter.try_acquire()

    def test_time_until_reset(self):
        clock = FakeClock()
        limiter = RateLimiter(max_calls_per_hour=1, clock=clock)
        assert limiter.time_until_reset == 0.0

        limiter.try_acquire()
        clock.advance(600)

        assert limiter.time_until_reset == pytest.approx(3000.0)

    def test_reset_clears_calls(self):
        limiter = RateLimiter(max_calls_per_hour=1, clock=FakeClock())
        limiter.try_acquire()

        limiter.reset()

        assert limiter.remaining_calls == 1


class TestWaitForSlot:
    def test_returns_immediately_when_slot_free(self):
        limiter = RateLimiter(max_calls_per_hour=1, clock=FakeClock())

        assert limiter.wait_for_slot() is True

    def test_cancelled_wait_returns_false(self):
        limiter = RateLimiter(max_calls_per_hour=1, clock=FakeClock())
        limiter.try_acquire()
        cancel = threading.Event()
        cancel.set()

        assert limiter.wait_for_slot(cancel) is False

    def test_wakes_when_window_expires(self):
        limiter = RateLimiter(max_calls_per_hour=1, window_seconds=0.05)
        limiter.try_acquire()

        assert limiter.wait_for_slot(threading.Event()) is True
        assert limiter.try_acquire()
