"""Tests for RateLimiter."""

import pytest

from conftest import FakeClock
from session_engine.core.rate_limiter import RateLimiter
from session_engine.errors import RateLimited
from session_engine.types import RateLimitConfig


def _limiter(clock, max_requests=3, window_seconds=60.0) -> RateLimiter:
    return RateLimiter(RateLimitConfig(max_requests=max_requests, window_seconds=window_seconds), clock=clock)


class TestCheck:
    def test_allows_up_to_limit(self):
        limiter = _limiter(FakeClock())
        results = [limiter.check("1.2.3.4") for _ in range(4)]
        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]
        assert results[0].retry_after is None

    def test_retry_after_counts_down_to_window_end(self):
        clock = FakeClock()
        limiter = _limiter(clock, max_requests=1)
        limiter.check("a")
        clock.advance(45)
        result = limiter.check("a")
        assert not result.allowed
        assert result.retry_after == 15
        assert result.reset_at == 1060

    def test_window_reopens(self):
        clock = FakeClock()
        limiter = _limiter(clock, max_requests=1)
        assert limiter.check("a").allowed
        assert not limiter.check("a").allowed
        clock.advance(60)
        assert limiter.check("a").allowed

    def test_identifiers_are_independent(self):
        limiter = _limiter(FakeClock(), max_requests=1)
        assert limiter.check("a").allowed
        assert limiter.check("b").allowed
        assert not limiter.check("a").allowed

    def test_rejected_requests_do_not_extend_window(self):
        clock = FakeClock()
        limiter = _limiter(clock, max_requests=1)
        limiter.check("a")
        for _ in range(5):
            clock.advance(10)
            limiter.check("a")
        clock.advance(10)
        assert limiter.check("a").allowed


def test_acquire_raises():
    limiter = _limiter(FakeClock(), max_requests=1)
    limiter.acquire("a")
    with pytest.raises(RateLimited) as exc_info:
        limiter.acquire("a")
    assert exc_info.value.limit == 1
    assert exc_info.value.retry_after == 60
    assert exc_info.value.identifier == "a"


def test_stats_does_not_count():
    clock = FakeClock()
    limiter = _limiter(clock, max_requests=2)
    assert limiter.stats("a") is None
    limiter.check("a")
    assert limiter.stats("a").remaining == 1
    assert limiter.stats("a").remaining == 1
    clock.advance(61)
    assert limiter.stats("a") is None


def test_reset_and_sweep():
    clock = FakeClock()
    limiter = _limiter(clock, max_requests=1)
    limiter.check("a")
    limiter.check("b")
    limiter.reset("a")
    assert limiter.check("a").allowed
    assert not limiter.check("b").allowed

    clock.advance(60)
    assert limiter.sweep() == 2
    assert limiter.stats("b") is None

    limiter.check("c")
    limiter.reset()
    assert limiter.stats("c") is None
