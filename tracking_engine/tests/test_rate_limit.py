"""Tests for the fixed-window rate limiter"""

import pytest

from tracking_engine.errors import RateLimitError
from tracking_engine.router.rate_limit import RateLimiter


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestRateLimiter:

    @pytest.fixture
    def clock(self):
        return FakeClock()

    def test_remaining_counts_down(self, clock):
        limiter = RateLimiter(max_requests=3, window_seconds=60, clock=clock)
        assert [limiter.hit("1.2.3.4") for _ in range(3)] == [2, 1, 0]

    def test_exhausted_window_raises_with_retry_after(self, clock):
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
        limiter.hit("1.2.3.4")
        clock.now = 15

        with pytest.raises(RateLimitError) as exc_info:
            limiter.hit("1.2.3.4")

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 45

    def test_keys_are_independent(self, clock):
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
        limiter.hit("a")
        assert limiter.hit("b") == 0

    def test_window_resets(self, clock):
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
        limiter.hit("a")
        clock.now = 60
        assert limiter.hit("a") == 0

    def test_prune_drops_stale_windows(self, clock):
        limiter = RateLimiter(max_requests=5, window_seconds=10, clock=clock)
        limiter.hit("a")
        clock.now = 11
        limiter.prune()
        assert limiter._counters == {}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
