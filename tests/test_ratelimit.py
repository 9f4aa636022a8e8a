"""Tests for dps_event_notifier.ratelimit.TokenBucket."""

from __future__ import annotations

import pytest

from dps_event_notifier.errors import RateLimitExceeded
from dps_event_notifier.ratelimit import TokenBucket


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class TestTokenBucket:
    """Token bucket behaviour."""

    def test_burst_goes_through_without_waiting(self, clock) -> None:
        """Up to capacity acquisitions are immediate."""
        bucket = TokenBucket(rate=1.0, capacity=3, clock=clock, sleep=clock.sleep)
        assert [bucket.acquire() for _ in range(3)] == [0.0, 0.0, 0.0]
        assert clock.sleeps == []

    def test_blocks_until_refilled(self, clock) -> None:
        """An empty bucket waits for the next token."""
        bucket = TokenBucket(rate=2.0, capacity=1, clock=clock, sleep=clock.sleep)
        bucket.acquire()
        waited = bucket.acquire()
        assert waited == pytest.approx(0.5)
        assert sum(clock.sleeps) == pytest.approx(0.5)

    def test_refills_over_time(self, clock) -> None:
        """Tokens come back at the configured rate, capped at capacity."""
        bucket = TokenBucket(rate=1.0, capacity=2, clock=clock, sleep=clock.sleep)
        bucket.acquire()
        bucket.acquire()
        clock.now += 10
        assert bucket.available == pytest.approx(2.0)

    def test_wait_ceiling_raises(self, clock) -> None:
        """Waits longer than max_wait fail without sleeping."""
        bucket = TokenBucket(rate=0.1, capacity=1, max_wait=1.0, clock=clock, sleep=clock.sleep)
        bucket.acquire()
        with pytest.raises(RateLimitExceeded) as info:
            bucket.acquire()
        assert info.value.ceiling == 1.0
        assert clock.sleeps == []

    def test_reset(self, clock) -> None:
        """reset() refills the bucket."""
        bucket = TokenBucket(rate=1.0, capacity=2, clock=clock, sleep=clock.sleep)
        bucket.acquire()
        bucket.acquire()
        bucket.reset()
        assert bucket.available == pytest.approx(2.0)

    def test_invalid_arguments(self) -> None:
        """Rate and capacity must be positive."""
        with pytest.raises(ValueError):
            TokenBucket(rate=0)
        with pytest.raises(ValueError):
            TokenBucket(rate=1, capacity=0)
