"""Tests for the per-platform TokenBucket, driven by a fake clock."""
import pytest

from activity_sync.sync.rate_limit import TokenBucket


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class TestTokenBucket:
    def test_starts_full(self, clock):
        bucket = TokenBucket(rate=1, capacity=3, clock=clock, sleep=clock.sleep)
        assert [bucket.try_acquire() for _ in range(4)] == [True, True, True, False]

    def test_refills_over_time(self, clock):
        bucket = TokenBucket(rate=2, capacity=2, clock=clock, sleep=clock.sleep)
        bucket.try_acquire(2)
        clock.now += 0.5
        assert bucket.try_acquire()
        assert not bucket.try_acquire()

    def test_never_exceeds_capacity(self, clock):
        bucket = TokenBucket(rate=10, capacity=5, clock=clock, sleep=clock.sleep)
        clock.now += 100
        assert bucket.tokens == 5

    def test_per_minute(self, clock):
        bucket = TokenBucket.per_minute(60, 10, clock=clock, sleep=clock.sleep)
        assert bucket.rate == 1.0
        assert bucket.capacity == 10

    @pytest.mark.asyncio
    async def test_acquire_waits_for_refill(self, clock):
        bucket = TokenBucket(rate=1, capacity=1, clock=clock, sleep=clock.sleep)
        await bucket.acquire()
        await bucket.acquire()
        assert clock.sleeps == [pytest.approx(1.0)]

    @pytest.mark.asyncio
    async def test_acquire_more_than_capacity(self, clock):
        bucket = TokenBucket(rate=1, capacity=2, clock=clock, sleep=clock.sleep)
        with pytest.raises(ValueError):
            await bucket.acquire(3)

    def test_rejects_non_positive_rate(self):
        with pytest.raises(ValueError):
            TokenBucket(rate=0, capacity=1)
