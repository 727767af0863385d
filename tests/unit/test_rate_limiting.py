# tests/unit/test_rate_limiting.py
from __future__ import annotations

import pytest

from app.core.rate_limiting import IntervalRateLimiter, UnlimitedRateLimiter
from tests.fixtures import FakeClock


@pytest.mark.asyncio
async def test_first_acquire_passes_immediately():
    clock = FakeClock()
    limiter = IntervalRateLimiter(2.0, clock=clock)

    await limiter.acquire()

    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_consecutive_acquires_are_spaced():
    """Test that the second call waits out the remaining gap."""
    clock = FakeClock()
    limiter = IntervalRateLimiter(2.0, clock=clock)

    await limiter.acquire()
    clock.advance(0.5)
    await limiter.acquire()

    assert clock.sleeps == [1.5]


@pytest.mark.asyncio
async def test_no_wait_when_gap_already_passed():
    clock = FakeClock()
    limiter = IntervalRateLimiter(2.0, clock=clock)

    await limiter.acquire()
    clock.advance(5)
    await limiter.acquire()

    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_zero_interval_never_sleeps():
    clock = FakeClock()
    limiter = IntervalRateLimiter(0, clock=clock)

    for _ in range(3):
        await limiter.acquire()

    assert clock.sleeps == []


def test_negative_interval_rejected():
    with pytest.raises(ValueError):
        IntervalRateLimiter(-1)


@pytest.mark.asyncio
async def test_unlimited_limiter():
    assert await UnlimitedRateLimiter().acquire() is None
