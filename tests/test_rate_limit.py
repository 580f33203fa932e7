"""Tests for the sliding-window request throttle."""

from __future__ import annotations

import pytest

from app.config import Settings
from app.rate_limit import RequestThrottle, SlidingWindowRateLimiter


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.anyio("asyncio")
async def test_limit_applies_per_key_within_window() -> None:
    clock = _Clock()
    limiter = SlidingWindowRateLimiter(2, 60, clock=clock)

    assert await limiter.hit("ip:1") is None
    clock.now += 10
    assert await limiter.hit("ip:1") is None
    clock.now += 5
    assert await limiter.hit("ip:1") == pytest.approx(45.0)
    assert await limiter.hit("ip:2") is None


@pytest.mark.anyio("asyncio")
async def test_window_slides_as_old_requests_expire() -> None:
    clock = _Clock()
    limiter = SlidingWindowRateLimiter(2, 60, clock=clock)
    await limiter.hit("user:a")
    clock.now += 30
    await limiter.hit("user:a")

    clock.now += 30
    assert await limiter.hit("user:a") is None
    # The first request has expired; the one at +30s is now the oldest.
    assert await limiter.hit("user:a") == pytest.approx(30.0)


def test_limit_must_allow_at_least_one_request() -> None:
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(0, 60)


@pytest.mark.anyio("asyncio")
async def test_throttle_reports_first_exceeded_limit() -> None:
    clock = _Clock()
    throttle = RequestThrottle(
        SlidingWindowRateLimiter(3, 60, clock=clock),
        SlidingWindowRateLimiter(1, 60, clock=clock),
    )

    assert await throttle.check("203.0.113.7", "user-1") is None
    assert await throttle.check("203.0.113.7", "user-1") == (pytest.approx(60.0), 1)
    assert await throttle.check("203.0.113.7", "user-2") is None
    assert await throttle.check("203.0.113.7", "user-3") == (pytest.approx(60.0), 3)


def test_throttle_reads_limits_from_settings() -> None:
    settings = Settings(
        _env_file=None,
        RATE_LIMIT_PER_IP=7,
        RATE_LIMIT_PER_USER=2,
        RATE_LIMIT_WINDOW_SECONDS=30,
    )

    throttle = RequestThrottle.from_settings(settings)

    assert throttle.per_address.max_requests == 7
    assert throttle.per_user.max_requests == 2
    assert throttle.per_user.window_seconds == 30
