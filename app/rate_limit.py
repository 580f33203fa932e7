"""Per-client request throttling for the public API."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Callable

from .config import Settings


class SlidingWindowRateLimiter:
    """Allow at most ``max_requests`` per key within a sliding window."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._events: dict[str, deque[float]] = {}
        self._lock = asyncio.Lock()

    async def hit(self, key: str) -> float | None:
        """Record a request for ``key``.

        Returns ``None`` when the request is allowed, otherwise the number of
        seconds until the oldest request in the window expires. Rejected
        requests are not recorded.
        """

        async with self._lock:
            now = self._clock()
            events = self._events.setdefault(key, deque())
            while events and now - events[0] >= self.window_seconds:
                events.popleft()

            if len(events) < self.max_requests:
                events.append(now)
                return None
            return max(0.001, self.window_seconds - (now - events[0]))


class RequestThrottle:
    """Combine a per-address and a per-user limiter for one endpoint."""

    def __init__(
        self,
        per_address: SlidingWindowRateLimiter,
        per_user: SlidingWindowRateLimiter,
    ):
        self.per_address = per_address
        self.per_user = per_user

    @classmethod
    def from_settings(cls, settings: Settings) -> "RequestThrottle":
        window = settings.rate_limit_window_seconds
        return cls(
            SlidingWindowRateLimiter(settings.rate_limit_per_ip, window),
            SlidingWindowRateLimiter(settings.rate_limit_per_user, window),
        )

    async def check(self, address: str, user_id: str) -> tuple[float, int] | None:
        """Return ``(retry_after, limit)`` for the first exceeded limit, if any."""

        for limiter, key in (
            (self.per_address, f"ip:{address}"),
            (self.per_user, f"user:{user_id}"),
        ):
            retry_after = await limiter.hit(key)
            if retry_after is not None:
                return retry_after, limiter.max_requests
        return None
