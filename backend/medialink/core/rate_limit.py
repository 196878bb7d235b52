from __future__ import annotations

import time
from collections import deque
from typing import Callable, Deque

import anyio

WindowBucket = Deque[float]


def _prune(bucket: WindowBucket, now: float, window_seconds: float) -> None:
    while bucket and now - bucket[0] >= window_seconds:
        bucket.popleft()


class SlidingWindowLimiter:
    """
    Simple in-memory rate limiter shared per-process.

    Args:
        limit: max acquisitions allowed in the window; 0 or less disables limiting.
        window_seconds: rolling window length in seconds.
    """

    def __init__(self, limit: int, window_seconds: float = 1.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.limit = int(limit)
        self.window_seconds = float(window_seconds)
        self.clock = clock
        self.bucket: WindowBucket = deque()

    def reserve(self) -> float:
        """Take a slot now and return 0, or return the seconds until one frees up."""
        if self.limit <= 0:
            return 0.0
        now = self.clock()
        _prune(self.bucket, now, self.window_seconds)
        if len(self.bucket) >= self.limit:
            return max(0.001, self.bucket[0] + self.window_seconds - now)
        self.bucket.append(now)
        return 0.0

    async def acquire(self) -> None:
        while True:
            wait = self.reserve()
            if wait <= 0:
                return
            await anyio.sleep(wait)

    def reset(self) -> None:
        self.bucket.clear()
