"""
Token-bucket rate limiting for inbound webhooks, one bucket per client key.

Tokens refill at ``rate`` per second up to ``burst``. ``acquire(timeout=0)``
answers immediately, which is what an HTTP handler wants: reject with 429
rather than hold the request open.
"""
from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from typing import Callable


class TokenBucketRateLimiter:
    def __init__(self, rate: float = 10.0, burst: int = 10,
                 clock: Callable[[], float] = time.monotonic):
        self.rate = rate
        self.burst = burst
        self._clock = clock
        self._tokens: float = float(burst)
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: float = 0.0) -> bool:
        deadline = self._clock() + timeout
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
            remaining = deadline - self._clock()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(1.0 / max(self.rate, 0.001), remaining))

    def _refill(self) -> None:
        now = self._clock()
        self._tokens = min(self.burst, self._tokens + (now - self._last_refill) * self.rate)
        self._last_refill = now


class KeyedRateLimiter:
    """
    A TokenBucketRateLimiter per key (client IP).

    At most ``max_keys`` buckets are kept; the least recently used one is
    dropped first, which only ever hands that client a fresh full bucket.
    """

    def __init__(self, rate: float, burst: int, max_keys: int = 10_000,
                 clock: Callable[[], float] = time.monotonic):
        self.rate = rate
        self.burst = burst
        self.max_keys = max_keys
        self._clock = clock
        self._buckets: OrderedDict[str, TokenBucketRateLimiter] = OrderedDict()

    @classmethod
    def per_hour(cls, limit: int, **kwargs) -> "KeyedRateLimiter":
        return cls(rate=limit / 3600.0, burst=limit, **kwargs)

    async def allow(self, key: str) -> bool:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucketRateLimiter(self.rate, self.burst, clock=self._clock)
            self._buckets[key] = bucket
            if len(self._buckets) > self.max_keys:
                self._buckets.popitem(last=False)
        else:
            self._buckets.move_to_end(key)
        return await bucket.acquire()
