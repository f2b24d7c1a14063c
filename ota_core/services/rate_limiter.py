"""
Outbound rate limiting

Token bucket per (hotel, channel). Refill and take happen without an await
in between, so the check-and-decrement is atomic on the event loop; waiters
sleep until the next token is due.
"""

import asyncio
import logging
from typing import Dict, Tuple

from .adapters.base import RateLimitProfile

logger = logging.getLogger(__name__)


class TokenBucket:
    def __init__(self, requests_per_second: float, burst: int, clock):
        self.clock = clock
        self.rate = max(requests_per_second, 0.001)
        self.capacity = max(1, burst)
        self.tokens = float(self.capacity)
        self.updated_at = clock.monotonic()

    def reconfigure(self, requests_per_second: float, burst: int):
        self._refill()
        self.rate = max(requests_per_second, 0.001)
        self.capacity = max(1, burst)
        self.tokens = min(self.tokens, self.capacity)

    def _refill(self):
        now = self.clock.monotonic()
        elapsed = now - self.updated_at
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
            self.updated_at = now

    def try_acquire(self) -> bool:
        self._refill()
        if self.tokens >= 1:
            self.tokens -= 1
            return True
        return False

    def wait_time(self) -> float:
        """Seconds until one token is available"""
        self._refill()
        return 0.0 if self.tokens >= 1 else (1 - self.tokens) / self.rate

    async def acquire(self, timeout: float) -> bool:
        """Take a token, waiting at most `timeout` seconds. False on timeout."""
        deadline = self.clock.monotonic() + timeout
        while True:
            if self.try_acquire():
                return True
            wait = self.wait_time()
            if self.clock.monotonic() + wait > deadline:
                return False
            await asyncio.sleep(wait)


class RateLimiterRegistry:
    """Shared buckets keyed by (hotel, channel)"""

    def __init__(self, clock):
        self.clock = clock
        self._buckets: Dict[Tuple[str, str], TokenBucket] = {}

    def bucket(self, hotel_id: str, channel: str, profile: RateLimitProfile) -> TokenBucket:
        key = (hotel_id or "", channel)
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(profile.requests_per_second, profile.burst, self.clock)
            self._buckets[key] = bucket
        elif bucket.rate != profile.requests_per_second or bucket.capacity != profile.burst:
            logger.info(f"Rate limit for {hotel_id}/{channel} changed to {profile}")
            bucket.reconfigure(profile.requests_per_second, profile.burst)
        return bucket

    async def acquire(self, hotel_id: str, channel: str, profile: RateLimitProfile, timeout: float) -> bool:
        return await self.bucket(hotel_id, channel, profile).acquire(timeout)

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        return {
            f"{hotel}/{channel}": {"tokens": round(b.tokens, 2), "rate": b.rate, "burst": b.capacity}
            for (hotel, channel), b in self._buckets.items()
        }
