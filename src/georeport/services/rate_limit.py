"""Fixed-window rate limiting with a pluggable bucket store.

The store is created at app startup and passed to the limiter; buckets expire
with their window, so nothing grows without bound.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Protocol, Tuple

from .redis import RedisCrudService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_seconds: float


class BucketStore(Protocol):
    async def hit(self, key: str, window_seconds: int) -> Tuple[int, float]:
        """Count one request for key; return (count in window, seconds until reset)."""
        ...


class InMemoryBucketStore:
    """Per-process buckets; expired windows are evicted on access and by ``purge``."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._buckets: Dict[str, Tuple[int, float]] = {}

    def __len__(self) -> int:
        return len(self._buckets)

    def purge(self) -> int:
        now = self._clock()
        expired = [key for key, (_, reset_at) in self._buckets.items() if reset_at <= now]
        for key in expired:
            del self._buckets[key]
        return len(expired)

    async def hit(self, key: str, window_seconds: int) -> Tuple[int, float]:
        self.purge()
        now = self._clock()
        count, reset_at = self._buckets.get(key, (0, now + window_seconds))
        count += 1
        self._buckets[key] = (count, reset_at)
        return count, reset_at - now


class RedisBucketStore:
    """Buckets shared between workers: INCR with an expiry set on the first hit."""

    def __init__(self, redis: RedisCrudService, prefix: str = "georeport:ratelimit:") -> None:
        self._redis = redis
        self._prefix = prefix

    async def hit(self, key: str, window_seconds: int) -> Tuple[int, float]:
        redis_key = f"{self._prefix}{key}"
        count = await self._redis.incr(redis_key, ttl_seconds=window_seconds)
        if count is None:
            # Redis down: let the request through.
            return 0, float(window_seconds)
        remaining = await self._redis.ttl(redis_key)
        return count, float(remaining if remaining is not None else window_seconds)


class RateLimiter:
    def __init__(self, store: BucketStore, limit: int, window_seconds: int) -> None:
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds

    async def check(self, key: str) -> RateLimitDecision:
        count, reset_seconds = await self.store.hit(key, self.window_seconds)
        allowed = count <= self.limit
        if not allowed:
            logger.info("Rate limit hit for %s (%d/%d)", key, count, self.limit)
        return RateLimitDecision(
            allowed=allowed,
            remaining=max(self.limit - count, 0),
            reset_seconds=max(reset_seconds, 0.0),
        )
