import logging
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import Settings, get_settings

logger = logging.getLogger(__name__)


class RedisCrudService:
    """Async counter operations against a Redis instance (rate-limit windows)."""

    def __init__(self, url: str) -> None:
        """Create a Redis client for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._client: Redis[Any] | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent; raises if the ping fails."""
        if self._client is not None:
            return
        self._client = Redis.from_url(self._url, decode_responses=True)
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def incr(self, key: str, ttl_seconds: int | None = None) -> int | None:
        """Increment a counter; the first hit starts its expiry window.

        Returns:
            int | None: The new count, or None when Redis is unavailable.
        """
        if self._client is None:
            return None
        try:
            count = int(await self._client.incr(key))
            if count == 1 and ttl_seconds:
                await self._client.expire(key, ttl_seconds)
            return count
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis incr %s failed: %s", key, e)
            return None

    async def ttl(self, key: str) -> int | None:
        """Seconds until key expires; None if missing, persistent or on error."""
        if self._client is None:
            return None
        try:
            remaining = int(await self._client.ttl(key))
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ttl %s failed: %s", key, e)
            return None
        return remaining if remaining > 0 else None


def get_redis_crud_service(settings: Settings | None = None) -> RedisCrudService | None:
    """Return a Redis service if redis_url is configured, else None."""
    settings = settings or get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisCrudService(settings.redis_url.strip())
