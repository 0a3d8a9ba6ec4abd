"""
Outbound webhook rate limiter using Redis sorted sets (sliding window).

Shared by every webhook worker that points at the same Redis, so the cap
holds across processes. Only used with the durable queue backend.
"""
import asyncio
import time
import uuid

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger()


class RateLimiter:
    """Sliding-window limiter: at most `limit` acquisitions per `window` seconds."""

    def __init__(self, redis_url: str, limit: int = 100, window: float = 1.0, key: str = "ratelimit:webhook-delivery"):
        self.redis_url = redis_url
        self.limit = limit
        self.window = window
        self.key = key
        self._redis = None

    async def get_redis(self):
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    async def is_allowed(self) -> tuple[bool, float]:
        """
        Take one slot if the window has room.

        Returns:
            (allowed: bool, retry_after: seconds until a slot frees up)
        """
        r = await self.get_redis()
        now = time.time()
        window_start = now - self.window

        try:
            pipe = r.pipeline()
            pipe.zremrangebyscore(self.key, 0, window_start)
            pipe.zcard(self.key)
            results = await pipe.execute()

            request_count = results[1]

            if request_count >= self.limit:
                oldest = await r.zrange(self.key, 0, 0, withscores=True)
                if oldest:
                    retry_after = self.window - (now - oldest[0][1])
                else:
                    retry_after = self.window
                return False, max(retry_after, 0.01)

            await r.zadd(self.key, {f"{now}:{uuid.uuid4().hex}": now})
            await r.expire(self.key, max(int(self.window), 1))

            return True, 0.0

        except RedisError as e:
            # Redis down: fail open, delivery itself will surface the outage
            logger.warning("rate_limiter_unavailable", key=self.key, error=str(e))
            return True, 0.0

    async def acquire(self) -> None:
        """Wait until a slot is available, then take it."""
        while True:
            allowed, retry_after = await self.is_allowed()
            if allowed:
                return
            logger.debug("rate_limited", key=self.key, retry_after=retry_after)
            await asyncio.sleep(retry_after)

    async def get_current_count(self) -> int:
        """Acquisitions inside the current window."""
        r = await self.get_redis()
        window_start = time.time() - self.window

        try:
            await r.zremrangebyscore(self.key, 0, window_start)
            return await r.zcard(self.key)
        except RedisError:
            return 0

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
