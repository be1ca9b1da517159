"""
Outbound rate limiter using Redis sorted sets (sliding window).

Keeps each tenant's calls to a platform under the platform's quota.
Fails open when Redis is unavailable.
"""
import time
import redis.asyncio as redis
from redis.exceptions import RedisError

from syncengine.config import settings
from syncengine.logging_config import get_logger

log = get_logger(component="rate_limiter")


class RateLimiter:
    """Per (tenant, platform) limiter using Redis sorted sets."""

    def __init__(self, redis_url: str = None, limit: int = None, window: int = 60):
        self.redis_url = redis_url or settings.REDIS_URL
        self._redis = None
        self.limit = limit or settings.ADAPTER_RATE_LIMIT_PER_MINUTE
        self.window = window

    async def get_redis(self):
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    async def is_allowed(self, tenant_id: str, platform: str) -> tuple[bool, int]:
        """
        Check if another call is allowed for the tenant on this platform.

        Returns:
            (allowed: bool, retry_after: int)
        """
        r = await self.get_redis()
        key = f"ratelimit:{platform}:{tenant_id}"
        now = time.time()
        window_start = now - self.window

        try:
            pipe = r.pipeline()
            pipe.zremrangebyscore(key, 0, window_start)
            pipe.zcard(key)
            results = await pipe.execute()

            request_count = results[1]

            if request_count >= self.limit:
                oldest = await r.zrange(key, 0, 0, withscores=True)
                if oldest:
                    retry_after = int(self.window - (now - oldest[0][1]))
                else:
                    retry_after = self.window
                return False, max(retry_after, 1)

            await r.zadd(key, {str(now): now})
            await r.expire(key, self.window)

            return True, 0

        except (RedisError, OSError) as e:
            # Redis down: allow the call (fail open)
            log.warning("rate_limiter_unavailable", tenant_id=tenant_id, platform=platform, error=str(e))
            return True, 0

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
