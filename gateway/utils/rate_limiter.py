"""Rate limiting utilities using Redis."""

import redis.asyncio as redis
import time
import uuid


class RateLimiter:
    """Sliding-window rate limiter using Redis sorted sets.

    The prefix scopes the window, so a limiter built for one integration
    instance never consumes another instance's quota.
    """

    def __init__(self, redis_client: redis.Redis, prefix: str = "rate_limit"):
        self.redis_client = redis_client
        self.prefix = prefix

    async def check_rate_limit(
        self,
        key: str,
        limit: int = 100,
        window: int = 3600,
    ) -> bool:
        """Record a request and return False if the window is already full."""
        full_key = f"{self.prefix}:{key}"
        current_time = time.time()
        window_start = current_time - window

        # Remove old entries
        await self.redis_client.zremrangebyscore(full_key, 0, window_start)

        # Count requests in current window
        count = await self.redis_client.zcard(full_key)

        if count >= limit:
            return False

        # Add current request
        await self.redis_client.zadd(full_key, {uuid.uuid4().hex: current_time})
        await self.redis_client.expire(full_key, window)

        return True

    async def get_remaining_requests(
        self,
        key: str,
        limit: int = 100,
        window: int = 3600,
    ) -> int:
        """Get remaining requests in current window."""
        full_key = f"{self.prefix}:{key}"
        window_start = time.time() - window

        # Remove old entries
        await self.redis_client.zremrangebyscore(full_key, 0, window_start)

        # Count requests in current window
        count = await self.redis_client.zcard(full_key)

        return max(0, limit - count)

    async def reset_rate_limit(self, key: str) -> None:
        """Reset rate limit for a key."""
        full_key = f"{self.prefix}:{key}"
        await self.redis_client.delete(full_key)
