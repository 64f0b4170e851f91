"""Redis-backed non-blocking locks."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
import logging
import uuid

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class LockManager:
    """Try-locks keyed by name.

    ``acquire`` never waits: a held lock means the caller's work is already
    in flight somewhere, and the caller drops its trigger.
    """

    def __init__(self, redis_client: redis.Redis, prefix: str = "lock"):
        self.redis_client = redis_client
        self.prefix = prefix

    async def acquire(self, name: str, ttl: int) -> Optional[str]:
        token = uuid.uuid4().hex
        acquired = await self.redis_client.set(f"{self.prefix}:{name}", token, nx=True, ex=ttl)
        return token if acquired else None

    async def release(self, name: str, token: str) -> None:
        key = f"{self.prefix}:{name}"
        current = await self.redis_client.get(key)
        if current == token:
            await self.redis_client.delete(key)
        else:
            logger.warning(f"Lock {key} expired or changed owner before release")

    @asynccontextmanager
    async def hold(self, name: str, ttl: int) -> AsyncIterator[bool]:
        """Yield True while holding the lock, False if someone else holds it."""
        token = await self.acquire(name, ttl)
        try:
            yield token is not None
        finally:
            if token is not None:
                await self.release(name, token)
