"""Database connections and utilities."""

from motor.motor_asyncio import AsyncIOMotorClient
from typing import Any, Optional
import logging

import redis.asyncio as redis

from gateway.core.config import Settings

logger = logging.getLogger(__name__)


class Database:
    """Database connection manager."""

    def __init__(self, settings: Settings, client: Optional[Any] = None):
        self.settings = settings
        self.client = client
        self.db = client[settings.mongodb_db_name] if client is not None else None

    async def connect(self):
        """Connect to MongoDB."""
        try:
            self.client = AsyncIOMotorClient(self.settings.mongodb_url)
            self.db = self.client[self.settings.mongodb_db_name]

            # Test connection
            await self.client.admin.command("ping")
            logger.info("Connected to MongoDB")
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

        await self.ensure_indexes()

    async def ensure_indexes(self):
        """Create the indexes the stores rely on."""
        await self.get_collection(COLLECTIONS["integrations"]).create_index([("service", 1), ("status", 1)])
        await self.get_collection(COLLECTIONS["webhook_events"]).create_index("dedupe_key")
        await self.get_collection(COLLECTIONS["entities"]).create_index(
            [("integration_id", 1), ("entity_type", 1)]
        )
        await self.get_collection(COLLECTIONS["tasks"]).create_index([("status", 1), ("created_at", 1)])
        await self.get_collection(COLLECTIONS["audit_entries"]).create_index("sequence", unique=True)
        await self.get_collection(COLLECTIONS["audit_entries"]).create_index([("task_id", 1), ("sequence", 1)])

    async def disconnect(self):
        """Disconnect from MongoDB."""
        if self.client:
            self.client.close()
            logger.info("Disconnected from MongoDB")

    def get_collection(self, name: str):
        """Get a collection."""
        if self.db is None:
            raise RuntimeError("Database not connected")
        return self.db[name]


def create_redis(settings: Settings) -> redis.Redis:
    """Create the shared redis client."""
    return redis.from_url(settings.redis_url, decode_responses=True)


# Collection names
COLLECTIONS = {
    "integrations": "integrations",
    "webhook_events": "webhook_events",
    "sync_cursors": "sync_cursors",
    "entities": "entities",
    "tasks": "tasks",
    "audit_entries": "audit_entries",
    "counters": "counters",
    "health_statuses": "health_statuses",
}
