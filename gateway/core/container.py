"""Service container: builds the gateway's services and owns their lifecycle."""

import asyncio
from typing import Any, Optional, Set
import logging

import httpx
import redis.asyncio as redis

from gateway.core.config import Settings
from gateway.core.database import Database, create_redis
from gateway.models import Integration, IntegrationStatus, SyncMode
from gateway.services import (
    AuditService,
    EventBus,
    HealthService,
    IntegrationService,
    ReasoningService,
    RollbackService,
    SyncService,
    TaskExecutor,
    TaskService,
    WebhookService,
    create_reasoning_service,
)
from gateway.utils.crypto import CredentialVault
from gateway.utils.locks import LockManager
from gateway.utils.scheduler import IntervalScheduler

logger = logging.getLogger(__name__)


class ServiceContainer:
    """Explicit wiring of every component.

    There are no module-level singletons: the container creates the event bus
    and injects it, together with storage handles, into each service.
    """

    def __init__(
        self,
        settings: Settings,
        db: Database,
        redis_client: redis.Redis,
        reasoning: Optional[ReasoningService] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.db = db
        self.redis_client = redis_client
        self.vault = CredentialVault(settings.encryption_key)
        self.locks = LockManager(redis_client)
        self.bus = EventBus.from_settings(settings)
        self.escalations = IntervalScheduler("escalation")
        self._background: Set[asyncio.Task] = set()

        self.integrations = IntegrationService(db, redis_client, self.vault, settings, transport=transport)
        self.audit = AuditService(db)
        self.health = HealthService(db, self.integrations, self.bus, settings)
        self.sync = SyncService(
            db,
            self.integrations,
            self.locks,
            settings,
            health_lookup=self.health.current_state,
        )
        self.webhooks = WebhookService(db, redis_client, self.integrations, self.bus, settings)
        self.tasks = TaskService(db, self.audit, self.bus, settings)
        self.executor = TaskExecutor(
            self.tasks,
            self.audit,
            self.integrations,
            reasoning or create_reasoning_service(settings),
            settings,
        )
        self.rollbacks = RollbackService(self.tasks, self.audit, self.integrations, self.locks, settings)

        # Cross-component wiring
        self.tasks.executor = self.executor
        self.integrations.observer = self.health
        self.integrations.on_connected.append(self._on_connected)
        self.integrations.on_disconnected.append(self._on_disconnected)
        self.sync.subscribe(self.bus)
        self.tasks.subscribe(self.bus)

    @classmethod
    async def create(cls, settings: Settings, **kwargs: Any) -> "ServiceContainer":
        """Connect to MongoDB and redis and build the container."""
        db = Database(settings)
        await db.connect()
        return cls(settings, db, create_redis(settings), **kwargs)

    async def start(self) -> None:
        await self.bus.start()
        self.escalations.schedule(
            "pending-tasks",
            self.settings.escalation_check_interval,
            self.tasks.check_escalations,
        )
        for status in (IntegrationStatus.CONNECTED, IntegrationStatus.ERROR):
            for integration in await self.integrations.list(status=status, limit=0):
                self._start_timers(integration)
        logger.info("Service container started")

    async def drain(self) -> None:
        """Wait until background syncs, event deliveries and task executions settle."""
        while True:
            if self._background:
                await asyncio.gather(*list(self._background), return_exceptions=True)
            await self.bus.drain()
            await self.tasks.drain()
            if not self._background and self.bus.queue.empty():
                break

    async def shutdown(self) -> None:
        """Stop timers, background work and the event bus."""
        await self.escalations.shutdown()
        await self.sync.scheduler.shutdown()
        await self.health.scheduler.shutdown()
        for job in list(self._background):
            job.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        await self.bus.stop()
        await self.tasks.drain()

    async def stop(self) -> None:
        await self.shutdown()
        await self.redis_client.aclose()
        await self.db.disconnect()
        logger.info("Service container stopped")

    def _start_timers(self, integration: Integration) -> None:
        self.sync.start_polling(integration)
        self.health.start_monitoring(integration)

    async def _on_connected(self, integration: Integration) -> None:
        self._start_timers(integration)
        job = asyncio.create_task(
            self.sync.sync_integration(integration.id, SyncMode.FULL),
            name=f"initial-sync:{integration.id}",
        )
        self._background.add(job)
        job.add_done_callback(self._background.discard)

    async def _on_disconnected(self, integration: Integration) -> None:
        await self.sync.forget(integration)
        await self.health.forget(integration)
