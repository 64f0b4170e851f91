"""Sync reconciler: full and incremental reconciliation of remote entities."""

from typing import Any, Awaitable, Callable, Dict, List, Optional
from datetime import datetime
import logging

from pymongo.errors import DuplicateKeyError

from gateway.core.config import Settings, INTEGRATION_CONFIGS
from gateway.core.database import Database, COLLECTIONS
from gateway.core.errors import GatewayError, SyncError
from gateway.integrations.registry import IntegrationRegistry
from gateway.models import (
    Event,
    EventKind,
    HealthState,
    Integration,
    IntegrationStatus,
    RemoteEntity,
    SyncCursor,
    SyncedEntity,
    SyncMode,
    SyncRunResult,
    SyncRunStatus,
    UpsertOutcome,
)
from gateway.services.event_bus import EventBus, verify_exhaustive
from gateway.services.integration_service import IntegrationService
from gateway.utils.clock import utcnow
from gateway.utils.locks import LockManager
from gateway.utils.scheduler import IntervalScheduler

logger = logging.getLogger(__name__)

# Optimistic-concurrency attempts before an entity is reported as failed
MAX_WRITE_ATTEMPTS = 5

HealthLookup = Callable[[str], Awaitable[Optional[HealthState]]]


def next_cursor(
    successes: List[Optional[datetime]],
    failures: List[Optional[datetime]],
) -> Optional[datetime]:
    """Cursor position after a pass.

    The cursor moves to the newest successfully reconciled ``updated_at``,
    but never past the oldest failed entity, so the failures are fetched
    again next time. A failure without a timestamp pins the cursor.
    """
    if any(failed is None for failed in failures):
        return None
    candidates = [ts for ts in successes if ts is not None]
    if failures:
        earliest_failure = min(failures)
        candidates = [ts for ts in candidates if ts < earliest_failure]
    return max(candidates) if candidates else None


class SyncService:
    """Keeps local entity copies reconciled with each integration."""

    def __init__(
        self,
        db: Database,
        integration_service: IntegrationService,
        locks: LockManager,
        settings: Settings,
        scheduler: Optional[IntervalScheduler] = None,
        health_lookup: Optional[HealthLookup] = None,
    ):
        self.db = db
        self.integration_service = integration_service
        self.locks = locks
        self.settings = settings
        self.scheduler = scheduler or IntervalScheduler("sync")
        self.health_lookup = health_lookup

        self._event_handlers = {
            EventKind.GITHUB_PULL_REQUEST: self.handle_event,
            EventKind.GITHUB_ISSUES: None,
            EventKind.GITHUB_PUSH: None,
            EventKind.GITHUB_REPOSITORY: self.handle_event,
            EventKind.VERCEL_DEPLOYMENT: self.handle_event,
            EventKind.SLACK_MESSAGE: None,
            EventKind.SLACK_CHANNEL: self.handle_event,
            EventKind.TASK_ESCALATED: None,
            EventKind.INTEGRATION_ALERT: None,
            EventKind.INTEGRATION_HEALTH_CHANGED: None,
        }
        verify_exhaustive(self._event_handlers, "SyncService")

    def subscribe(self, bus: EventBus) -> None:
        for kind, handler in self._event_handlers.items():
            if handler is not None:
                bus.subscribe(kind, handler, name=f"sync:{kind.value}")

    @property
    def cursors(self):
        return self.db.get_collection(COLLECTIONS["sync_cursors"])

    @property
    def entities(self):
        return self.db.get_collection(COLLECTIONS["entities"])

    @staticmethod
    def entity_types(service) -> List[str]:
        return list(INTEGRATION_CONFIGS[service.value]["entity_types"])

    # Runs

    async def full_sync(self, integration_id: str, entity_type: str) -> SyncRunResult:
        """Upsert every remote entity, then advance the cursor."""
        return await self._run(integration_id, entity_type, SyncMode.FULL)

    async def incremental_sync(self, integration_id: str, entity_type: str) -> SyncRunResult:
        """Upsert entities changed after the cursor. Falls back to a full sync without one."""
        return await self._run(integration_id, entity_type, SyncMode.INCREMENTAL)

    async def sync_integration(self, integration_id: str, mode: SyncMode = SyncMode.INCREMENTAL) -> List[SyncRunResult]:
        """Run one sync per tracked entity type."""
        integration = await self.integration_service.require(integration_id)
        results = []
        for entity_type in self.entity_types(integration.service):
            results.append(await self._run(integration_id, entity_type, mode))
        return results

    async def _run(self, integration_id: str, entity_type: str, mode: SyncMode) -> SyncRunResult:
        result = SyncRunResult(integration_id=integration_id, entity_type=entity_type, mode=mode)

        async with self.locks.hold(f"sync:{integration_id}:{entity_type}", self.settings.sync_lock_ttl) as acquired:
            if not acquired:
                result.status = SyncRunStatus.SKIPPED
                result.completed_at = utcnow()
                logger.info(f"Sync of {entity_type} for {integration_id} already in flight, dropping trigger")
                return result

            integration = await self.integration_service.require(integration_id)
            cursor = await self.get_cursor(integration_id, entity_type)
            result.cursor_before = cursor.last_synced_at if cursor else None
            result.cursor_after = result.cursor_before

            if mode == SyncMode.INCREMENTAL and result.cursor_before is None:
                mode = result.mode = SyncMode.FULL
            since = result.cursor_before if mode == SyncMode.INCREMENTAL else None

            successes: List[Optional[datetime]] = []
            failures: List[Optional[datetime]] = []
            try:
                async with await self.integration_service.open_adapter(integration) as adapter:
                    async for entity in adapter.list_entities(entity_type, since=since):
                        if entity.error:
                            self._record_failure(result, failures, entity, entity.error)
                            continue
                        if since is not None and (entity.updated_at is None or entity.updated_at <= since):
                            continue
                        try:
                            outcome = await self.upsert_entity(integration_id, entity, mode)
                        except Exception as e:
                            self._record_failure(result, failures, entity, str(e))
                            continue

                        successes.append(entity.updated_at)
                        if outcome == UpsertOutcome.CREATED:
                            result.created += 1
                        elif outcome == UpsertOutcome.UPDATED:
                            result.updated += 1
                        else:
                            result.unchanged += 1
            except GatewayError as e:
                # Listing aborted: leave the cursor where it was
                result.status = SyncRunStatus.FAILED
                result.error_message = e.message
                result.completed_at = utcnow()
                logger.error(f"{mode.value} sync of {entity_type} for {integration_id} failed: {e.message}")
                return result

            position = next_cursor(successes, failures)
            if position is not None:
                result.cursor_after = await self._advance_cursor(integration_id, entity_type, position)

        result.status = SyncRunStatus.PARTIAL if result.failed else SyncRunStatus.COMPLETED
        result.completed_at = utcnow()
        await self.integration_service.mark_synced(integration_id)
        logger.info(
            f"{result.mode.value} sync of {entity_type} for {integration_id}: "
            f"{result.created} created, {result.updated} updated, {result.unchanged} unchanged, "
            f"{result.failed} failed"
        )
        return result

    @staticmethod
    def _record_failure(
        result: SyncRunResult,
        failures: List[Optional[datetime]],
        entity: RemoteEntity,
        message: str,
    ) -> None:
        failures.append(entity.updated_at)
        result.failed += 1
        result.errors.append({
            "external_id": entity.external_id,
            "kind": SyncError.kind.value,
            "message": message,
        })
        logger.warning(f"Failed to reconcile {entity.entity_type} {entity.external_id}: {message}")

    # Storage

    @staticmethod
    def entity_key(integration_id: str, entity_type: str, external_id: str) -> str:
        return f"{integration_id}:{entity_type}:{external_id}"

    async def upsert_entity(self, integration_id: str, entity: RemoteEntity, mode: SyncMode) -> UpsertOutcome:
        """Last-writer-wins upsert by remote ``updated_at``.

        Writes are conditional on the ``remote_updated_at`` that was read, so
        a webhook and a poller racing on the same entity cannot overwrite a
        newer copy with an older one. Local fields are only set on insert.
        """
        key = self.entity_key(integration_id, entity.entity_type, entity.external_id)

        for _ in range(MAX_WRITE_ATTEMPTS):
            doc = await self.entities.find_one({"_id": key})
            now = utcnow()

            if doc is None:
                record = SyncedEntity(
                    id=key,
                    integration_id=integration_id,
                    entity_type=entity.entity_type,
                    external_id=entity.external_id,
                    data=entity.data,
                    remote_updated_at=entity.updated_at,
                    created_at=now,
                    synced_at=now,
                )
                try:
                    await self.entities.insert_one({**record.model_dump(by_alias=True), "sync_mode": mode.value})
                    return UpsertOutcome.CREATED
                except DuplicateKeyError:
                    continue

            stored = doc.get("remote_updated_at")
            if stored is not None and entity.updated_at is not None:
                if entity.updated_at < stored:
                    return UpsertOutcome.UNCHANGED
                if entity.updated_at == stored and doc.get("data") == entity.data:
                    return UpsertOutcome.UNCHANGED

            result = await self.entities.update_one(
                {"_id": key, "remote_updated_at": stored},
                {"$set": {
                    "data": entity.data,
                    "remote_updated_at": entity.updated_at,
                    "synced_at": now,
                    "sync_mode": mode.value,
                }}
            )
            if result.matched_count:
                return UpsertOutcome.UPDATED

        raise SyncError(f"Entity {key} kept changing during reconciliation")

    async def get_entity(self, integration_id: str, entity_type: str, external_id: str) -> Optional[SyncedEntity]:
        doc = await self.entities.find_one({"_id": self.entity_key(integration_id, entity_type, external_id)})
        return SyncedEntity(**doc) if doc else None

    async def count_entities(self, integration_id: str, entity_type: Optional[str] = None) -> int:
        filters: Dict[str, Any] = {"integration_id": integration_id}
        if entity_type:
            filters["entity_type"] = entity_type
        return await self.entities.count_documents(filters)

    async def set_local_fields(self, integration_id: str, entity_type: str, external_id: str, **fields: Any) -> bool:
        """Update gateway-owned fields such as ``agent_checked``."""
        result = await self.entities.update_one(
            {"_id": self.entity_key(integration_id, entity_type, external_id)},
            {"$set": {f"local.{name}": value for name, value in fields.items()}}
        )
        return result.matched_count > 0

    @staticmethod
    def cursor_key(integration_id: str, entity_type: str) -> str:
        return f"{integration_id}:{entity_type}"

    async def get_cursor(self, integration_id: str, entity_type: str) -> Optional[SyncCursor]:
        doc = await self.cursors.find_one({"_id": self.cursor_key(integration_id, entity_type)})
        return SyncCursor(**doc) if doc else None

    async def _advance_cursor(self, integration_id: str, entity_type: str, position: datetime) -> datetime:
        """Move the cursor forward to ``position``; never backward."""
        key = self.cursor_key(integration_id, entity_type)

        for _ in range(MAX_WRITE_ATTEMPTS):
            doc = await self.cursors.find_one({"_id": key})
            if doc is None:
                cursor = SyncCursor(
                    id=key,
                    integration_id=integration_id,
                    entity_type=entity_type,
                    last_synced_at=position,
                )
                try:
                    await self.cursors.insert_one(cursor.model_dump(by_alias=True))
                    return position
                except DuplicateKeyError:
                    continue

            current = doc.get("last_synced_at")
            if current is not None and current >= position:
                return current

            result = await self.cursors.update_one(
                {"_id": key, "last_synced_at": current},
                {"$set": {"last_synced_at": position, "updated_at": utcnow()}}
            )
            if result.matched_count:
                return position

        raise SyncError(f"Cursor {key} kept changing while advancing")

    # Webhook path

    async def handle_event(self, event: Event) -> Optional[UpsertOutcome]:
        """Upsert the single entity a webhook event describes."""
        if event.service is None or event.integration_id is None:
            return None
        adapter_class = IntegrationRegistry.get(event.service)
        entity = adapter_class.entity_from_event(event) if adapter_class else None
        if entity is None:
            return None

        integration = await self.integration_service.get(event.integration_id)
        if integration is None or integration.status == IntegrationStatus.DISCONNECTED:
            return None

        outcome = await self.upsert_entity(integration.id, entity, SyncMode.WEBHOOK)
        logger.debug(f"Webhook {event.event_type} -> {entity.entity_type} {entity.external_id}: {outcome.value}")
        return outcome

    # Polling fallback

    async def poll(self, integration_id: str) -> List[SyncRunResult]:
        """Timed incremental pass over every entity type of a healthy integration."""
        integration = await self.integration_service.get(integration_id)
        if integration is None or integration.status != IntegrationStatus.CONNECTED:
            logger.debug(f"Skipping poll of {integration_id}: not connected")
            return []
        if self.health_lookup is not None and await self.health_lookup(integration_id) == HealthState.UNHEALTHY:
            logger.info(f"Skipping poll of {integration_id}: integration is unhealthy")
            return []
        return await self.sync_integration(integration_id, SyncMode.INCREMENTAL)

    def start_polling(self, integration: Integration) -> None:
        self.scheduler.schedule(
            integration.id,
            self.settings.sync_poll_interval,
            lambda: self.poll(integration.id),
        )

    def stop_polling(self, integration_id: str) -> None:
        self.scheduler.cancel(integration_id)

    async def forget(self, integration: Integration) -> None:
        """Drop polling and cursors of a disconnected integration."""
        self.stop_polling(integration.id)
        await self.cursors.delete_many({"integration_id": integration.id})
