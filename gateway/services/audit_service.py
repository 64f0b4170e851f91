"""Append-only audit log."""

from typing import Any, Dict, List, Optional
from datetime import datetime
import logging

from pymongo import ReturnDocument

from gateway.core.database import Database, COLLECTIONS
from gateway.models import AuditEntry, AuditEntryType, AuditQuery, AuditStats, ExecutionPhase, POLICY_ACTOR, SYSTEM_ACTOR
from gateway.utils.clock import to_utc

logger = logging.getLogger(__name__)

SEQUENCE_COUNTER = "audit_entries"


class AuditService:
    """Record of every classification, approval, execution, error and rollback.

    There is no update or delete path. A correction is a new entry.
    """

    def __init__(self, db: Database):
        self.db = db

    @property
    def collection(self):
        return self.db.get_collection(COLLECTIONS["audit_entries"])

    async def _next_sequence(self) -> int:
        counters = self.db.get_collection(COLLECTIONS["counters"])
        doc = await counters.find_one_and_update(
            {"_id": SEQUENCE_COUNTER},
            {"$inc": {"value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return doc["value"]

    async def append(self, entry: AuditEntry) -> str:
        """Store an entry and return its id. Storage errors propagate."""
        entry.sequence = await self._next_sequence()
        await self.collection.insert_one(entry.model_dump(by_alias=True))
        logger.debug(f"Audit #{entry.sequence} {entry.type.value} task={entry.task_id} actor={entry.actor}")
        return entry.id

    async def record(
        self,
        type: AuditEntryType,
        task_id: Optional[str] = None,
        actor: str = SYSTEM_ACTOR,
        **detail: Any,
    ) -> AuditEntry:
        entry = AuditEntry(type=type, task_id=task_id, actor=actor, detail=detail)
        await self.append(entry)
        return entry

    async def query(self, filters: Optional[AuditQuery] = None) -> List[AuditEntry]:
        """Entries matching the filters, in sequence order."""
        filters = filters or AuditQuery()
        mongo_filter: Dict[str, Any] = {}
        if filters.types:
            mongo_filter["type"] = {"$in": [t.value for t in filters.types]}
        if filters.task_id:
            mongo_filter["task_id"] = filters.task_id
        if filters.actor:
            mongo_filter["actor"] = filters.actor
        if filters.start or filters.end:
            timestamp_filter = {}
            if filters.start:
                timestamp_filter["$gte"] = to_utc(filters.start)
            if filters.end:
                timestamp_filter["$lte"] = to_utc(filters.end)
            mongo_filter["timestamp"] = timestamp_filter

        cursor = self.collection.find(mongo_filter).sort("sequence", 1).skip(filters.skip).limit(filters.limit)
        return [AuditEntry(**doc) async for doc in cursor]

    async def entries_for(self, task_id: str, *types: AuditEntryType) -> List[AuditEntry]:
        return await self.query(AuditQuery(task_id=task_id, types=list(types), limit=0))

    async def executions(self, task_id: str, phase: ExecutionPhase) -> List[AuditEntry]:
        """``execution`` entries of one phase for a task."""
        entries = await self.entries_for(task_id, AuditEntryType.EXECUTION)
        return [entry for entry in entries if entry.detail.get("phase") == phase.value]

    async def stats(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> AuditStats:
        """Counts and cost for reporting."""
        stats = AuditStats()
        for entry in await self.query(AuditQuery(start=start, end=end, limit=0)):
            stats.total += 1
            stats.by_type[entry.type.value] = stats.by_type.get(entry.type.value, 0) + 1

            if entry.type == AuditEntryType.SAFETY_CHECK:
                # Every reasoning call is screened once, so its cost is recorded there
                stats.total_cost += float(entry.detail.get("cost") or 0)
            elif entry.type == AuditEntryType.APPROVAL:
                decision = entry.detail.get("decision")
                if decision == "approved":
                    stats.approved += 1
                    if entry.actor == POLICY_ACTOR:
                        stats.auto_approved += 1
                elif decision == "rejected":
                    stats.rejected += 1
            elif entry.type == AuditEntryType.ERROR:
                stats.errors += 1
        return stats
