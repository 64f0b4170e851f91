"""Sync cursor, entity and run models."""

from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum

from gateway.utils.clock import utcnow


class SyncMode(str, Enum):
    """How an entity reached local storage."""
    FULL = "full"
    INCREMENTAL = "incremental"
    WEBHOOK = "webhook"


class SyncRunStatus(str, Enum):
    """Sync run status."""
    COMPLETED = "completed"
    PARTIAL = "partial"  # finished, some entities failed
    FAILED = "failed"  # aborted, cursor untouched
    SKIPPED = "skipped"  # another run held the lock


class UpsertOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"  # remote copy older than the local one


class SyncCursor(BaseModel):
    """Watermark for one (integration, entity type)."""
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(default=None, alias="_id")
    integration_id: str
    entity_type: str
    last_synced_at: Optional[datetime] = None
    etag: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)


class RemoteEntity(BaseModel):
    """Entity as reported by the external service."""
    entity_type: str
    external_id: str
    updated_at: Optional[datetime] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    # Set when the listed item could not be read; the entity is then a placeholder
    error: Optional[str] = None


def default_local_fields() -> Dict[str, Any]:
    return {"agent_checked": False}


class SyncedEntity(BaseModel):
    """Local copy of a remote entity."""
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(default=None, alias="_id")
    integration_id: str
    entity_type: str
    external_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    remote_updated_at: Optional[datetime] = None
    # Fields owned by the gateway, never overwritten by a sync
    local: Dict[str, Any] = Field(default_factory=default_local_fields)
    created_at: datetime = Field(default_factory=utcnow)
    synced_at: datetime = Field(default_factory=utcnow)


class SyncRunResult(BaseModel):
    """Summary of one reconciliation run."""
    integration_id: str
    entity_type: str
    mode: SyncMode
    status: SyncRunStatus = SyncRunStatus.COMPLETED
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    cursor_before: Optional[datetime] = None
    cursor_after: Optional[datetime] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> int:
        return self.created + self.updated + self.unchanged

    @property
    def skipped(self) -> bool:
        return self.status == SyncRunStatus.SKIPPED
