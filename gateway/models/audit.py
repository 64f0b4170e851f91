"""Audit log models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field

from gateway.utils.clock import utcnow


class AuditEntryType(str, Enum):
    CLASSIFICATION = "classification"
    APPROVAL = "approval"
    EXECUTION = "execution"
    ERROR = "error"
    ROLLBACK = "rollback"
    SAFETY_CHECK = "safetyCheck"


class ExecutionPhase(str, Enum):
    """Stages recorded on ``execution`` entries."""
    STARTED = "started"
    ACTION = "action"
    COMPLETED = "completed"


POLICY_ACTOR = "policy"
SYSTEM_ACTOR = "system"


class AuditEntry(BaseModel):
    """Append-only record. Never updated, never deleted."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="_id")
    sequence: int = 0
    task_id: Optional[str] = None
    type: AuditEntryType
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str = SYSTEM_ACTOR
    detail: Dict[str, Any] = Field(default_factory=dict)


class AuditQuery(BaseModel):
    types: List[AuditEntryType] = Field(default_factory=list)
    task_id: Optional[str] = None
    actor: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    skip: int = 0
    limit: int = 1000


class AuditStats(BaseModel):
    total: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)
    total_cost: float = 0.0
    approved: int = 0
    rejected: int = 0
    auto_approved: int = 0
    errors: int = 0
