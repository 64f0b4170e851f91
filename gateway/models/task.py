"""Task, risk and execution models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field

from gateway.core.errors import ErrorDetail
from gateway.models.integration import ServiceType
from gateway.utils.clock import utcnow


class TaskType(str, Enum):
    """Actions the executor knows how to perform."""
    CODE_REVIEW = "code_review"
    ISSUE_TRIAGE = "issue_triage"
    DEPLOYMENT_TRIAGE = "deployment_triage"
    CHAT_REPLY = "chat_reply"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    @property
    def requires_human(self) -> bool:
        return self.rank >= RiskLevel.HIGH.rank

    @classmethod
    def highest(cls, *levels: "RiskLevel") -> "RiskLevel":
        return max(levels, key=lambda level: level.rank)


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class TaskStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolledBack"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = {
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.ROLLED_BACK,
    TaskStatus.REJECTED,
}

# Allowed transitions: {current_status: [allowed_next_statuses]}
TASK_TRANSITIONS: Dict[TaskStatus, List[TaskStatus]] = {
    TaskStatus.PENDING: [TaskStatus.APPROVED, TaskStatus.REJECTED],
    TaskStatus.APPROVED: [TaskStatus.EXECUTING, TaskStatus.REJECTED],
    TaskStatus.EXECUTING: [TaskStatus.COMPLETED, TaskStatus.FAILED],
    TaskStatus.COMPLETED: [TaskStatus.ROLLED_BACK],
    TaskStatus.FAILED: [],
    TaskStatus.REJECTED: [],
    TaskStatus.ROLLED_BACK: [],
}


class Environment(str, Enum):
    PRODUCTION = "production"
    STAGING = "staging"
    DEVELOPMENT = "development"


class TaskProposal(BaseModel):
    """An action proposed by an event or an agent, before classification."""
    type: TaskType
    input: Dict[str, Any] = Field(default_factory=dict)
    integration_id: Optional[str] = None
    environment: Environment = Environment.DEVELOPMENT
    destructive: bool = False
    magnitude: int = 0  # lines or records affected
    retryable: bool = False
    security_issues: List[str] = Field(default_factory=list)
    tests_passed: Optional[bool] = None
    source_event_key: Optional[str] = None


class InverseOperation(BaseModel):
    """Adapter action that undoes a completed task."""
    service: ServiceType
    integration_id: str
    action: str
    params: Dict[str, Any] = Field(default_factory=dict)


class Task(BaseModel):
    """A unit of proposed or executing autonomous action."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="_id")
    type: TaskType
    risk_level: RiskLevel = RiskLevel.LOW
    status: TaskStatus = TaskStatus.PENDING
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    approved_by: Optional[str] = None
    cost: float = 0.0

    integration_id: Optional[str] = None
    source_event_key: Optional[str] = None
    environment: Environment = Environment.DEVELOPMENT
    destructive: bool = False
    magnitude: int = 0
    retryable: bool = False
    classification_reasons: List[str] = Field(default_factory=list)

    inverse_operation: Optional[InverseOperation] = None
    error: Optional[ErrorDetail] = None
    rejection_reason: Optional[str] = None
    escalated_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Classification(BaseModel):
    risk_level: RiskLevel
    reasons: List[str] = Field(default_factory=list)

    @property
    def auto_approved(self) -> bool:
        return not self.risk_level.requires_human


class TaskResult(BaseModel):
    """Outcome of :meth:`TaskExecutor.execute`."""
    task_id: str
    status: TaskStatus
    output: Optional[Dict[str, Any]] = None
    error: Optional[ErrorDetail] = None


class RollbackOutcome(str, Enum):
    OK = "ok"
    NOT_ROLLBACKABLE = "not_rollbackable"
    ALREADY_ROLLED_BACK = "already_rolled_back"
    FAILED = "failed"


class RollbackResult(BaseModel):
    task_id: str
    outcome: RollbackOutcome
    audit_entry_id: Optional[str] = None
    error: Optional[ErrorDetail] = None
