"""Data models for the integration gateway."""

from .integration import Integration, IntegrationStatus, OAuthToken, RetryPolicy, ServiceType
from .events import Event, EventKind, IngressResult, NormalizedWebhook, WebhookEvent
from .sync import (
    RemoteEntity,
    SyncCursor,
    SyncedEntity,
    SyncMode,
    SyncRunResult,
    SyncRunStatus,
    UpsertOutcome,
)
from .task import (
    Classification,
    Environment,
    InverseOperation,
    RiskLevel,
    RollbackOutcome,
    RollbackResult,
    Task,
    TaskProposal,
    TaskResult,
    TaskStatus,
    TaskType,
)
from .audit import AuditEntry, AuditEntryType, AuditQuery, AuditStats, ExecutionPhase, POLICY_ACTOR, SYSTEM_ACTOR
from .health import (
    Alert,
    AlertKind,
    CallOutcome,
    CallOutcomeKind,
    CheckResult,
    HealthChecks,
    HealthState,
    HealthStatus,
)

__all__ = [
    "Integration",
    "IntegrationStatus",
    "OAuthToken",
    "RetryPolicy",
    "ServiceType",
    "Event",
    "EventKind",
    "IngressResult",
    "NormalizedWebhook",
    "WebhookEvent",
    "RemoteEntity",
    "SyncCursor",
    "SyncedEntity",
    "SyncMode",
    "SyncRunResult",
    "SyncRunStatus",
    "UpsertOutcome",
    "Classification",
    "Environment",
    "InverseOperation",
    "RiskLevel",
    "RollbackOutcome",
    "RollbackResult",
    "Task",
    "TaskProposal",
    "TaskResult",
    "TaskStatus",
    "TaskType",
    "AuditEntry",
    "AuditEntryType",
    "ExecutionPhase",
    "AuditQuery",
    "AuditStats",
    "POLICY_ACTOR",
    "SYSTEM_ACTOR",
    "Alert",
    "AlertKind",
    "CallOutcome",
    "CallOutcomeKind",
    "CheckResult",
    "HealthChecks",
    "HealthState",
    "HealthStatus",
]
