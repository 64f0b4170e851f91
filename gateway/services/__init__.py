"""Gateway services."""

from .audit_service import AuditService
from .event_bus import EventBus, verify_exhaustive
from .executor_service import TaskExecutor
from .health_service import HealthService
from .integration_service import IntegrationService
from .reasoning import HTTPReasoningService, ReasoningResult, ReasoningService, create_reasoning_service
from .rollback_service import RollbackService
from .sync_service import SyncService
from .task_service import RiskClassifier, TaskService
from .webhook_service import WebhookService

__all__ = [
    "AuditService",
    "EventBus",
    "verify_exhaustive",
    "TaskExecutor",
    "HealthService",
    "IntegrationService",
    "HTTPReasoningService",
    "ReasoningResult",
    "ReasoningService",
    "create_reasoning_service",
    "RollbackService",
    "SyncService",
    "RiskClassifier",
    "TaskService",
    "WebhookService",
]
