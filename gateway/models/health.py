"""Health monitoring models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from gateway.models.integration import ServiceType
from gateway.utils.clock import utcnow


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class CheckResult(BaseModel):
    """One probe check. ``degraded`` marks a pass that is close to failing."""
    passed: bool = True
    degraded: bool = False
    detail: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str, **detail) -> "CheckResult":
        return cls(passed=False, error=error, detail=detail)


class HealthChecks(BaseModel):
    authentication: Optional[CheckResult] = None
    rate_limit: Optional[CheckResult] = None
    api_access: Optional[CheckResult] = None
    webhooks: Optional[CheckResult] = None


class HealthStatus(BaseModel):
    """Current health of one integration, overwritten every probe cycle."""
    model_config = ConfigDict(populate_by_name=True)

    integration_id: str = Field(alias="_id")
    service: ServiceType
    status: HealthState = HealthState.HEALTHY
    last_checked_at: datetime = Field(default_factory=utcnow)
    checks: HealthChecks = Field(default_factory=HealthChecks)
    state_since: datetime = Field(default_factory=utcnow)
    last_alert_at: Optional[datetime] = None
    reason: Optional[str] = None


class AlertKind(str, Enum):
    RAISED = "raised"
    REMINDER = "reminder"
    RECOVERED = "recovered"


class Alert(BaseModel):
    integration_id: str
    service: ServiceType
    state: HealthState
    kind: AlertKind
    message: str
    checks: Optional[HealthChecks] = None
    raised_at: datetime = Field(default_factory=utcnow)


class CallOutcomeKind(str, Enum):
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    AUTH_FAILED = "auth_failed"
    TRANSIENT = "transient"
    ERROR = "error"


class CallOutcome(BaseModel):
    """What a client adapter reports after every call."""
    integration_id: str
    service: ServiceType
    kind: CallOutcomeKind
    latency_ms: float = 0.0
    message: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)
