"""Webhook and event bus models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field

from gateway.core.errors import ErrorDetail
from gateway.models.integration import ServiceType
from gateway.utils.clock import utcnow


class EventKind(str, Enum):
    """Every kind of event that travels on the bus.

    Subscribers keep a handler table keyed by this enum and verify at
    construction that it covers every member.
    """
    GITHUB_PULL_REQUEST = "github.pull_request"
    GITHUB_ISSUES = "github.issues"
    GITHUB_PUSH = "github.push"
    GITHUB_REPOSITORY = "github.repository"
    VERCEL_DEPLOYMENT = "vercel.deployment"
    SLACK_MESSAGE = "slack.message"
    SLACK_CHANNEL = "slack.channel"
    TASK_ESCALATED = "task.escalated"
    INTEGRATION_ALERT = "integration.alert"
    INTEGRATION_HEALTH_CHANGED = "integration.health_changed"


class Event(BaseModel):
    """Normalized internal event."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: EventKind
    service: Optional[ServiceType] = None
    event_type: str
    external_id: str
    integration_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=utcnow)
    dedupe_key: Optional[str] = None

    @property
    def action(self) -> Optional[str]:
        return self.payload.get("action")


class WebhookEvent(BaseModel):
    """Inbound delivery as received. Immutable once stored."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="_id")
    service: ServiceType
    integration_id: Optional[str] = None
    event_type: Optional[str] = None
    external_delivery_id: Optional[str] = None
    dedupe_key: Optional[str] = None
    payload_digest: str
    payload: Optional[Any] = None
    received_at: datetime = Field(default_factory=utcnow)
    verified: bool = False


class NormalizedWebhook(BaseModel):
    """What an adapter extracts from a verified delivery."""
    kind: Optional[EventKind] = None
    event_type: str
    external_id: Optional[str] = None


class IngressResult(BaseModel):
    """Outcome of one inbound webhook request."""
    accepted: bool
    event_id: Optional[str] = None
    duplicate: bool = False
    ignored: bool = False
    challenge: Optional[str] = None
    error: Optional[ErrorDetail] = None
