"""Integration models."""

from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum

from gateway.utils.clock import utcnow


class ServiceType(str, Enum):
    """External services the gateway integrates with."""
    GITHUB = "github"
    VERCEL = "vercel"
    SLACK = "slack"


class IntegrationStatus(str, Enum):
    """Integration connection status."""
    CONNECTED = "connected"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class RetryPolicy(BaseModel):
    """Retry/backoff parameters shared by every client adapter."""
    max_retries: int = 3
    base_backoff: float = 1.0
    max_backoff: float = 30.0
    jitter: float = 0.5

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.retry_max_retries,
            base_backoff=settings.retry_base_backoff,
            max_backoff=settings.retry_max_backoff,
            jitter=settings.retry_jitter,
        )


class OAuthToken(BaseModel):
    """Token returned by an OAuth code exchange."""
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None


class Integration(BaseModel):
    """A configured connection to one external service."""
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(default=None, alias="_id")
    service: ServiceType
    name: str
    status: IntegrationStatus = IntegrationStatus.CONNECTED

    # Vault blob holding access_token, webhook_secret and friends
    encrypted_credentials: Optional[str] = None

    metadata: Dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_sync_at: Optional[datetime] = None
    error_message: Optional[str] = None
