"""Integration API schemas."""

from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field

from gateway.models import (
    HealthStatus,
    Integration,
    IntegrationStatus,
    ServiceType,
    SyncMode,
    SyncRunResult,
)


class IntegrationCreate(BaseModel):
    """Schema for connecting an integration with token credentials."""
    service: ServiceType
    name: str
    credentials: Dict[str, Any]
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IntegrationResponse(BaseModel):
    """Integration response schema. Credentials never leave the service."""
    id: str
    service: ServiceType
    name: str
    status: IntegrationStatus
    metadata: Dict[str, Any]
    created_at: datetime
    updated_at: datetime
    last_sync_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @classmethod
    def from_integration(cls, integration: Integration) -> "IntegrationResponse":
        return cls(**integration.model_dump(exclude={"encrypted_credentials"}))


class IntegrationListResponse(BaseModel):
    """List of integrations response."""
    items: List[IntegrationResponse]
    skip: int
    limit: int


class OAuthCallbackRequest(BaseModel):
    """OAuth callback request."""
    code: str
    state: str
    name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class OAuthInitResponse(BaseModel):
    """OAuth initialization response."""
    authorization_url: str
    state: str


class SyncRequest(BaseModel):
    """Sync request schema."""
    mode: SyncMode = SyncMode.INCREMENTAL
    entity_types: Optional[List[str]] = None


class SyncResponse(BaseModel):
    """Sync response schema."""
    integration_id: str
    runs: List[SyncRunResult]


class IntegrationStatusResponse(BaseModel):
    """Connection status plus the latest health evaluation."""
    integration: IntegrationResponse
    health: Optional[HealthStatus] = None
