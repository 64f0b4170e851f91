"""API request and response schemas."""

from .integration import (
    IntegrationCreate,
    IntegrationResponse,
    IntegrationListResponse,
    OAuthCallbackRequest,
    OAuthInitResponse,
    SyncRequest,
    SyncResponse,
    IntegrationStatusResponse,
)
from .task import RejectRequest, TaskListResponse, AuditListResponse

__all__ = [
    "IntegrationCreate",
    "IntegrationResponse",
    "IntegrationListResponse",
    "OAuthCallbackRequest",
    "OAuthInitResponse",
    "SyncRequest",
    "SyncResponse",
    "IntegrationStatusResponse",
    "RejectRequest",
    "TaskListResponse",
    "AuditListResponse",
]
