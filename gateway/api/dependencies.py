"""API dependencies."""

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
import logging

from gateway.core.container import ServiceContainer
from gateway.core.errors import ErrorDetail, ErrorKind
from gateway.services import (
    AuditService,
    HealthService,
    IntegrationService,
    RollbackService,
    SyncService,
    TaskService,
    WebhookService,
)

logger = logging.getLogger(__name__)

# HTTP status for each error kind
ERROR_STATUS = {
    ErrorKind.SIGNATURE_INVALID: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.MALFORMED_PAYLOAD: status.HTTP_400_BAD_REQUEST,
    ErrorKind.UNKNOWN_SERVICE: status.HTTP_404_NOT_FOUND,
    ErrorKind.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorKind.AUTHENTICATION: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.TRANSIENT: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.INTEGRATION: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.SYNC: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.INTEGRITY: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.TASK_EXECUTION: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.NOT_ROLLBACKABLE: status.HTTP_409_CONFLICT,
    ErrorKind.ALREADY_ROLLED_BACK: status.HTTP_409_CONFLICT,
    ErrorKind.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
}


def error_response(detail: ErrorDetail) -> JSONResponse:
    """Structured ``{kind, message}`` error body."""
    return JSONResponse(
        status_code=ERROR_STATUS.get(detail.kind, status.HTTP_500_INTERNAL_SERVER_ERROR),
        content=detail.model_dump(mode="json"),
    )


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up"
        )
    return container


async def get_actor(x_actor_id: str = Header(..., min_length=1)) -> str:
    """Identity of the human acting on a task, as asserted by the caller."""
    return x_actor_id


# Service dependencies
def get_integration_service(container: ServiceContainer = Depends(get_container)) -> IntegrationService:
    return container.integrations


def get_sync_service(container: ServiceContainer = Depends(get_container)) -> SyncService:
    return container.sync


def get_health_service(container: ServiceContainer = Depends(get_container)) -> HealthService:
    return container.health


def get_webhook_service(container: ServiceContainer = Depends(get_container)) -> WebhookService:
    return container.webhooks


def get_task_service(container: ServiceContainer = Depends(get_container)) -> TaskService:
    return container.tasks


def get_rollback_service(container: ServiceContainer = Depends(get_container)) -> RollbackService:
    return container.rollbacks


def get_audit_service(container: ServiceContainer = Depends(get_container)) -> AuditService:
    return container.audit
