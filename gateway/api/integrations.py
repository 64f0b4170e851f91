"""Integration management API endpoints."""

from fastapi import APIRouter, HTTPException, status, Depends, Query
from typing import Optional
import logging

from gateway.models import HealthStatus, IntegrationStatus, ServiceType, SyncMode
from gateway.schemas.integration import (
    IntegrationCreate,
    IntegrationResponse,
    IntegrationListResponse,
    IntegrationStatusResponse,
    OAuthCallbackRequest,
    OAuthInitResponse,
    SyncRequest,
    SyncResponse,
)
from gateway.services import HealthService, IntegrationService, SyncService
from gateway.api.dependencies import get_health_service, get_integration_service, get_sync_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=IntegrationListResponse)
async def list_integrations(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    service_type: Optional[ServiceType] = Query(None, alias="service"),
    integration_status: Optional[IntegrationStatus] = Query(None, alias="status"),
    service: IntegrationService = Depends(get_integration_service),
):
    """List integrations."""
    integrations = await service.list(service=service_type, status=integration_status, skip=skip, limit=limit)
    return IntegrationListResponse(
        items=[IntegrationResponse.from_integration(integration) for integration in integrations],
        skip=skip,
        limit=limit,
    )


@router.post("", response_model=IntegrationResponse, status_code=status.HTTP_201_CREATED)
async def connect_integration(
    request: IntegrationCreate,
    service: IntegrationService = Depends(get_integration_service),
):
    """Connect an integration using token credentials."""
    integration = await service.connect(request.service, request.name, request.credentials, request.metadata)
    return IntegrationResponse.from_integration(integration)


@router.get("/oauth/{service_type}/authorize", response_model=OAuthInitResponse)
async def initiate_oauth(
    service_type: ServiceType,
    service: IntegrationService = Depends(get_integration_service),
):
    """Start an OAuth flow."""
    url, state = await service.get_authorization_url(service_type)
    return OAuthInitResponse(authorization_url=url, state=state)


@router.post(
    "/oauth/{service_type}/callback",
    response_model=IntegrationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def oauth_callback(
    service_type: ServiceType,
    callback: OAuthCallbackRequest,
    service: IntegrationService = Depends(get_integration_service),
):
    """Complete an OAuth flow."""
    integration = await service.connect_oauth(
        service_type,
        callback.code,
        state=callback.state,
        name=callback.name,
        metadata=callback.metadata,
    )
    return IntegrationResponse.from_integration(integration)


@router.get("/{integration_id}", response_model=IntegrationResponse)
async def get_integration(
    integration_id: str,
    service: IntegrationService = Depends(get_integration_service),
):
    """Get integration details."""
    return IntegrationResponse.from_integration(await service.require(integration_id))


@router.delete("/{integration_id}", response_model=IntegrationResponse)
async def disconnect_integration(
    integration_id: str,
    service: IntegrationService = Depends(get_integration_service),
):
    """Disconnect an integration and wipe its credentials."""
    return IntegrationResponse.from_integration(await service.disconnect(integration_id))


@router.post("/{integration_id}/sync", response_model=SyncResponse)
async def trigger_sync(
    integration_id: str,
    request: Optional[SyncRequest] = None,
    service: IntegrationService = Depends(get_integration_service),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Run a sync now. A type already syncing is reported as skipped."""
    request = request or SyncRequest()
    integration = await service.require(integration_id)
    if integration.status == IntegrationStatus.DISCONNECTED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Integration is disconnected"
        )

    if not request.entity_types:
        runs = await sync_service.sync_integration(integration_id, request.mode)
        return SyncResponse(integration_id=integration_id, runs=runs)

    supported = sync_service.entity_types(integration.service)
    unknown = [entity_type for entity_type in request.entity_types if entity_type not in supported]
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported entity types for {integration.service.value}: {', '.join(unknown)}"
        )

    run = sync_service.full_sync if request.mode == SyncMode.FULL else sync_service.incremental_sync
    runs = [await run(integration_id, entity_type) for entity_type in request.entity_types]
    return SyncResponse(integration_id=integration_id, runs=runs)


@router.get("/{integration_id}/status", response_model=IntegrationStatusResponse, response_model_by_alias=False)
async def get_integration_status(
    integration_id: str,
    service: IntegrationService = Depends(get_integration_service),
    health: HealthService = Depends(get_health_service),
):
    """Connection status and the latest health evaluation."""
    integration = await service.require(integration_id)
    return IntegrationStatusResponse(
        integration=IntegrationResponse.from_integration(integration),
        health=await health.get_status(integration_id),
    )


@router.post("/{integration_id}/health-check", response_model=Optional[HealthStatus], response_model_by_alias=False)
async def run_health_check(
    integration_id: str,
    service: IntegrationService = Depends(get_integration_service),
    health: HealthService = Depends(get_health_service),
):
    """Run a probe cycle now instead of waiting for the timer."""
    await service.require(integration_id)
    return await health.probe(integration_id)
