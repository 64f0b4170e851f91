"""Webhook handling endpoints."""

from fastapi import APIRouter, Depends, Query, Request
from datetime import datetime
from typing import List, Optional
import logging

from gateway.models import ServiceType, WebhookEvent
from gateway.services import WebhookService
from gateway.api.dependencies import error_response, get_webhook_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/{service}/receive")
async def receive_webhook(
    service: str,
    request: Request,
    webhooks: WebhookService = Depends(get_webhook_service),
):
    """Verify a delivery and hand it to the event bus.

    Responds as soon as the event is enqueued; subscribers run afterwards.
    """
    body = await request.body()
    result = await webhooks.receive(service, body, dict(request.headers))

    if result.error is not None:
        return error_response(result.error)
    if result.challenge is not None:
        return {"challenge": result.challenge}
    return {
        "status": "accepted",
        "event_id": result.event_id,
        "duplicate": result.duplicate,
        "ignored": result.ignored,
    }


@router.get("/events", response_model=List[WebhookEvent], response_model_by_alias=False)
async def list_webhook_events(
    service: Optional[ServiceType] = None,
    verified: Optional[bool] = None,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    webhooks: WebhookService = Depends(get_webhook_service),
):
    """Recent deliveries, including ones rejected for bad signatures."""
    return await webhooks.get_webhook_events(
        service=service,
        verified=verified,
        start_time=start_time,
        end_time=end_time,
        limit=limit,
        skip=skip,
    )
