"""Audit log endpoints."""

from fastapi import APIRouter, Depends, Query
from datetime import datetime
from typing import List, Optional

from gateway.models import AuditEntryType, AuditQuery, AuditStats
from gateway.schemas.task import AuditListResponse
from gateway.services import AuditService
from gateway.api.dependencies import get_audit_service

router = APIRouter()


@router.get("", response_model=AuditListResponse, response_model_by_alias=False)
async def query_audit_log(
    entry_type: Optional[List[AuditEntryType]] = Query(None, alias="type"),
    task_id: Optional[str] = None,
    actor: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    audit: AuditService = Depends(get_audit_service),
):
    """Entries in sequence order."""
    entries = await audit.query(AuditQuery(
        types=entry_type or [],
        task_id=task_id,
        actor=actor,
        start=start,
        end=end,
        skip=skip,
        limit=limit,
    ))
    return AuditListResponse(items=entries, count=len(entries))


@router.get("/stats", response_model=AuditStats)
async def audit_stats(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    audit: AuditService = Depends(get_audit_service),
):
    """Counts and total reasoning cost over a time range."""
    return await audit.stats(start, end)
