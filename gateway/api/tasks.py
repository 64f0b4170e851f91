"""Task approval and rollback endpoints."""

from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional
import logging

from gateway.models import AuditEntry, RollbackOutcome, RollbackResult, Task, TaskProposal, TaskStatus
from gateway.schemas.task import RejectRequest, TaskListResponse
from gateway.services import AuditService, RollbackService, TaskService
from gateway.api.dependencies import (
    error_response,
    get_actor,
    get_audit_service,
    get_rollback_service,
    get_task_service,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=Task, response_model_by_alias=False, status_code=status.HTTP_201_CREATED)
async def propose_task(
    proposal: TaskProposal,
    tasks: TaskService = Depends(get_task_service),
):
    """Classify a proposal. Low and medium risk start executing right away."""
    return await tasks.propose(proposal)


@router.get("", response_model=TaskListResponse, response_model_by_alias=False)
async def list_tasks(
    task_status: Optional[TaskStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    tasks: TaskService = Depends(get_task_service),
):
    items = await tasks.list(status=task_status, skip=skip, limit=limit)
    return TaskListResponse(items=items, skip=skip, limit=limit)


@router.get("/{task_id}", response_model=Task, response_model_by_alias=False)
async def get_task(task_id: str, tasks: TaskService = Depends(get_task_service)):
    return await tasks.require(task_id)


@router.post("/{task_id}/approve", response_model=Task, response_model_by_alias=False)
async def approve_task(
    task_id: str,
    actor: str = Depends(get_actor),
    tasks: TaskService = Depends(get_task_service),
):
    return await tasks.approve(task_id, actor)


@router.post("/{task_id}/reject", response_model=Task, response_model_by_alias=False)
async def reject_task(
    task_id: str,
    request: RejectRequest,
    actor: str = Depends(get_actor),
    tasks: TaskService = Depends(get_task_service),
):
    return await tasks.reject(task_id, actor, request.reason)


@router.post("/{task_id}/cancel", response_model=Task, response_model_by_alias=False)
async def cancel_task(
    task_id: str,
    actor: str = Depends(get_actor),
    tasks: TaskService = Depends(get_task_service),
):
    """Cancel a task that has not started executing."""
    return await tasks.cancel(task_id, actor)


@router.post("/{task_id}/rollback", response_model=RollbackResult)
async def rollback_task(
    task_id: str,
    actor: str = Depends(get_actor),
    rollbacks: RollbackService = Depends(get_rollback_service),
):
    """Run the inverse recorded for a completed task."""
    result = await rollbacks.rollback(task_id, actor)
    if result.outcome != RollbackOutcome.OK:
        return error_response(result.error)
    return result


@router.get("/{task_id}/audit", response_model=List[AuditEntry], response_model_by_alias=False)
async def task_audit_trail(
    task_id: str,
    tasks: TaskService = Depends(get_task_service),
    audit: AuditService = Depends(get_audit_service),
):
    await tasks.require(task_id)
    return await audit.entries_for(task_id)
