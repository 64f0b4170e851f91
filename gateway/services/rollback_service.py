"""Rollback manager: invokes the inverse recorded for a completed task."""

from typing import Optional
import logging

from gateway.core.config import Settings
from gateway.core.errors import ErrorDetail, ErrorKind, GatewayError
from gateway.models import (
    AuditEntryType,
    ExecutionPhase,
    InverseOperation,
    RollbackOutcome,
    RollbackResult,
    Task,
    TaskStatus,
)
from gateway.services.audit_service import AuditService
from gateway.services.integration_service import IntegrationService
from gateway.services.task_service import TaskService
from gateway.utils.locks import LockManager

logger = logging.getLogger(__name__)


class RollbackService:
    """Undo completed tasks.

    A task is rollbackable when it is ``completed`` and its audit trail holds
    the inverse operation the executor recorded on completion.
    Rollbacks have no inverse of their own.
    """

    def __init__(
        self,
        task_service: TaskService,
        audit: AuditService,
        integration_service: IntegrationService,
        locks: LockManager,
        settings: Settings,
    ):
        self.task_service = task_service
        self.audit = audit
        self.integration_service = integration_service
        self.locks = locks
        self.settings = settings

    async def rollback(self, task_id: str, actor_id: str) -> RollbackResult:
        task = await self.task_service.require(task_id)
        refusal = await self._precondition(task)
        if refusal is not None:
            return refusal

        async with self.locks.hold(f"rollback:{task_id}", self.settings.rollback_lock_ttl) as held:
            if not held:
                return self._result(task, RollbackOutcome.ALREADY_ROLLED_BACK, "Rollback already in progress")

            # Another caller may have finished between the first check and the lock
            task = await self.task_service.require(task_id)
            refusal = await self._precondition(task)
            if refusal is not None:
                return refusal

            inverse = await self.recorded_inverse(task.id)
            try:
                integration = await self.integration_service.require(inverse.integration_id)
                async with await self.integration_service.open_adapter(integration) as adapter:
                    result = await adapter.perform(inverse.action, inverse.params)
            except GatewayError as e:
                await self.audit.record(
                    AuditEntryType.ERROR,
                    task_id=task.id,
                    actor=actor_id,
                    operation="rollback",
                    action=inverse.action,
                    kind=e.kind.value,
                    message=e.message,
                )
                logger.error(f"Rollback of task {task.id} failed: {e.message}")
                return RollbackResult(
                    task_id=task.id,
                    outcome=RollbackOutcome.FAILED,
                    error=e.to_detail(),
                )

            entry = await self.audit.record(
                AuditEntryType.ROLLBACK,
                task_id=task.id,
                actor=actor_id,
                service=inverse.service.value,
                integration_id=inverse.integration_id,
                action=inverse.action,
                params=inverse.params,
                result=result,
            )
            if not await self.task_service.transition(task.id, TaskStatus.COMPLETED, TaskStatus.ROLLED_BACK):
                logger.error(f"Task {task.id} left completed after its inverse ran")

        logger.info(f"Task {task.id} rolled back by {actor_id}")
        return RollbackResult(task_id=task.id, outcome=RollbackOutcome.OK, audit_entry_id=entry.id)

    async def _precondition(self, task: Task) -> Optional[RollbackResult]:
        if task.status == TaskStatus.ROLLED_BACK:
            return self._result(task, RollbackOutcome.ALREADY_ROLLED_BACK, f"Task {task.id} is already rolled back")
        if task.status != TaskStatus.COMPLETED:
            return self._result(task, RollbackOutcome.NOT_ROLLBACKABLE, f"Task {task.id} is {task.status.value}, not completed")
        if await self.recorded_inverse(task.id) is None:
            return self._result(task, RollbackOutcome.NOT_ROLLBACKABLE, f"Task {task.id} has no recorded inverse")
        return None

    async def recorded_inverse(self, task_id: str) -> Optional[InverseOperation]:
        """Inverse written on the task's completed ``execution`` entry."""
        for entry in await self.audit.executions(task_id, ExecutionPhase.COMPLETED):
            if entry.detail.get("inverse"):
                return InverseOperation(**entry.detail["inverse"])
        return None

    @staticmethod
    def _result(task: Task, outcome: RollbackOutcome, message: str) -> RollbackResult:
        kind = ErrorKind.ALREADY_ROLLED_BACK if outcome == RollbackOutcome.ALREADY_ROLLED_BACK else ErrorKind.NOT_ROLLBACKABLE
        return RollbackResult(
            task_id=task.id,
            outcome=outcome,
            error=ErrorDetail(kind=kind, message=message),
        )
