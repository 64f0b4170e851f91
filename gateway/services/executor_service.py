"""Task executor: runs approved tasks and records their inverse operations."""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional
import logging
import re

from pydantic import BaseModel, Field, ValidationError, field_validator

from gateway.core.config import Settings
from gateway.core.errors import ErrorDetail, ErrorKind, GatewayError, IntegrationError, TaskExecutionError
from gateway.models import (
    AuditEntryType,
    ExecutionPhase,
    Integration,
    IntegrationStatus,
    InverseOperation,
    POLICY_ACTOR,
    ServiceType,
    Task,
    TaskResult,
    TaskStatus,
    TaskType,
)
from gateway.services.audit_service import AuditService
from gateway.services.integration_service import IntegrationService
from gateway.services.reasoning import ReasoningResult, ReasoningService
from gateway.services.task_service import TaskService

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 4000

SECRET_PATTERNS = [
    ("AWS Access Key", re.compile(r"AKIA[0-9A-Z]{16}")),
    ("GitHub Token", re.compile(r"gh[pousr]_[0-9a-zA-Z]{36}")),
    ("Slack Token", re.compile(r"xox[abprs]-[0-9a-zA-Z-]{10,}")),
    ("Private Key", re.compile(r"-----BEGIN (?:RSA |EC |OPENSSH )?PRIVATE KEY-----")),
    ("Generic Secret", re.compile(r"(?i)(?:password|secret|token|api[_-]?key)\s*[:=]\s*['\"][^'\"]{8,}['\"]")),
    ("JWT Token", re.compile(r"eyJ[a-zA-Z0-9_-]*\.eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*")),
]

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


class ReasoningOutput(BaseModel):
    """Reasoning text as it may be posted to an external service."""
    text: str = Field(min_length=1, max_length=MAX_OUTPUT_CHARS)

    @field_validator("text")
    @classmethod
    def no_control_characters(cls, value: str) -> str:
        if _CONTROL_CHARS.search(value):
            raise ValueError("contains control characters")
        if not value.strip():
            raise ValueError("is blank")
        return value


def find_secrets(text: str) -> List[str]:
    return [name for name, pattern in SECRET_PATTERNS if pattern.search(text)]


@dataclass
class HandlerOutcome:
    output: Dict[str, Any]
    inverse: Optional[InverseOperation] = None


class TaskExecutor:
    """Performs approved tasks.

    Preconditions are re-checked against the audit trail rather than trusted
    from the task row: exactly one approval, and a human one for high and
    critical risk.
    """

    def __init__(
        self,
        task_service: TaskService,
        audit: AuditService,
        integration_service: IntegrationService,
        reasoning: ReasoningService,
        settings: Settings,
    ):
        self.task_service = task_service
        self.audit = audit
        self.integration_service = integration_service
        self.reasoning = reasoning
        self.settings = settings

        self._handlers: Dict[TaskType, Callable[[Task], Awaitable[HandlerOutcome]]] = {
            TaskType.CODE_REVIEW: self._code_review,
            TaskType.ISSUE_TRIAGE: self._issue_triage,
            TaskType.DEPLOYMENT_TRIAGE: self._deployment_triage,
            TaskType.CHAT_REPLY: self._chat_reply,
        }
        missing = [t.value for t in TaskType if t not in self._handlers]
        if missing:
            raise TypeError(f"TaskExecutor has no handler for task types: {', '.join(missing)}")

    async def execute(self, task_id: str) -> TaskResult:
        """Run an approved task: approved -> executing -> completed | failed."""
        task = await self.task_service.require(task_id)
        if task.status != TaskStatus.APPROVED:
            return self._refused(task, f"Task is {task.status.value}, not approved")

        refusal = await self._approval_problem(task)
        if refusal:
            await self.audit.record(
                AuditEntryType.SAFETY_CHECK,
                task_id=task.id,
                check="approval",
                passed=False,
                reason=refusal,
            )
            logger.error(f"Refusing to execute task {task.id}: {refusal}")
            return self._refused(task, refusal)

        if not await self.task_service.transition(task.id, TaskStatus.APPROVED, TaskStatus.EXECUTING):
            current = await self.task_service.require(task.id)
            return self._refused(current, f"Task is {current.status.value}, not approved")

        await self.audit.record(
            AuditEntryType.EXECUTION,
            task_id=task.id,
            phase=ExecutionPhase.STARTED.value,
            task_type=task.type.value,
            risk_level=task.risk_level.value,
            integration_id=task.integration_id,
            input=task.input,
        )
        logger.info(f"Executing task {task.id} ({task.type.value})")

        attempts = self.settings.task_max_attempts if task.retryable else 1
        for attempt in range(1, attempts + 1):
            try:
                outcome = await self._handlers[task.type](task)
                break
            except GatewayError as e:
                error = e
            except Exception as e:
                logger.error(f"Unexpected error executing task {task.id}: {e}", exc_info=True)
                error = TaskExecutionError(str(e))

            if attempt < attempts:
                logger.warning(f"Task {task.id} attempt {attempt}/{attempts} failed: {error.message}")
                continue

            detail = ErrorDetail(kind=error.kind, message=error.message)
            cost = await self._spent(task.id)
            await self.task_service.transition(
                task.id,
                TaskStatus.EXECUTING,
                TaskStatus.FAILED,
                error=detail.model_dump(),
                cost=cost,
            )
            await self.audit.record(
                AuditEntryType.ERROR,
                task_id=task.id,
                kind=error.kind.value,
                message=error.message,
                attempts=attempt,
                cost=cost,
            )
            logger.error(f"Task {task.id} failed: {error.message}")
            return TaskResult(task_id=task.id, status=TaskStatus.FAILED, error=detail)

        cost = await self._spent(task.id)
        inverse = outcome.inverse.model_dump(mode="json") if outcome.inverse else None
        await self.audit.record(
            AuditEntryType.EXECUTION,
            task_id=task.id,
            phase=ExecutionPhase.COMPLETED.value,
            output=outcome.output,
            inverse=inverse,
            cost=cost,
        )
        await self.task_service.transition(
            task.id,
            TaskStatus.EXECUTING,
            TaskStatus.COMPLETED,
            output=outcome.output,
            inverse_operation=inverse,
            cost=cost,
        )
        logger.info(f"Task {task.id} completed (cost {cost:.4f})")
        return TaskResult(task_id=task.id, status=TaskStatus.COMPLETED, output=outcome.output)

    async def _approval_problem(self, task: Task) -> Optional[str]:
        entries = await self.audit.entries_for(task.id, AuditEntryType.APPROVAL)
        approvals = [entry for entry in entries if entry.detail.get("decision") == "approved"]
        if len(approvals) != 1:
            return f"Expected exactly one approval, found {len(approvals)}"
        if task.risk_level.requires_human and approvals[0].actor == POLICY_ACTOR:
            return f"{task.risk_level.value} risk task was approved by policy"
        return None

    @staticmethod
    def _refused(task: Task, message: str) -> TaskResult:
        return TaskResult(
            task_id=task.id,
            status=task.status,
            error=ErrorDetail(kind=ErrorKind.INVALID_TRANSITION, message=message),
        )

    async def _spent(self, task_id: str) -> float:
        """Reasoning cost across every attempt, as recorded on the safety checks."""
        entries = await self.audit.entries_for(task_id, AuditEntryType.SAFETY_CHECK)
        return sum(float(entry.detail.get("cost") or 0) for entry in entries)

    # Reasoning

    async def _reason(self, task: Task, prompt: str) -> ReasoningResult:
        """Generate text and refuse anything unsafe to post."""
        result = await self.reasoning.generate(prompt, {"task_type": task.type.value, **task.input})
        try:
            ReasoningOutput(text=result.text)
        except ValidationError as e:
            await self._safety_check(task, passed=False, reason=f"Invalid reasoning output: {e.errors()[0]['msg']}", cost=result.cost)
            raise TaskExecutionError("Reasoning output failed validation")

        secrets_found = find_secrets(result.text)
        if secrets_found:
            await self._safety_check(task, passed=False, reason="Secret-like content in reasoning output", findings=secrets_found, cost=result.cost)
            raise TaskExecutionError("Reasoning output contains secret-like content")

        await self._safety_check(task, passed=True, model=result.model, cost=result.cost)
        return result

    async def _safety_check(self, task: Task, passed: bool, **detail: Any) -> None:
        await self.audit.record(
            AuditEntryType.SAFETY_CHECK,
            task_id=task.id,
            check="reasoning_output",
            passed=passed,
            **detail,
        )

    # Side effects

    async def _integration_for(self, service: ServiceType, integration_id: Optional[str]) -> Integration:
        if integration_id:
            integration = await self.integration_service.require(integration_id)
            if integration.service == service:
                return integration
        # Event came from another provider, use any connected one
        connected = await self.integration_service.list(service=service, status=IntegrationStatus.CONNECTED, limit=1)
        if not connected:
            raise IntegrationError(f"No connected {service.value} integration")
        return connected[0]

    async def _perform(self, task: Task, integration: Integration, action: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Record the exact outbound call, then make it."""
        await self.audit.record(
            AuditEntryType.EXECUTION,
            task_id=task.id,
            phase=ExecutionPhase.ACTION.value,
            service=integration.service.value,
            integration_id=integration.id,
            action=action,
            params=params,
        )
        async with await self.integration_service.open_adapter(integration) as adapter:
            return await adapter.perform(action, params)

    async def _github_comment(
        self,
        task: Task,
        integration_id: Optional[str],
        repository: str,
        number: int,
        reasoning: ReasoningResult,
    ) -> HandlerOutcome:
        integration = await self._integration_for(ServiceType.GITHUB, integration_id)
        result = await self._perform(
            task,
            integration,
            "create_issue_comment",
            {"repository": repository, "number": number, "body": reasoning.text},
        )
        return HandlerOutcome(
            output={**result, "text": reasoning.text},
            inverse=InverseOperation(
                service=ServiceType.GITHUB,
                integration_id=integration.id,
                action="delete_issue_comment",
                params={"repository": repository, "comment_id": result["comment_id"]},
            ),
        )

    async def _slack_message(
        self,
        task: Task,
        integration_id: Optional[str],
        channel: str,
        reasoning: ReasoningResult,
        thread_ts: Optional[str] = None,
    ) -> HandlerOutcome:
        integration = await self._integration_for(ServiceType.SLACK, integration_id)
        result = await self._perform(
            task,
            integration,
            "post_message",
            {"channel": channel, "text": reasoning.text, "thread_ts": thread_ts},
        )
        return HandlerOutcome(
            output={**result, "text": reasoning.text},
            inverse=InverseOperation(
                service=ServiceType.SLACK,
                integration_id=integration.id,
                action="delete_message",
                params={"channel": result["channel"], "ts": result["ts"]},
            ),
        )

    # Handlers

    async def _code_review(self, task: Task) -> HandlerOutcome:
        review = await self._reason(task, f"Review pull request #{task.input['number']} in {task.input['repository']}.")
        return await self._github_comment(task, task.integration_id, task.input["repository"], task.input["number"], review)

    async def _issue_triage(self, task: Task) -> HandlerOutcome:
        triage = await self._reason(task, f"Triage issue #{task.input['number']} in {task.input['repository']}.")
        return await self._github_comment(task, task.integration_id, task.input["repository"], task.input["number"], triage)

    async def _deployment_triage(self, task: Task) -> HandlerOutcome:
        analysis = await self._reason(task, f"Explain why deployment {task.input.get('deployment_id')} failed.")
        notify = task.input.get("notify") or {}
        if notify.get("service") == ServiceType.GITHUB.value:
            return await self._github_comment(task, notify.get("integration_id"), notify["repository"], notify["number"], analysis)
        if notify.get("service") == ServiceType.SLACK.value:
            return await self._slack_message(task, notify.get("integration_id"), notify["channel"], analysis)
        # Nowhere to report, the analysis is the result
        return HandlerOutcome(output={"text": analysis.text})

    async def _chat_reply(self, task: Task) -> HandlerOutcome:
        reply = await self._reason(task, "Reply to the message that mentioned you.")
        return await self._slack_message(
            task,
            task.integration_id,
            task.input["channel"],
            reply,
            thread_ts=task.input.get("thread_ts"),
        )
