"""Task classifier and approval gate."""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set
import logging
import uuid

from pymongo.errors import DuplicateKeyError

from gateway.core.config import Settings
from gateway.core.database import Database, COLLECTIONS
from gateway.core.errors import InvalidTransition, NotFound
from gateway.models import (
    AuditEntryType,
    Classification,
    Environment,
    Event,
    EventKind,
    POLICY_ACTOR,
    RiskLevel,
    Task,
    TaskProposal,
    TaskStatus,
    TaskType,
)
from gateway.services.audit_service import AuditService
from gateway.services.event_bus import EventBus, verify_exhaustive
from gateway.utils.clock import utcnow

logger = logging.getLogger(__name__)

TASK_ID_NAMESPACE = uuid.UUID("5b0c1f1e-8a57-4d55-9a3c-6c1f3f0f9e21")

PULL_REQUEST_ACTIONS = {"opened", "reopened", "synchronize"}
DEPLOYMENT_FAILURES = {"deployment.error", "deployment.failed"}
BODY_LIMIT = 4000


@dataclass
class RiskRule:
    """One classification heuristic. ``check`` returns a level when it matches."""
    name: str
    check: Callable[[TaskProposal], Optional[RiskLevel]]
    reason: Callable[[TaskProposal], str]


class RiskClassifier:
    """Scores a proposal as the highest level any rule assigns."""

    def __init__(self, settings: Settings):
        self.baselines = {
            TaskType(task_type): RiskLevel(level)
            for task_type, level in settings.risk_baselines.items()
        }
        self.magnitude_thresholds = [
            (settings.risk_magnitude_critical, RiskLevel.CRITICAL),
            (settings.risk_magnitude_high, RiskLevel.HIGH),
            (settings.risk_magnitude_medium, RiskLevel.MEDIUM),
        ]
        self.rules = self.default_rules()

    def default_rules(self) -> List[RiskRule]:
        return [
            RiskRule(
                "security-issues",
                lambda p: RiskLevel.CRITICAL if p.security_issues else None,
                lambda p: f"Security issues detected: {len(p.security_issues)} issue(s)",
            ),
            RiskRule(
                "failed-tests",
                lambda p: RiskLevel.CRITICAL if p.tests_passed is False else None,
                lambda p: "Tests failed - requires review",
            ),
            RiskRule(
                "destructive-production",
                lambda p: RiskLevel.CRITICAL if p.destructive and p.environment == Environment.PRODUCTION else None,
                lambda p: "Destructive change in production",
            ),
            RiskRule(
                "production",
                lambda p: RiskLevel.HIGH if p.environment == Environment.PRODUCTION else None,
                lambda p: "Targets production",
            ),
            RiskRule(
                "destructive",
                lambda p: RiskLevel.HIGH if p.destructive else None,
                lambda p: "Destructive change",
            ),
            RiskRule(
                "magnitude",
                self._magnitude_level,
                lambda p: f"Large change: {p.magnitude} lines/records affected",
            ),
        ]

    def _magnitude_level(self, proposal: TaskProposal) -> Optional[RiskLevel]:
        for threshold, level in self.magnitude_thresholds:
            if proposal.magnitude >= threshold:
                return level
        return None

    def classify(self, proposal: TaskProposal) -> Classification:
        level = self.baselines.get(proposal.type, RiskLevel.MEDIUM)
        reasons = [f"Baseline for {proposal.type.value}: {level.value}"]
        for rule in self.rules:
            matched = rule.check(proposal)
            if matched is not None:
                level = RiskLevel.highest(level, matched)
                reasons.append(rule.reason(proposal))
        return Classification(risk_level=level, reasons=reasons)


class TaskService:
    """Creates tasks from events and proposals and owns their status transitions.

    Every status change is a compare-and-set on the stored status, so two
    callers racing on the same task cannot both win.
    """

    def __init__(
        self,
        db: Database,
        audit: AuditService,
        bus: EventBus,
        settings: Settings,
        classifier: Optional[RiskClassifier] = None,
    ):
        self.db = db
        self.audit = audit
        self.bus = bus
        self.settings = settings
        self.classifier = classifier or RiskClassifier(settings)
        self.sla = timedelta(seconds=settings.sla_escalation_threshold)
        # Set by the container; runs approved tasks in the background
        self.executor = None
        self._background: Set[asyncio.Task] = set()

        self._proposal_builders = {
            EventKind.GITHUB_PULL_REQUEST: self._code_review_proposal,
            EventKind.GITHUB_ISSUES: self._issue_triage_proposal,
            EventKind.GITHUB_PUSH: None,
            EventKind.GITHUB_REPOSITORY: None,
            EventKind.VERCEL_DEPLOYMENT: self._deployment_triage_proposal,
            EventKind.SLACK_MESSAGE: self._chat_reply_proposal,
            EventKind.SLACK_CHANNEL: None,
            EventKind.TASK_ESCALATED: None,
            EventKind.INTEGRATION_ALERT: None,
            EventKind.INTEGRATION_HEALTH_CHANGED: None,
        }
        verify_exhaustive(self._proposal_builders, "TaskService")

    @property
    def collection(self):
        return self.db.get_collection(COLLECTIONS["tasks"])

    def subscribe(self, bus: EventBus) -> None:
        for kind, builder in self._proposal_builders.items():
            if builder is not None:
                bus.subscribe(kind, self.handle_event, name=f"tasks:{kind.value}")

    # Proposals

    def classify(self, proposal: TaskProposal) -> Classification:
        return self.classifier.classify(proposal)

    @staticmethod
    def task_id_for(proposal: TaskProposal) -> str:
        if proposal.source_event_key:
            return str(uuid.uuid5(TASK_ID_NAMESPACE, f"{proposal.type.value}:{proposal.source_event_key}"))
        return str(uuid.uuid4())

    async def propose(self, proposal: TaskProposal) -> Task:
        """Classify and store a task; auto-approve low and medium risk."""
        classification = self.classify(proposal)
        auto = classification.auto_approved

        task = Task(
            id=self.task_id_for(proposal),
            type=proposal.type,
            risk_level=classification.risk_level,
            status=TaskStatus.APPROVED if auto else TaskStatus.PENDING,
            input=proposal.input,
            approved_by=POLICY_ACTOR if auto else None,
            integration_id=proposal.integration_id,
            source_event_key=proposal.source_event_key,
            environment=proposal.environment,
            destructive=proposal.destructive,
            magnitude=proposal.magnitude,
            retryable=proposal.retryable,
            classification_reasons=classification.reasons,
        )
        try:
            await self.collection.insert_one(task.model_dump(by_alias=True))
        except DuplicateKeyError:
            logger.info(f"Task {task.id} already exists for {proposal.source_event_key}")
            return await self.require(task.id)

        await self.audit.record(
            AuditEntryType.CLASSIFICATION,
            task_id=task.id,
            actor=POLICY_ACTOR,
            task_type=task.type.value,
            risk_level=task.risk_level.value,
            reasons=classification.reasons,
        )
        logger.info(f"Task {task.id} ({task.type.value}) classified {task.risk_level.value}")

        if auto:
            await self.audit.record(
                AuditEntryType.APPROVAL,
                task_id=task.id,
                actor=POLICY_ACTOR,
                decision="approved",
                risk_level=task.risk_level.value,
            )
            self.schedule_execution(task.id)
        return task

    # Human decisions

    async def approve(self, task_id: str, actor_id: str) -> Task:
        if not actor_id or actor_id == POLICY_ACTOR:
            raise InvalidTransition(f"{actor_id!r} cannot approve tasks")
        task = await self._decide(task_id, [TaskStatus.PENDING], TaskStatus.APPROVED, approved_by=actor_id)
        await self.audit.record(
            AuditEntryType.APPROVAL,
            task_id=task.id,
            actor=actor_id,
            decision="approved",
            risk_level=task.risk_level.value,
        )
        logger.info(f"Task {task_id} approved by {actor_id}")
        self.schedule_execution(task.id)
        return task

    async def reject(self, task_id: str, actor_id: str, reason: str) -> Task:
        task = await self._decide(
            task_id,
            [TaskStatus.PENDING, TaskStatus.APPROVED],
            TaskStatus.REJECTED,
            rejection_reason=reason,
        )
        await self.audit.record(
            AuditEntryType.APPROVAL,
            task_id=task.id,
            actor=actor_id,
            decision="rejected",
            reason=reason,
        )
        logger.info(f"Task {task_id} rejected by {actor_id}: {reason}")
        return task

    async def cancel(self, task_id: str, actor_id: str) -> Task:
        """Cancel a task that has not started executing (an implicit reject)."""
        return await self.reject(task_id, actor_id, "canceled")

    async def _decide(self, task_id: str, allowed: List[TaskStatus], new_status: TaskStatus, **fields: Any) -> Task:
        result = await self.collection.update_one(
            {"_id": task_id, "status": {"$in": [s.value for s in allowed]}},
            {"$set": {"status": new_status.value, "updated_at": utcnow(), **fields}}
        )
        if not result.modified_count:
            task = await self.require(task_id)
            raise InvalidTransition(f"Task {task_id} is {task.status.value}, cannot move to {new_status.value}")
        return await self.require(task_id)

    async def transition(self, task_id: str, expected: TaskStatus, new_status: TaskStatus, **fields: Any) -> bool:
        """Compare-and-set used by the executor and rollback manager."""
        result = await self.collection.update_one(
            {"_id": task_id, "status": expected.value},
            {"$set": {"status": new_status.value, "updated_at": utcnow(), **fields}}
        )
        return result.modified_count > 0

    # Reads

    async def get(self, task_id: str) -> Optional[Task]:
        doc = await self.collection.find_one({"_id": task_id})
        return Task(**doc) if doc else None

    async def require(self, task_id: str) -> Task:
        task = await self.get(task_id)
        if task is None:
            raise NotFound(f"Task {task_id} not found")
        return task

    async def list(self, status: Optional[TaskStatus] = None, skip: int = 0, limit: int = 100) -> List[Task]:
        filters = {"status": status.value} if status else {}
        cursor = self.collection.find(filters).sort("created_at", -1).skip(skip).limit(limit)
        return [Task(**doc) async for doc in cursor]

    # Escalation

    async def check_escalations(self, now: Optional[datetime] = None) -> int:
        """Publish one escalation per pending task older than the SLA. Status is untouched."""
        now = now or utcnow()
        cursor = self.collection.find({
            "status": TaskStatus.PENDING.value,
            "escalated_at": None,
            "created_at": {"$lte": now - self.sla},
        })
        escalated = 0
        async for doc in cursor:
            task = Task(**doc)
            result = await self.collection.update_one(
                {"_id": task.id, "status": TaskStatus.PENDING.value, "escalated_at": None},
                {"$set": {"escalated_at": now}}
            )
            if not result.modified_count:
                continue
            escalated += 1
            self.bus.publish(Event(
                kind=EventKind.TASK_ESCALATED,
                event_type="task.escalated",
                external_id=task.id,
                payload={
                    "task_id": task.id,
                    "type": task.type.value,
                    "risk_level": task.risk_level.value,
                    "pending_since": task.created_at.isoformat(),
                },
                dedupe_key=f"task.escalated:{task.id}",
            ))
            logger.warning(f"Task {task.id} pending past SLA, escalated")
        return escalated

    # Execution hand-off

    def schedule_execution(self, task_id: str) -> None:
        if self.executor is None:
            return
        job = asyncio.create_task(self.executor.execute(task_id), name=f"execute:{task_id}")
        self._background.add(job)
        job.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for background executions."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # Event -> proposal

    async def handle_event(self, event: Event) -> Optional[Task]:
        builder = self._proposal_builders[event.kind]
        proposal = builder(event) if builder else None
        if proposal is None:
            return None
        return await self.propose(proposal)

    def _code_review_proposal(self, event: Event) -> Optional[TaskProposal]:
        pr = event.payload.get("pull_request")
        if event.action not in PULL_REQUEST_ACTIONS or not pr or pr.get("draft"):
            return None
        repository = event.payload.get("repository", {}).get("full_name")
        return TaskProposal(
            type=TaskType.CODE_REVIEW,
            integration_id=event.integration_id,
            source_event_key=event.dedupe_key,
            magnitude=int(pr.get("additions") or 0) + int(pr.get("deletions") or 0),
            input={
                "repository": repository,
                "number": pr["number"],
                "title": pr.get("title"),
                "body": (pr.get("body") or "")[:BODY_LIMIT],
                "head_sha": (pr.get("head") or {}).get("sha"),
                "base": (pr.get("base") or {}).get("ref"),
                "changed_files": pr.get("changed_files"),
                "html_url": pr.get("html_url"),
            },
        )

    def _issue_triage_proposal(self, event: Event) -> Optional[TaskProposal]:
        issue = event.payload.get("issue")
        if event.action != "opened" or not issue:
            return None
        return TaskProposal(
            type=TaskType.ISSUE_TRIAGE,
            integration_id=event.integration_id,
            source_event_key=event.dedupe_key,
            input={
                "repository": event.payload.get("repository", {}).get("full_name"),
                "number": issue["number"],
                "title": issue.get("title"),
                "body": (issue.get("body") or "")[:BODY_LIMIT],
                "labels": [label.get("name") for label in issue.get("labels", [])],
            },
        )

    def _deployment_triage_proposal(self, event: Event) -> Optional[TaskProposal]:
        if event.event_type not in DEPLOYMENT_FAILURES:
            return None
        body = event.payload.get("payload") or {}
        deployment = body.get("deployment") or {}
        meta = deployment.get("meta") or {}

        notify: Dict[str, Any] = {}
        if meta.get("githubCommitOrg") and meta.get("githubCommitRepo") and meta.get("githubPrId"):
            notify = {
                "service": "github",
                "repository": f"{meta['githubCommitOrg']}/{meta['githubCommitRepo']}",
                "number": int(meta["githubPrId"]),
            }
        elif self.settings.deployment_alert_channel:
            notify = {"service": "slack", "channel": self.settings.deployment_alert_channel}

        return TaskProposal(
            type=TaskType.DEPLOYMENT_TRIAGE,
            integration_id=event.integration_id,
            source_event_key=event.dedupe_key,
            environment=Environment.PRODUCTION if body.get("target") == "production" else Environment.STAGING,
            input={
                "deployment_id": deployment.get("id"),
                "name": deployment.get("name"),
                "url": deployment.get("url"),
                "target": body.get("target"),
                "project_id": (body.get("project") or {}).get("id"),
                "commit_message": meta.get("githubCommitMessage"),
                "notify": notify,
            },
        )

    def _chat_reply_proposal(self, event: Event) -> Optional[TaskProposal]:
        message = event.payload.get("event") or {}
        if message.get("bot_id") or message.get("subtype"):
            return None
        bot_user = self.settings.slack_bot_user_id
        mentioned = message.get("type") == "app_mention" or (
            bot_user is not None and f"<@{bot_user}>" in (message.get("text") or "")
        )
        if not mentioned:
            return None
        return TaskProposal(
            type=TaskType.CHAT_REPLY,
            integration_id=event.integration_id,
            source_event_key=event.dedupe_key,
            input={
                "channel": message.get("channel"),
                "user": message.get("user"),
                "text": (message.get("text") or "")[:BODY_LIMIT],
                "thread_ts": message.get("thread_ts") or message.get("ts"),
            },
        )
