"""Health monitor: periodic probes and the per-integration health state machine."""

import asyncio
from collections import defaultdict, deque
from datetime import datetime, timedelta
from typing import Deque, Dict, List, Optional
import logging

from gateway.core.config import Settings
from gateway.core.database import Database, COLLECTIONS
from gateway.core.errors import GatewayError
from gateway.models import (
    Alert,
    AlertKind,
    CallOutcome,
    CallOutcomeKind,
    CheckResult,
    Event,
    EventKind,
    HealthChecks,
    HealthState,
    HealthStatus,
    Integration,
    IntegrationStatus,
)
from gateway.services.event_bus import EventBus
from gateway.services.integration_service import IntegrationService
from gateway.utils.clock import utcnow
from gateway.utils.scheduler import IntervalScheduler

logger = logging.getLogger(__name__)

SEVERITY = {
    HealthState.HEALTHY: 0,
    HealthState.DEGRADED: 1,
    HealthState.UNHEALTHY: 2,
}

# Call outcomes counted against the rolling failure ratio
WINDOW_FAILURES = {CallOutcomeKind.TRANSIENT, CallOutcomeKind.ERROR}
# Fewer samples than this never degrade an integration on their own
WINDOW_MIN_SAMPLES = 10
WINDOW_FAILURE_RATIO = 0.5


def evaluate(checks: HealthChecks) -> HealthState:
    """Overall state from one probe cycle's checks."""
    if checks.authentication is not None and not checks.authentication.passed:
        return HealthState.UNHEALTHY
    if checks.webhooks is not None and not checks.webhooks.passed:
        return HealthState.UNHEALTHY

    results = [checks.authentication, checks.rate_limit, checks.api_access, checks.webhooks]
    if any(result is not None and (not result.passed or result.degraded) for result in results):
        return HealthState.DEGRADED
    return HealthState.HEALTHY


class HealthService:
    """Tracks healthy / degraded / unhealthy for each integration.

    Probe cycles and call outcomes reported by client adapters both feed the
    state machine. Alerts fire on entering a bad state, at most once per
    re-alert interval while it persists, and once on recovery.
    """

    def __init__(
        self,
        db: Database,
        integration_service: IntegrationService,
        bus: EventBus,
        settings: Settings,
        scheduler: Optional[IntervalScheduler] = None,
    ):
        self.db = db
        self.integration_service = integration_service
        self.bus = bus
        self.settings = settings
        self.scheduler = scheduler or IntervalScheduler("health")
        self.realert_interval = timedelta(seconds=settings.health_realert_interval)
        self.recent_alerts: Deque[Alert] = deque(maxlen=100)
        self._windows: Dict[str, Deque[CallOutcomeKind]] = defaultdict(
            lambda: deque(maxlen=settings.health_outcome_window)
        )
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def collection(self):
        return self.db.get_collection(COLLECTIONS["health_statuses"])

    async def get_status(self, integration_id: str) -> Optional[HealthStatus]:
        doc = await self.collection.find_one({"_id": integration_id})
        return HealthStatus(**doc) if doc else None

    async def current_state(self, integration_id: str) -> Optional[HealthState]:
        status = await self.get_status(integration_id)
        return status.status if status else None

    async def list_statuses(self) -> List[HealthStatus]:
        return [HealthStatus(**doc) async for doc in self.collection.find({})]

    # Call outcomes

    async def record_outcome(self, outcome: CallOutcome) -> None:
        """Feed the rolling window; throttling degrades and auth failures break."""
        self._windows[outcome.integration_id].append(outcome.kind)

        if outcome.kind == CallOutcomeKind.RATE_LIMITED:
            await self._escalate(outcome.integration_id, HealthState.DEGRADED, outcome.message or "Rate limited")
        elif outcome.kind == CallOutcomeKind.AUTH_FAILED:
            await self._escalate(outcome.integration_id, HealthState.UNHEALTHY, outcome.message or "Authentication failed")

    def failure_ratio(self, integration_id: str) -> Optional[float]:
        window = self._windows.get(integration_id)
        if not window or len(window) < WINDOW_MIN_SAMPLES:
            return None
        return sum(1 for kind in window if kind in WINDOW_FAILURES) / len(window)

    async def _escalate(self, integration_id: str, state: HealthState, reason: str) -> None:
        integration = await self.integration_service.get(integration_id)
        if integration is None or integration.status == IntegrationStatus.DISCONNECTED:
            return
        await self.transition(integration, state, reason=reason, escalate_only=True)

    # Probes

    async def probe(self, integration_id: str) -> Optional[HealthStatus]:
        """Run one probe cycle and apply the resulting state."""
        integration = await self.integration_service.get(integration_id)
        if integration is None or integration.status == IntegrationStatus.DISCONNECTED:
            logger.debug(f"Not probing {integration_id}: not connected")
            return None

        checks = await self.run_checks(integration)
        state = evaluate(checks)
        reason = self._reason(checks)

        ratio = self.failure_ratio(integration.id)
        if state == HealthState.HEALTHY and ratio is not None and ratio > WINDOW_FAILURE_RATIO:
            state = HealthState.DEGRADED
            reason = f"{ratio:.0%} of recent calls failed"

        return await self.transition(integration, state, checks=checks, reason=reason)

    async def run_checks(self, integration: Integration) -> HealthChecks:
        checks = HealthChecks()
        try:
            adapter = await self.integration_service.open_adapter(integration)
        except GatewayError as e:
            checks.authentication = CheckResult.failure(e.message)
            return checks

        async with adapter:
            checks.authentication = await adapter.check_authentication()
            if not checks.authentication.passed:
                # Every other check would fail the same way
                return checks
            checks.rate_limit = await adapter.check_rate_limit(self.settings.health_rate_limit_degraded_ratio)
            checks.api_access = await adapter.check_api_access(self.settings.health_latency_degraded_ms)
            checks.webhooks = await adapter.check_webhooks(self._webhook_url(integration))
        return checks

    def _webhook_url(self, integration: Integration) -> Optional[str]:
        if not self.settings.webhook_base_url:
            return None
        return f"{self.settings.webhook_base_url.rstrip('/')}/webhooks/{integration.service.value}/receive"

    @staticmethod
    def _reason(checks: HealthChecks) -> Optional[str]:
        for name in ("authentication", "webhooks", "rate_limit", "api_access"):
            result = getattr(checks, name)
            if result is None:
                continue
            if not result.passed:
                return f"{name} check failed: {result.error}"
            if result.degraded:
                return f"{name} check degraded"
        return None

    # State machine

    async def transition(
        self,
        integration: Integration,
        state: HealthState,
        checks: Optional[HealthChecks] = None,
        reason: Optional[str] = None,
        escalate_only: bool = False,
        now: Optional[datetime] = None,
    ) -> HealthStatus:
        """Persist the new state and emit whatever alert the policy calls for."""
        async with self._locks[integration.id]:
            now = now or utcnow()
            previous = await self.get_status(integration.id)
            previous_state = previous.status if previous else HealthState.HEALTHY

            if escalate_only and SEVERITY[state] <= SEVERITY[previous_state]:
                return previous

            status = HealthStatus(
                integration_id=integration.id,
                service=integration.service,
                status=state,
                last_checked_at=now,
                checks=checks or (previous.checks if previous else HealthChecks()),
                state_since=previous.state_since if previous and previous_state == state else now,
                last_alert_at=previous.last_alert_at if previous else None,
                reason=reason if state != HealthState.HEALTHY else None,
            )

            alert_kind = None
            if state != previous_state:
                alert_kind = AlertKind.RECOVERED if state == HealthState.HEALTHY else AlertKind.RAISED
            elif state != HealthState.HEALTHY and (
                status.last_alert_at is None or now - status.last_alert_at >= self.realert_interval
            ):
                alert_kind = AlertKind.REMINDER

            if alert_kind is not None:
                status.last_alert_at = now

            await self.collection.replace_one(
                {"_id": integration.id},
                status.model_dump(by_alias=True),
                upsert=True,
            )

        if state != previous_state:
            logger.info(f"Integration {integration.id} health {previous_state.value} -> {state.value}")
            await self._follow_integration_status(integration, state, reason)
            self.bus.publish(Event(
                kind=EventKind.INTEGRATION_HEALTH_CHANGED,
                service=integration.service,
                event_type=f"health.{state.value}",
                external_id=f"{integration.id}:{now.isoformat()}",
                integration_id=integration.id,
                payload={"from": previous_state.value, "to": state.value, "reason": reason},
            ))

        if alert_kind is not None:
            self._emit(Alert(
                integration_id=integration.id,
                service=integration.service,
                state=state,
                kind=alert_kind,
                message=self._alert_message(integration, state, alert_kind, reason),
                checks=status.checks,
                raised_at=now,
            ))
        return status

    async def _follow_integration_status(self, integration: Integration, state: HealthState, reason: Optional[str]):
        if state == HealthState.UNHEALTHY:
            await self.integration_service.set_status(integration.id, IntegrationStatus.ERROR, reason)
        elif state == HealthState.HEALTHY:
            await self.integration_service.set_status(integration.id, IntegrationStatus.CONNECTED)

    @staticmethod
    def _alert_message(integration: Integration, state: HealthState, kind: AlertKind, reason: Optional[str]) -> str:
        if kind == AlertKind.RECOVERED:
            return f"{integration.name} ({integration.service.value}) recovered"
        prefix = "still " if kind == AlertKind.REMINDER else ""
        return f"{integration.name} ({integration.service.value}) is {prefix}{state.value}: {reason or 'unknown reason'}"

    def _emit(self, alert: Alert) -> None:
        self.recent_alerts.append(alert)
        if alert.kind == AlertKind.RECOVERED:
            logger.info(f"ALERT {alert.message}")
        else:
            logger.warning(f"ALERT {alert.message}")
        self.bus.publish(Event(
            kind=EventKind.INTEGRATION_ALERT,
            service=alert.service,
            event_type=f"alert.{alert.kind.value}",
            external_id=f"{alert.integration_id}:{alert.raised_at.isoformat()}",
            integration_id=alert.integration_id,
            payload=alert.model_dump(mode="json"),
        ))

    # Timers

    def start_monitoring(self, integration: Integration) -> None:
        self.scheduler.schedule(
            integration.id,
            self.settings.health_probe_interval,
            lambda: self.probe(integration.id),
        )

    def stop_monitoring(self, integration_id: str) -> None:
        self.scheduler.cancel(integration_id)

    async def forget(self, integration: Integration) -> None:
        self.stop_monitoring(integration.id)
        self._windows.pop(integration.id, None)
        await self.collection.delete_one({"_id": integration.id})
