"""Tests for the health monitor."""

from datetime import datetime, timedelta

import pytest

from gateway.core.errors import AuthenticationError
from gateway.models import (
    AlertKind,
    CallOutcome,
    CallOutcomeKind,
    CheckResult,
    EventKind,
    HealthChecks,
    HealthState,
    IntegrationStatus,
    ServiceType,
)
from gateway.services.health_service import evaluate

from conftest import GITHUB_SECRET


def healthy_github(provider, remaining=4000):
    provider.route("GET", "/user", (200, {"login": "octocat"}))
    provider.route("GET", "/rate_limit", (200, {"resources": {"core": {"remaining": remaining, "limit": 5000}}}))
    provider.route("GET", "/user/repos", (200, [{"id": 1, "full_name": "acme/api"}]))


def outcome(integration, kind, message=None):
    return CallOutcome(integration_id=integration.id, service=integration.service, kind=kind, message=message)


class TestEvaluate:
    """Overall state from one probe cycle."""

    def test_all_passing_is_healthy(self):
        checks = HealthChecks(authentication=CheckResult(), rate_limit=CheckResult(), api_access=CheckResult())
        assert evaluate(checks) == HealthState.HEALTHY

    def test_auth_failure_is_unhealthy(self):
        checks = HealthChecks(authentication=CheckResult.failure("401"))
        assert evaluate(checks) == HealthState.UNHEALTHY

    def test_webhook_failure_is_unhealthy(self):
        checks = HealthChecks(authentication=CheckResult(), webhooks=CheckResult.failure("no hooks"))
        assert evaluate(checks) == HealthState.UNHEALTHY

    def test_degraded_check_degrades(self):
        checks = HealthChecks(authentication=CheckResult(), rate_limit=CheckResult(degraded=True))
        assert evaluate(checks) == HealthState.DEGRADED

    def test_failed_api_access_degrades(self):
        checks = HealthChecks(authentication=CheckResult(), api_access=CheckResult.failure("timeout"))
        assert evaluate(checks) == HealthState.DEGRADED


class TestProbe:
    """Probe cycles against the provider."""

    @pytest.mark.asyncio
    async def test_healthy_probe(self, container, github_integration, provider):
        healthy_github(provider)

        status = await container.health.probe(github_integration.id)

        assert status.status == HealthState.HEALTHY
        assert status.checks.authentication.passed
        assert status.checks.rate_limit.detail["remaining"] == 4000
        assert status.checks.webhooks is None
        assert list(container.health.recent_alerts) == []

    @pytest.mark.asyncio
    async def test_low_quota_degrades(self, container, github_integration, provider):
        healthy_github(provider, remaining=10)

        status = await container.health.probe(github_integration.id)

        assert status.status == HealthState.DEGRADED
        assert "rate_limit" in status.reason
        integration = await container.integrations.get(github_integration.id)
        assert integration.status == IntegrationStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_auth_failure_marks_integration_error(self, container, github_integration, provider):
        provider.route("GET", "/user", (401, {"message": "Bad credentials"}))

        status = await container.health.probe(github_integration.id)

        assert status.status == HealthState.UNHEALTHY
        assert status.checks.rate_limit is None
        integration = await container.integrations.get(github_integration.id)
        assert integration.status == IntegrationStatus.ERROR
        assert [a.kind for a in container.health.recent_alerts] == [AlertKind.RAISED]

    @pytest.mark.asyncio
    async def test_repeated_auth_failures_alert_once(self, container, github_integration, provider):
        provider.route("GET", "/user", (401, {"message": "Bad credentials"}))

        for _ in range(3):
            status = await container.health.probe(github_integration.id)
            assert status.status == HealthState.UNHEALTHY

        assert [a.kind for a in container.health.recent_alerts] == [AlertKind.RAISED]

    @pytest.mark.asyncio
    async def test_recovery_alert(self, container, github_integration, provider):
        provider.route("GET", "/user", (401, {"message": "Bad credentials"}))
        await container.health.probe(github_integration.id)

        healthy_github(provider)
        status = await container.health.probe(github_integration.id)

        assert status.status == HealthState.HEALTHY
        assert status.reason is None
        assert [a.kind for a in container.health.recent_alerts] == [AlertKind.RAISED, AlertKind.RECOVERED]
        integration = await container.integrations.get(github_integration.id)
        assert integration.status == IntegrationStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_missing_webhooks_make_integration_unhealthy(self, container, provider):
        integration = await container.integrations.connect(
            ServiceType.GITHUB,
            "Hooks",
            {"access_token": "gho_hooks", "webhook_secret": GITHUB_SECRET},
            {"webhooks_enabled": True, "repositories": ["acme/api"]},
        )
        await container.drain()
        healthy_github(provider)
        provider.route("GET", "/repos/acme/api/hooks", (200, []))

        status = await container.health.probe(integration.id)

        assert status.status == HealthState.UNHEALTHY
        assert status.checks.webhooks.detail["missing"] == 1

    @pytest.mark.asyncio
    async def test_disconnected_integration_is_not_probed(self, container, github_integration, provider):
        await container.integrations.disconnect(github_integration.id)

        assert await container.health.probe(github_integration.id) is None
        assert provider.calls("GET", "/user") == []


class TestCallOutcomes:
    """Outcomes reported by adapters between probes."""

    @pytest.mark.asyncio
    async def test_rate_limited_call_degrades(self, container, github_integration):
        await container.health.record_outcome(outcome(github_integration, CallOutcomeKind.RATE_LIMITED, "429"))

        assert await container.health.current_state(github_integration.id) == HealthState.DEGRADED

    @pytest.mark.asyncio
    async def test_outcomes_never_improve_state(self, container, github_integration):
        await container.health.record_outcome(outcome(github_integration, CallOutcomeKind.AUTH_FAILED, "401"))
        await container.health.record_outcome(outcome(github_integration, CallOutcomeKind.RATE_LIMITED, "429"))

        assert await container.health.current_state(github_integration.id) == HealthState.UNHEALTHY

    @pytest.mark.asyncio
    async def test_adapter_auth_failure_reason_is_not_repeated(self, container, github_integration, provider):
        provider.route("GET", "/user", (401, {"message": "Bad credentials"}))

        async with await container.integrations.open_adapter(github_integration) as adapter:
            with pytest.raises(AuthenticationError):
                await adapter.authentication_probe()

        status = await container.health.get_status(github_integration.id)
        assert status.status == HealthState.UNHEALTHY
        assert status.reason.startswith("Authentication failed: ")
        assert status.reason.count("Authentication failed") == 1
        alert = container.health.recent_alerts[-1]
        assert alert.message.count("Authentication failed") == 1

    @pytest.mark.asyncio
    async def test_small_window_is_ignored(self, container, github_integration):
        for _ in range(3):
            await container.health.record_outcome(outcome(github_integration, CallOutcomeKind.TRANSIENT))

        assert container.health.failure_ratio(github_integration.id) is None

    @pytest.mark.asyncio
    async def test_failing_window_degrades_passing_probe(self, container, github_integration, provider):
        for _ in range(10):
            await container.health.record_outcome(outcome(github_integration, CallOutcomeKind.TRANSIENT))
        healthy_github(provider)

        status = await container.health.probe(github_integration.id)

        assert status.status == HealthState.DEGRADED
        assert "recent calls failed" in status.reason


class TestAlerting:
    """Alert once on entry, remind at most once per interval."""

    @pytest.mark.asyncio
    async def test_reminder_after_interval(self, container, github_integration):
        health = container.health
        start = datetime(2024, 1, 1, 12, 0, 0)

        await health.transition(github_integration, HealthState.DEGRADED, reason="slow", now=start)
        await health.transition(github_integration, HealthState.DEGRADED, reason="slow", now=start + timedelta(minutes=30))
        await health.transition(github_integration, HealthState.DEGRADED, reason="slow", now=start + timedelta(minutes=61))

        kinds = [a.kind for a in health.recent_alerts]
        assert kinds == [AlertKind.RAISED, AlertKind.REMINDER]
        assert "still degraded" in health.recent_alerts[-1].message

    @pytest.mark.asyncio
    async def test_state_since_kept_while_state_persists(self, container, github_integration):
        health = container.health
        start = datetime(2024, 1, 1, 12, 0, 0)

        await health.transition(github_integration, HealthState.DEGRADED, reason="slow", now=start)
        status = await health.transition(
            github_integration, HealthState.DEGRADED, reason="slow", now=start + timedelta(minutes=5)
        )

        assert status.state_since == start
        assert status.last_checked_at == start + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_alerts_are_published(self, container, github_integration):
        received = []

        async def collect(event):
            received.append(event)

        container.bus.subscribe(EventKind.INTEGRATION_ALERT, collect)
        container.bus.subscribe(EventKind.INTEGRATION_HEALTH_CHANGED, collect)

        await container.health.transition(github_integration, HealthState.UNHEALTHY, reason="revoked")
        await container.drain()

        kinds = sorted(e.kind.value for e in received)
        assert kinds == ["integration.alert", "integration.health_changed"]
        alert = next(e for e in received if e.kind == EventKind.INTEGRATION_ALERT)
        assert alert.payload["kind"] == "raised"
        assert alert.payload["state"] == "unhealthy"
