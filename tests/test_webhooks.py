"""Tests for webhook ingress."""

import json
import time

import httpx
import pytest
import pytest_asyncio

from gateway.core.errors import ErrorKind
from gateway.main import create_app
from gateway.models import IntegrationStatus, ServiceType

from conftest import github_delivery, sign_github, sign_vercel, slack_headers

PUSH = {"ref": "refs/heads/main", "after": "abc123", "repository": {"id": 1, "full_name": "acme/api"}}


@pytest_asyncio.fixture
async def client(settings, container):
    app = create_app(settings, container=container)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://gateway") as http:
        yield http


class TestWebhookVerification:
    """Signature verification happens before anything is parsed or published."""

    @pytest.mark.asyncio
    async def test_valid_delivery_is_published(self, container, github_integration):
        body, headers = github_delivery("push", PUSH, "delivery-1")

        result = await container.webhooks.receive("github", body, headers)

        assert result.accepted
        assert result.error is None
        assert container.bus.stats["published"] == 1

        record = await container.webhooks.collection.find_one({"_id": result.event_id})
        assert record["verified"] is True
        assert record["integration_id"] == github_integration.id
        assert record["dedupe_key"] == "github:push:delivery-1"

    @pytest.mark.asyncio
    async def test_invalid_signature_is_rejected_and_recorded(self, container, github_integration):
        body, headers = github_delivery("push", PUSH, "delivery-2", secret="wrong-secret")

        result = await container.webhooks.receive("github", body, headers)

        assert not result.accepted
        assert result.error.kind == ErrorKind.SIGNATURE_INVALID
        assert container.bus.stats["published"] == 0

        records = await container.webhooks.get_webhook_events(service=ServiceType.GITHUB, verified=False)
        assert len(records) == 1
        assert records[0].payload is None
        assert records[0].external_delivery_id == "delivery-2"

    @pytest.mark.asyncio
    async def test_body_altered_after_signing_is_rejected(self, container, github_integration):
        body, headers = github_delivery("push", PUSH, "delivery-3")
        altered = body.replace(b"main", b"evil")

        result = await container.webhooks.receive("github", altered, headers)

        assert result.error.kind == ErrorKind.SIGNATURE_INVALID

    @pytest.mark.asyncio
    async def test_missing_signature_is_rejected(self, container, github_integration):
        body, headers = github_delivery("push", PUSH, "delivery-4")
        del headers["X-Hub-Signature-256"]

        result = await container.webhooks.receive("github", body, headers)

        assert result.error.kind == ErrorKind.SIGNATURE_INVALID

    @pytest.mark.asyncio
    async def test_non_ascii_github_signature_is_rejected(self, container, github_integration):
        body, headers = github_delivery("push", PUSH, "delivery-6")
        headers["X-Hub-Signature-256"] = "sha256=é" + "0" * 63

        result = await container.webhooks.receive("github", body, headers)

        assert result.error.kind == ErrorKind.SIGNATURE_INVALID
        records = await container.webhooks.get_webhook_events(service=ServiceType.GITHUB, verified=False)
        assert [r.external_delivery_id for r in records] == ["delivery-6"]

    @pytest.mark.asyncio
    async def test_non_ascii_vercel_signature_is_rejected(self, container, vercel_integration):
        body = json.dumps({"id": "evt_2", "type": "deployment.succeeded", "payload": {}}).encode()

        result = await container.webhooks.receive("vercel", body, {"X-Vercel-Signature": "é" * 40})

        assert result.error.kind == ErrorKind.SIGNATURE_INVALID

    @pytest.mark.asyncio
    async def test_non_ascii_slack_signature_is_rejected(self, container, slack_integration):
        body = json.dumps({"type": "event_callback", "event_id": "Ev2", "event": {"type": "message"}}).encode()
        headers = slack_headers(body)
        headers["X-Slack-Signature"] = "v0=ü" + "0" * 63

        result = await container.webhooks.receive("slack", body, headers)

        assert result.error.kind == ErrorKind.SIGNATURE_INVALID

    @pytest.mark.asyncio
    async def test_errored_integration_still_verifies_deliveries(self, container, github_integration, provider):
        provider.route("GET", "/user", (401, {"message": "Bad credentials"}))
        await container.health.probe(github_integration.id)
        assert (await container.integrations.get(github_integration.id)).status == IntegrationStatus.ERROR

        body, headers = github_delivery("push", PUSH, "delivery-7")
        result = await container.webhooks.receive("github", body, headers)

        assert result.accepted
        assert result.error is None
        record = await container.webhooks.collection.find_one({"_id": result.event_id})
        assert record["integration_id"] == github_integration.id

    @pytest.mark.asyncio
    async def test_disconnected_integration_secret_is_not_used(self, container, github_integration):
        await container.integrations.disconnect(github_integration.id)

        body, headers = github_delivery("push", PUSH, "delivery-8")
        result = await container.webhooks.receive("github", body, headers)

        assert result.error.kind == ErrorKind.SIGNATURE_INVALID

    @pytest.mark.asyncio
    async def test_service_wide_secret_is_used_as_fallback(self, container):
        container.webhooks.integration_service.settings.github_webhook_secret = "fallback-secret"
        body, headers = github_delivery("push", PUSH, "delivery-5", secret="fallback-secret")

        result = await container.webhooks.receive("github", body, headers)

        assert result.accepted
        record = await container.webhooks.collection.find_one({"_id": result.event_id})
        assert record["integration_id"] is None

    @pytest.mark.asyncio
    async def test_unknown_service(self, container):
        result = await container.webhooks.receive("gitlab", b"{}", {})

        assert result.error.kind == ErrorKind.UNKNOWN_SERVICE


class TestWebhookPayloads:
    """Parsing, normalization and de-duplication of verified deliveries."""

    @pytest.mark.asyncio
    async def test_malformed_payload(self, container, github_integration):
        body = b"{not json"
        _, headers = github_delivery("push", PUSH, "delivery-6")
        headers["X-Hub-Signature-256"] = sign_github(body)

        result = await container.webhooks.receive("github", body, headers)

        assert result.error.kind == ErrorKind.MALFORMED_PAYLOAD
        assert container.bus.stats["published"] == 0

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_acknowledged_once(self, container, github_integration):
        body, headers = github_delivery("push", PUSH, "delivery-7")

        first = await container.webhooks.receive("github", body, headers)
        second = await container.webhooks.receive("github", body, headers)

        assert first.accepted and not first.duplicate
        assert second.accepted and second.duplicate
        assert container.bus.stats["published"] == 1
        assert await container.webhooks.collection.count_documents({"verified": True}) == 1

    @pytest.mark.asyncio
    async def test_unmapped_event_is_stored_but_not_published(self, container, github_integration):
        body, headers = github_delivery("star", {"action": "created"}, "delivery-8")

        result = await container.webhooks.receive("github", body, headers)

        assert result.accepted and result.ignored
        assert container.bus.stats["published"] == 0

    @pytest.mark.asyncio
    async def test_slack_url_verification(self, container, slack_integration):
        body = json.dumps({"type": "url_verification", "challenge": "abc123"}).encode()

        result = await container.webhooks.receive("slack", body, slack_headers(body))

        assert result.accepted
        assert result.challenge == "abc123"

    @pytest.mark.asyncio
    async def test_slack_replayed_request_is_rejected(self, container, slack_integration):
        body = json.dumps({"type": "event_callback", "event_id": "Ev1", "event": {"type": "message"}}).encode()
        stale = int(time.time()) - 600

        result = await container.webhooks.receive("slack", body, slack_headers(body, timestamp=stale))

        assert result.error.kind == ErrorKind.SIGNATURE_INVALID

    @pytest.mark.asyncio
    async def test_vercel_delivery(self, container, vercel_integration):
        payload = {
            "id": "evt_1",
            "type": "deployment.succeeded",
            "createdAt": 1700000000000,
            "payload": {"deployment": {"id": "dpl_1", "name": "web", "url": "web.vercel.app"}, "target": "preview"},
        }
        body = json.dumps(payload).encode()

        result = await container.webhooks.receive("vercel", body, {"X-Vercel-Signature": sign_vercel(body)})
        await container.drain()

        assert result.accepted
        entity = await container.sync.get_entity(vercel_integration.id, "deployments", "dpl_1")
        assert entity is not None
        assert entity.data["state"] == "READY"


class TestWebhookEndpoint:
    """HTTP status codes of the receive endpoint."""

    @pytest.mark.asyncio
    async def test_accepted(self, client, github_integration):
        body, headers = github_delivery("push", PUSH, "delivery-9")

        response = await client.post("/webhooks/github/receive", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "accepted"

    @pytest.mark.asyncio
    async def test_bad_signature(self, client, github_integration):
        body, headers = github_delivery("push", PUSH, "delivery-10", secret="nope")

        response = await client.post("/webhooks/github/receive", content=body, headers=headers)

        assert response.status_code == 401
        assert response.json()["kind"] == "signature_invalid"

    @pytest.mark.asyncio
    async def test_unknown_service(self, client):
        response = await client.post("/webhooks/bitbucket/receive", content=b"{}")

        assert response.status_code == 404
        assert response.json()["kind"] == "unknown_service"

    @pytest.mark.asyncio
    async def test_slack_challenge(self, client, slack_integration):
        body = json.dumps({"type": "url_verification", "challenge": "xyz"}).encode()

        response = await client.post("/webhooks/slack/receive", content=body, headers=slack_headers(body))

        assert response.status_code == 200
        assert response.json() == {"challenge": "xyz"}
