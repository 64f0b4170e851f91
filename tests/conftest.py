"""Pytest configuration and fixtures for gateway tests."""

import hashlib
import hmac
import json
import time
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Tuple, Union

import fakeredis.aioredis
import httpx
import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

from gateway.core.config import Settings
from gateway.core.container import ServiceContainer
from gateway.core.database import Database
from gateway.models import Integration, ServiceType
from gateway.services.reasoning import ReasoningResult, ReasoningService
from gateway.utils.crypto import CredentialVault, generate_key

GITHUB_SECRET = "github-webhook-secret"
VERCEL_SECRET = "vercel-webhook-secret"
SLACK_SECRET = "slack-signing-secret"

Reply = Union[Tuple[int, Any], Tuple[int, Any, Dict[str, str]], Callable[[httpx.Request], httpx.Response]]


class FakeProvider:
    """Scripted provider APIs served through ``httpx.MockTransport``.

    Replies are queued per ``(method, path)``; the last one repeats. Unrouted
    requests get a 404.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], List[Reply]] = {}
        self.requests: List[httpx.Request] = []
        self.transport = httpx.MockTransport(self.handle)

    def route(self, method: str, path: str, *replies: Reply) -> None:
        self.routes[(method.upper(), path)] = list(replies)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        replies = self.routes.get((request.method, request.url.path))
        if not replies:
            return httpx.Response(404, json={"message": "Not Found"})
        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if callable(reply):
            return reply(request)
        status, body, *rest = reply
        return httpx.Response(status, json=body, headers=rest[0] if rest else None)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and r.url.path == path]


class FakeReasoning(ReasoningService):
    """Reasoning stub returning canned text."""

    def __init__(self, text: str = "Looks good to me.", cost: float = 0.01):
        self.text = text
        self.cost = cost
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    async def generate(self, prompt: str, context: Dict[str, Any]) -> ReasoningResult:
        self.calls.append((prompt, context))
        return ReasoningResult(text=self.text, cost=self.cost, model="fake")


def sign_github(body: bytes, secret: str = GITHUB_SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def sign_vercel(body: bytes, secret: str = VERCEL_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha1).hexdigest()


def slack_headers(body: bytes, secret: str = SLACK_SECRET, timestamp: Optional[int] = None) -> Dict[str, str]:
    timestamp = int(time.time()) if timestamp is None else timestamp
    basestring = f"v0:{timestamp}:".encode() + body
    return {
        "X-Slack-Request-Timestamp": str(timestamp),
        "X-Slack-Signature": "v0=" + hmac.new(secret.encode(), basestring, hashlib.sha256).hexdigest(),
    }


def github_delivery(event: str, payload: Dict[str, Any], delivery_id: str, secret: str = GITHUB_SECRET):
    """Raw body and headers of a signed GitHub delivery."""
    body = json.dumps(payload).encode()
    headers = {
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": delivery_id,
        "X-Hub-Signature-256": sign_github(body, secret),
        "Content-Type": "application/json",
    }
    return body, headers


@pytest.fixture
def settings() -> Settings:
    """Settings tuned for fast, deterministic tests."""
    return Settings(
        encryption_key=generate_key(),
        github_webhook_secret=None,
        vercel_webhook_secret=None,
        slack_signing_secret=None,
        slack_bot_user_id="UBOT",
        retry_base_backoff=0.0,
        retry_max_backoff=0.0,
        retry_jitter=0.0,
        event_bus_workers=2,
        event_bus_retry_delay=0.01,
        log_format="text",
    )


@pytest.fixture
def vault(settings) -> CredentialVault:
    return CredentialVault(settings.encryption_key)


@pytest_asyncio.fixture
async def db(settings) -> Database:
    """In-process MongoDB."""
    database = Database(settings, client=AsyncMongoMockClient())
    await database.ensure_indexes()
    return database


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[fakeredis.aioredis.FakeRedis, None]:
    """In-process redis."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def reasoning() -> FakeReasoning:
    return FakeReasoning()


@pytest_asyncio.fixture
async def container(settings, db, redis_client, provider, reasoning) -> AsyncGenerator[ServiceContainer, None]:
    """Fully wired services with a running event bus."""
    services = ServiceContainer(settings, db, redis_client, reasoning=reasoning, transport=provider.transport)
    await services.bus.start()
    yield services
    await services.shutdown()


@pytest_asyncio.fixture
async def github_integration(container) -> Integration:
    """Connected GitHub integration with its own webhook secret."""
    integration = await container.integrations.connect(
        ServiceType.GITHUB,
        "Acme GitHub",
        {"access_token": "gho_test", "webhook_secret": GITHUB_SECRET},
        {"repositories": ["acme/api"]},
    )
    await container.drain()
    return integration


@pytest_asyncio.fixture
async def slack_integration(container) -> Integration:
    integration = await container.integrations.connect(
        ServiceType.SLACK,
        "Acme Slack",
        {"access_token": "xoxb-test", "webhook_secret": SLACK_SECRET},
    )
    await container.drain()
    return integration


@pytest_asyncio.fixture
async def vercel_integration(container) -> Integration:
    integration = await container.integrations.connect(
        ServiceType.VERCEL,
        "Acme Vercel",
        {"access_token": "vercel-token", "webhook_secret": VERCEL_SECRET},
    )
    await container.drain()
    return integration
