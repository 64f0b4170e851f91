"""Integration service for managing integrations."""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
import json
import logging
import secrets
import uuid

import httpx
import redis.asyncio as redis

from gateway.core.config import Settings
from gateway.core.database import Database, COLLECTIONS
from gateway.core.errors import AuthenticationError, IntegrationError, IntegrityError, NotFound
from gateway.integrations.base import BaseClientAdapter, CallObserver
from gateway.integrations.registry import IntegrationRegistry
from gateway.models import Integration, IntegrationStatus, RetryPolicy, ServiceType
from gateway.utils.clock import utcnow
from gateway.utils.crypto import CredentialVault
from gateway.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

LifecycleHook = Callable[[Integration], Awaitable[None]]


class IntegrationService:
    """Owns integration rows and their encrypted credentials."""

    def __init__(
        self,
        db: Database,
        redis_client: redis.Redis,
        vault: CredentialVault,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.db = db
        self.redis_client = redis_client
        self.vault = vault
        self.settings = settings
        self.retry_policy = RetryPolicy.from_settings(settings)
        # Outbound transport override, used to stub providers
        self.transport = transport
        self.observer: Optional[CallObserver] = None
        self.on_connected: List[LifecycleHook] = []
        self.on_disconnected: List[LifecycleHook] = []

    @property
    def collection(self):
        return self.db.get_collection(COLLECTIONS["integrations"])

    async def connect(
        self,
        service: ServiceType,
        name: str,
        credentials: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Integration:
        """Create a connected integration from token credentials."""
        if IntegrationRegistry.get(service) is None:
            raise IntegrationError(f"Unknown service: {service}")
        if not credentials.get("access_token"):
            raise AuthenticationError("Credentials must include an access_token")

        integration = Integration(
            id=str(uuid.uuid4()),
            service=service,
            name=name,
            status=IntegrationStatus.CONNECTED,
            encrypted_credentials=self.vault.encrypt_json(credentials),
            metadata=metadata or {},
        )
        await self.collection.insert_one(integration.model_dump(by_alias=True))
        logger.info(f"Created integration {integration.id} for {service.value}")

        for hook in self.on_connected:
            await hook(integration)
        return integration

    async def get_authorization_url(self, service: ServiceType, ttl: int = 600) -> Tuple[str, str]:
        """Start an OAuth flow. Returns (url, state)."""
        adapter_class = IntegrationRegistry.get(service)
        if adapter_class is None or not hasattr(adapter_class, "authorization_url"):
            raise IntegrationError(f"{service.value} does not support OAuth")
        if not self.settings.github_client_id:
            raise IntegrationError("OAuth client id is not configured")

        state = secrets.token_urlsafe(24)
        await self.redis_client.setex(f"oauth_state:{state}", ttl, json.dumps({"service": service.value}))
        return adapter_class.authorization_url(self.settings.github_client_id, self.settings.github_redirect_uri, state), state

    async def verify_oauth_state(self, state: str) -> Optional[Dict[str, str]]:
        """Verify OAuth state and return associated data."""
        key = f"oauth_state:{state}"
        value = await self.redis_client.get(key)

        if value:
            # Delete the state after verification
            await self.redis_client.delete(key)
            return json.loads(value)

        return None

    async def connect_oauth(
        self,
        service: ServiceType,
        code: str,
        state: Optional[str] = None,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Integration:
        """Complete an OAuth flow by exchanging the code for a token."""
        adapter_class = IntegrationRegistry.get(service)
        if adapter_class is None or not hasattr(adapter_class, "exchange_code_for_token"):
            raise IntegrationError(f"{service.value} does not support OAuth")

        if state is not None:
            data = await self.verify_oauth_state(state)
            if not data or data.get("service") != service.value:
                raise AuthenticationError("Unknown or expired OAuth state")

        async with httpx.AsyncClient(timeout=self.settings.http_timeout, transport=self.transport) as client:
            token = await adapter_class.exchange_code_for_token(
                client,
                code,
                self.settings.github_client_id or "",
                self.settings.github_client_secret or "",
                self.settings.github_redirect_uri,
            )

        credentials = token.model_dump(mode="json", exclude_none=True)
        logger.info(f"OAuth flow completed for {service.value}")
        return await self.connect(service, name or f"{service.value} (OAuth)", credentials, metadata)

    async def disconnect(self, integration_id: str) -> Integration:
        """Wipe credentials and mark the integration disconnected."""
        integration = await self.require(integration_id)
        await self.collection.update_one(
            {"_id": integration_id},
            {"$set": {
                "encrypted_credentials": None,
                "status": IntegrationStatus.DISCONNECTED.value,
                "error_message": None,
                "updated_at": utcnow(),
            }}
        )
        await RateLimiter(self.redis_client, prefix=self._rate_limit_prefix(integration)).reset_rate_limit(
            integration.service.value
        )
        integration.encrypted_credentials = None
        integration.status = IntegrationStatus.DISCONNECTED

        for hook in self.on_disconnected:
            await hook(integration)
        logger.info(f"Disconnected integration {integration_id}")
        return integration

    async def get(self, integration_id: str) -> Optional[Integration]:
        doc = await self.collection.find_one({"_id": integration_id})
        return Integration(**doc) if doc else None

    async def require(self, integration_id: str) -> Integration:
        integration = await self.get(integration_id)
        if integration is None:
            raise NotFound(f"Integration {integration_id} not found")
        return integration

    async def list(
        self,
        service: Optional[ServiceType] = None,
        status: Optional[IntegrationStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Integration]:
        filters: Dict[str, Any] = {}
        if service:
            filters["service"] = service.value
        if status:
            filters["status"] = status.value

        cursor = self.collection.find(filters).sort("created_at", 1).skip(skip).limit(limit)
        return [Integration(**doc) async for doc in cursor]

    async def set_status(
        self,
        integration_id: str,
        status: IntegrationStatus,
        error_message: Optional[str] = None,
    ) -> bool:
        """Update status. Disconnected integrations stay disconnected."""
        result = await self.collection.update_one(
            {"_id": integration_id, "status": {"$ne": IntegrationStatus.DISCONNECTED.value}},
            {"$set": {"status": status.value, "error_message": error_message, "updated_at": utcnow()}}
        )
        if result.modified_count:
            logger.info(f"Integration {integration_id} status -> {status.value}")
        return result.modified_count > 0

    async def mark_synced(self, integration_id: str) -> None:
        await self.collection.update_one(
            {"_id": integration_id},
            {"$set": {"last_sync_at": utcnow()}}
        )

    async def load_credentials(self, integration: Integration) -> Dict[str, Any]:
        """Decrypt credentials. A corrupted blob forces the integration into error."""
        if not integration.encrypted_credentials:
            raise AuthenticationError(f"Integration {integration.id} has no credentials")
        try:
            return self.vault.decrypt_json(integration.encrypted_credentials)
        except IntegrityError as e:
            logger.error(f"Credentials for integration {integration.id} are unusable: {e.message}")
            await self.set_status(integration.id, IntegrationStatus.ERROR, e.message)
            raise

    async def webhook_secrets(self, service: ServiceType) -> List[Tuple[Optional[str], str]]:
        """Candidate (integration_id, secret) pairs for verifying a delivery."""
        candidates: List[Tuple[Optional[str], str]] = []
        for integration in await self.list(service=service, limit=0):
            # Errored integrations keep verifying deliveries
            if integration.status == IntegrationStatus.DISCONNECTED:
                continue
            try:
                credentials = await self.load_credentials(integration)
            except (IntegrityError, AuthenticationError):
                continue
            if credentials.get("webhook_secret"):
                candidates.append((integration.id, credentials["webhook_secret"]))

        fallback = self.settings.webhook_secret_for(service.value)
        if fallback:
            candidates.append((None, fallback))
        return candidates

    async def open_adapter(self, integration: Integration) -> BaseClientAdapter:
        """Build a client adapter for the integration. Use with ``async with``."""
        if integration.status == IntegrationStatus.DISCONNECTED:
            raise IntegrationError(f"Integration {integration.id} is disconnected")
        adapter_class = IntegrationRegistry.get(integration.service)
        if adapter_class is None:
            raise IntegrationError(f"No adapter for {integration.service}")

        credentials = await self.load_credentials(integration)
        return adapter_class(
            integration,
            credentials,
            retry_policy=self.retry_policy,
            rate_limiter=RateLimiter(self.redis_client, prefix=self._rate_limit_prefix(integration)),
            observer=self.observer,
            transport=self.transport,
            timeout=self.settings.http_timeout,
        )

    @staticmethod
    def _rate_limit_prefix(integration: Integration) -> str:
        return f"rate_limit:{integration.service.value}:{integration.id}"
