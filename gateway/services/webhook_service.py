"""Webhook ingress: verify, normalize, dedupe and publish inbound deliveries."""

import json
from typing import Dict, Any, Optional, List, Mapping, Tuple
from datetime import datetime
import logging

import redis.asyncio as redis

from gateway.core.config import Settings
from gateway.core.database import Database, COLLECTIONS
from gateway.core.errors import ErrorDetail, ErrorKind
from gateway.integrations.registry import IntegrationRegistry
from gateway.models import Event, IngressResult, ServiceType, WebhookEvent
from gateway.services.event_bus import EventBus
from gateway.services.integration_service import IntegrationService
from gateway.utils.crypto import payload_digest

logger = logging.getLogger(__name__)


def _rejected(kind: ErrorKind, message: str) -> IngressResult:
    return IngressResult(accepted=False, error=ErrorDetail(kind=kind, message=message))


class WebhookService:
    """Handles one inbound request at a time without waiting on subscribers."""

    def __init__(
        self,
        db: Database,
        redis_client: redis.Redis,
        integration_service: IntegrationService,
        bus: EventBus,
        settings: Settings,
    ):
        self.db = db
        self.redis_client = redis_client
        self.integration_service = integration_service
        self.bus = bus
        self.dedupe_window = settings.webhook_dedupe_window

    @property
    def collection(self):
        return self.db.get_collection(COLLECTIONS["webhook_events"])

    async def receive(
        self,
        service: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        now: Optional[float] = None,
    ) -> IngressResult:
        """Verify and publish one delivery.

        The signature is checked over the raw bytes before anything is
        parsed. A delivery that fails verification is recorded without its
        payload and never reaches the bus.
        """
        try:
            service_type = ServiceType(service)
        except ValueError:
            return _rejected(ErrorKind.UNKNOWN_SERVICE, f"Unknown service: {service}")
        adapter_class = IntegrationRegistry.get(service_type)
        if adapter_class is None:
            return _rejected(ErrorKind.UNKNOWN_SERVICE, f"Unknown service: {service}")

        digest = payload_digest(raw_body)
        verified, integration_id = await self._verify(service_type, adapter_class, raw_body, headers, now)
        if not verified:
            logger.warning(f"Rejected {service} webhook with invalid signature (digest {digest[:12]})")
            await self._store(WebhookEvent(
                service=service_type,
                event_type=adapter_class.header(headers, adapter_class.event_type_header),
                external_delivery_id=adapter_class.header(headers, adapter_class.delivery_id_header),
                payload_digest=digest,
                verified=False,
            ))
            return _rejected(ErrorKind.SIGNATURE_INVALID, "Webhook signature verification failed")

        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(f"Malformed {service} webhook payload: {e}")
            return _rejected(ErrorKind.MALFORMED_PAYLOAD, f"Payload is not valid JSON: {e}")
        if not isinstance(payload, dict):
            return _rejected(ErrorKind.MALFORMED_PAYLOAD, "Payload must be a JSON object")

        challenge = adapter_class.challenge_response(payload)
        if challenge is not None:
            return IngressResult(accepted=True, challenge=challenge)

        normalized = adapter_class.normalize_webhook(payload, headers)
        external_id = normalized.external_id or digest
        dedupe_key = f"{service_type.value}:{normalized.event_type}:{external_id}"

        marker = f"webhook:dedupe:{dedupe_key}"
        first_seen = await self.redis_client.set(marker, digest, nx=True, ex=self.dedupe_window)
        if not first_seen:
            logger.info(f"Duplicate {service} webhook {dedupe_key} acknowledged")
            return IngressResult(accepted=True, duplicate=True)

        record = WebhookEvent(
            service=service_type,
            integration_id=integration_id,
            event_type=normalized.event_type,
            external_delivery_id=normalized.external_id,
            dedupe_key=dedupe_key,
            payload_digest=digest,
            payload=payload,
            verified=True,
        )
        try:
            await self._store(record)
        except Exception:
            # Let the provider's redelivery through again
            await self.redis_client.delete(marker)
            raise

        if normalized.kind is None:
            logger.debug(f"Ignoring unmapped {service} event {normalized.event_type}")
            return IngressResult(accepted=True, event_id=record.id, ignored=True)

        event = Event(
            id=record.id,
            kind=normalized.kind,
            service=service_type,
            event_type=normalized.event_type,
            external_id=external_id,
            integration_id=integration_id,
            payload=payload,
            received_at=record.received_at,
            dedupe_key=dedupe_key,
        )
        self.bus.publish(event)
        logger.info(f"Accepted {service} webhook {normalized.event_type} ({external_id})")
        return IngressResult(accepted=True, event_id=event.id)

    async def _verify(
        self,
        service: ServiceType,
        adapter_class,
        raw_body: bytes,
        headers: Mapping[str, str],
        now: Optional[float],
    ) -> Tuple[bool, Optional[str]]:
        for integration_id, secret in await self.integration_service.webhook_secrets(service):
            if adapter_class.verify_signature(secret, raw_body, headers, now=now):
                return True, integration_id
        return False, None

    async def _store(self, record: WebhookEvent) -> None:
        await self.collection.insert_one(record.model_dump(by_alias=True))

    async def get_webhook_events(
        self,
        service: Optional[ServiceType] = None,
        verified: Optional[bool] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
        skip: int = 0
    ) -> List[WebhookEvent]:
        """Get webhook events with filters."""
        filters: Dict[str, Any] = {}
        if service:
            filters["service"] = service.value
        if verified is not None:
            filters["verified"] = verified
        if start_time or end_time:
            received_filter = {}
            if start_time:
                received_filter["$gte"] = start_time
            if end_time:
                received_filter["$lte"] = end_time
            filters["received_at"] = received_filter

        cursor = self.collection.find(filters).sort("received_at", -1).skip(skip).limit(limit)
        return [WebhookEvent(**doc) async for doc in cursor]
