"""Vercel client adapter."""

import hmac
import hashlib
from typing import Dict, Any, Optional, AsyncIterator, Mapping
from datetime import datetime, timezone
import logging

from gateway.core.errors import IntegrationError
from gateway.integrations.base import BaseClientAdapter
from gateway.integrations.registry import IntegrationRegistry
from gateway.models import Event, EventKind, NormalizedWebhook, RemoteEntity, ServiceType
from gateway.utils.clock import parse_timestamp

logger = logging.getLogger(__name__)


@IntegrationRegistry.register(ServiceType.VERCEL)
class VercelAdapter(BaseClientAdapter):
    """Vercel adapter using an access token, optionally scoped to a team."""

    service = ServiceType.VERCEL
    signature_header = "X-Vercel-Signature"

    @classmethod
    def verify_signature(cls, secret, raw_body, headers, now=None) -> bool:
        """Verify Vercel webhook signature (hex HMAC-SHA1 of the body)."""
        signature = cls.header(headers, cls.signature_header)
        if not secret or not signature:
            return False

        expected_signature = hmac.new(secret.encode(), raw_body, hashlib.sha1).hexdigest()
        return hmac.compare_digest(signature.encode("utf-8"), expected_signature.encode())

    @classmethod
    def normalize_webhook(cls, payload: Dict[str, Any], headers: Mapping[str, str]) -> NormalizedWebhook:
        event_type = payload.get("type") or "unknown"
        kind = EventKind.VERCEL_DEPLOYMENT if event_type.startswith("deployment") else None
        return NormalizedWebhook(kind=kind, event_type=event_type, external_id=payload.get("id"))

    @classmethod
    def entity_from_event(cls, event: Event) -> Optional[RemoteEntity]:
        if event.kind != EventKind.VERCEL_DEPLOYMENT:
            return None
        deployment = (event.payload.get("payload") or {}).get("deployment")
        if not deployment or not deployment.get("id"):
            return None

        # deployment.succeeded -> READY, deployment.error -> ERROR, ...
        state = event.event_type.split(".", 1)[-1].upper()
        return RemoteEntity(
            entity_type="deployments",
            external_id=deployment["id"],
            updated_at=parse_timestamp(event.payload.get("createdAt")),
            data={
                "name": deployment.get("name"),
                "url": deployment.get("url"),
                "state": {"SUCCEEDED": "READY", "CREATED": "BUILDING"}.get(state, state),
                "target": (event.payload.get("payload") or {}).get("target"),
                "project_id": (event.payload.get("payload") or {}).get("project", {}).get("id"),
                "meta": deployment.get("meta", {}),
            },
        )

    @staticmethod
    def _deployment_entity(deployment: Dict[str, Any]) -> RemoteEntity:
        changed = deployment.get("ready") or deployment.get("buildingAt") or deployment.get("created")
        return RemoteEntity(
            entity_type="deployments",
            external_id=deployment["uid"],
            updated_at=parse_timestamp(changed),
            data={
                "name": deployment.get("name"),
                "url": deployment.get("url"),
                "state": deployment.get("state") or deployment.get("readyState"),
                "target": deployment.get("target"),
                "project_id": deployment.get("projectId"),
                "meta": deployment.get("meta", {}),
            },
        )

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.credentials['access_token']}"}

    def _scoped(self, params: Dict[str, Any]) -> Dict[str, Any]:
        team_id = self.integration.metadata.get("team_id")
        if team_id:
            params["teamId"] = team_id
        return params

    def extract_results_from_response(self, data):
        return data.get("deployments", [])

    def next_page_params(self, response, data, params):
        next_marker = (data.get("pagination") or {}).get("next")
        if not next_marker:
            return None
        return {**params, "until": next_marker}

    async def list_entities(self, entity_type, since: Optional[datetime] = None) -> AsyncIterator[RemoteEntity]:
        if entity_type != "deployments":
            raise IntegrationError(f"Vercel does not sync {entity_type}")

        params = self._scoped({"limit": 100})
        if since:
            params["since"] = int(since.replace(tzinfo=timezone.utc).timestamp() * 1000)
        async for deployment in self.paginate_api_results("/v6/deployments", params):
            yield self.build_entity("deployments", deployment, self._deployment_entity)

    async def authentication_probe(self) -> Dict[str, Any]:
        response = await self.call("GET", "/v2/user")
        user = response.json().get("user", {})
        return {"username": user.get("username")}

    async def api_access_probe(self) -> Dict[str, Any]:
        response = await self.call("GET", "/v6/deployments", params=self._scoped({"limit": 1}))
        return {"deployments_visible": len(response.json().get("deployments", []))}
