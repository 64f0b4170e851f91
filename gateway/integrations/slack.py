"""Slack client adapter."""

import hmac
import hashlib
import time
from typing import Dict, Any, Optional, AsyncIterator, Mapping
import logging

import httpx

from gateway.core.errors import AuthenticationError, IntegrationError, RateLimitError
from gateway.integrations.base import BaseClientAdapter
from gateway.integrations.registry import IntegrationRegistry
from gateway.models import Event, EventKind, NormalizedWebhook, RemoteEntity, ServiceType
from gateway.utils.clock import parse_timestamp

logger = logging.getLogger(__name__)

# Requests older than this are treated as replays
SIGNATURE_MAX_AGE = 60 * 5

AUTH_ERRORS = {"invalid_auth", "not_authed", "token_revoked", "token_expired", "account_inactive"}

CHANNEL_EVENTS = {"channel_created", "channel_rename", "channel_archive", "channel_unarchive"}


@IntegrationRegistry.register(ServiceType.SLACK)
class SlackAdapter(BaseClientAdapter):
    """Slack adapter using a bot token."""

    service = ServiceType.SLACK
    signature_header = "X-Slack-Signature"
    timestamp_header = "X-Slack-Request-Timestamp"

    @classmethod
    def verify_signature(cls, secret, raw_body, headers, now=None) -> bool:
        """Verify Slack request signature (``v0:{timestamp}:{body}``)."""
        signature = cls.header(headers, cls.signature_header)
        timestamp = cls.header(headers, cls.timestamp_header)
        if not secret or not signature or not timestamp:
            return False

        try:
            request_time = int(timestamp)
        except ValueError:
            return False
        current = now if now is not None else time.time()
        if abs(current - request_time) > SIGNATURE_MAX_AGE:
            return False

        basestring = b"v0:" + timestamp.encode() + b":" + raw_body
        expected_signature = "v0=" + hmac.new(secret.encode(), basestring, hashlib.sha256).hexdigest()
        return hmac.compare_digest(signature.encode("utf-8"), expected_signature.encode())

    @classmethod
    def normalize_webhook(cls, payload: Dict[str, Any], headers: Mapping[str, str]) -> NormalizedWebhook:
        if payload.get("type") != "event_callback":
            return NormalizedWebhook(event_type=payload.get("type") or "unknown")

        event = payload.get("event") or {}
        event_type = event.get("type") or "unknown"
        if event_type in ("message", "app_mention"):
            kind = EventKind.SLACK_MESSAGE
        elif event_type in CHANNEL_EVENTS:
            kind = EventKind.SLACK_CHANNEL
        else:
            kind = None
        return NormalizedWebhook(kind=kind, event_type=event_type, external_id=payload.get("event_id"))

    @classmethod
    def challenge_response(cls, payload: Dict[str, Any]) -> Optional[str]:
        if payload.get("type") == "url_verification":
            return payload.get("challenge")
        return None

    @classmethod
    def entity_from_event(cls, event: Event) -> Optional[RemoteEntity]:
        if event.kind != EventKind.SLACK_CHANNEL:
            return None
        inner = event.payload.get("event") or {}
        channel = inner.get("channel")
        if isinstance(channel, dict):
            channel_id, name = channel.get("id"), channel.get("name")
        else:
            channel_id, name = channel, None
        if not channel_id:
            return None

        data: Dict[str, Any] = {"archived": inner.get("type") == "channel_archive"}
        if name:
            data["name"] = name
        return RemoteEntity(
            entity_type="channels",
            external_id=channel_id,
            updated_at=parse_timestamp(event.payload.get("event_time")),
            data=data,
        )

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.credentials['access_token']}"}

    def raise_for_status(self, response: httpx.Response) -> None:
        super().raise_for_status(response)
        # Slack reports most failures as 200 with ok=false
        try:
            data = response.json()
        except ValueError:
            return
        if not isinstance(data, dict) or data.get("ok", True):
            return

        error = data.get("error", "unknown_error")
        if error in AUTH_ERRORS:
            raise AuthenticationError(f"Slack authentication failed: {error}")
        if error == "ratelimited":
            raise RateLimitError("Slack rate limit exceeded")
        raise IntegrationError(f"Slack API error: {error}")

    def extract_results_from_response(self, data):
        return data.get("channels", [])

    def next_page_params(self, response, data, params):
        cursor = (data.get("response_metadata") or {}).get("next_cursor")
        if not cursor:
            return None
        return {**params, "cursor": cursor}

    async def list_entities(self, entity_type, since=None) -> AsyncIterator[RemoteEntity]:
        if entity_type != "channels":
            raise IntegrationError(f"Slack does not sync {entity_type}")

        params = {"limit": 200, "types": "public_channel,private_channel", "exclude_archived": "false"}
        async for channel in self.paginate_api_results("/conversations.list", params):
            yield self.build_entity("channels", channel, self._channel_entity)

    @staticmethod
    def _channel_entity(channel: Dict[str, Any]) -> RemoteEntity:
        return RemoteEntity(
            entity_type="channels",
            external_id=channel["id"],
            updated_at=parse_timestamp(channel.get("updated") or channel.get("created")),
            data={
                "name": channel.get("name"),
                "is_private": channel.get("is_private", False),
                "archived": channel.get("is_archived", False),
                "members": channel.get("num_members"),
                "topic": (channel.get("topic") or {}).get("value"),
            },
        )

    async def authentication_probe(self) -> Dict[str, Any]:
        response = await self.call("POST", "/auth.test")
        data = response.json()
        return {"user_id": data.get("user_id"), "team": data.get("team")}

    # Actions

    def actions(self):
        return {
            "post_message": self.post_message,
            "delete_message": self.delete_message,
        }

    async def post_message(self, channel: str, text: str, thread_ts: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"channel": channel, "text": text}
        if thread_ts:
            body["thread_ts"] = thread_ts
        response = await self.call("POST", "/chat.postMessage", json=body)
        data = response.json()
        return {"channel": data.get("channel", channel), "ts": data["ts"]}

    async def delete_message(self, channel: str, ts: str) -> Dict[str, Any]:
        await self.call("POST", "/chat.delete", json={"channel": channel, "ts": ts})
        return {"channel": channel, "ts": ts, "deleted": True}
