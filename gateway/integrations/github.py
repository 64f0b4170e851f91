"""GitHub client adapter."""

import hmac
import hashlib
from typing import Dict, Any, List, Optional, AsyncIterator, Mapping
from datetime import timedelta
import urllib.parse
import logging

import httpx

from gateway.core.config import INTEGRATION_CONFIGS
from gateway.core.errors import AuthenticationError, GatewayError, IntegrationError
from gateway.integrations.base import BaseClientAdapter
from gateway.integrations.registry import IntegrationRegistry
from gateway.models import (
    CheckResult,
    Event,
    EventKind,
    NormalizedWebhook,
    OAuthToken,
    RemoteEntity,
    ServiceType,
)
from gateway.utils.clock import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

# X-GitHub-Event value -> bus kind. Anything else (ping, star, ...) is acknowledged only.
EVENT_KINDS = {
    "pull_request": EventKind.GITHUB_PULL_REQUEST,
    "issues": EventKind.GITHUB_ISSUES,
    "push": EventKind.GITHUB_PUSH,
    "repository": EventKind.GITHUB_REPOSITORY,
}


@IntegrationRegistry.register(ServiceType.GITHUB)
class GitHubAdapter(BaseClientAdapter):
    """GitHub adapter using an OAuth or personal access token."""

    service = ServiceType.GITHUB
    signature_header = "X-Hub-Signature-256"
    event_type_header = "X-GitHub-Event"
    delivery_id_header = "X-GitHub-Delivery"

    @classmethod
    def authorization_url(cls, client_id: str, redirect_uri: Optional[str], state: str) -> str:
        """Generate GitHub OAuth authorization URL."""
        config = INTEGRATION_CONFIGS["github"]
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri or "",
            "scope": " ".join(config["scopes"]),
            "state": state,
        }
        return f"{config['auth_url']}?{urllib.parse.urlencode(params)}"

    @classmethod
    async def exchange_code_for_token(
        cls,
        http_client: httpx.AsyncClient,
        code: str,
        client_id: str,
        client_secret: str,
        redirect_uri: Optional[str] = None,
    ) -> OAuthToken:
        """Exchange authorization code for access token."""
        data = {
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": redirect_uri or "",
            "code": code,
        }

        response = await http_client.post(
            INTEGRATION_CONFIGS["github"]["token_url"],
            data=data,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/x-www-form-urlencoded"
            },
        )

        if response.status_code != 200:
            raise AuthenticationError(f"Token exchange failed: {response.text}")

        token_data = response.json()

        if "error" in token_data:
            raise AuthenticationError(
                f"Token exchange failed: {token_data.get('error_description', token_data['error'])}"
            )

        # GitHub tokens don't expire by default
        expires_at = None
        if "expires_in" in token_data:
            expires_at = utcnow() + timedelta(seconds=token_data["expires_in"])

        return OAuthToken(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            token_type=token_data.get("token_type", "bearer"),
            expires_at=expires_at,
            scope=token_data.get("scope", ""),
        )

    # Webhooks

    @classmethod
    def verify_signature(cls, secret, raw_body, headers, now=None) -> bool:
        """Verify GitHub webhook signature."""
        signature = cls.header(headers, cls.signature_header)
        if not secret or not signature:
            return False

        # GitHub uses HMAC-SHA256 with 'sha256=' prefix
        if not signature.startswith("sha256="):
            return False

        expected_signature = "sha256=" + hmac.new(
            secret.encode(),
            raw_body,
            hashlib.sha256
        ).hexdigest()

        return hmac.compare_digest(signature.encode("utf-8"), expected_signature.encode())

    @classmethod
    def normalize_webhook(cls, payload: Dict[str, Any], headers: Mapping[str, str]) -> NormalizedWebhook:
        event_name = cls.header(headers, cls.event_type_header) or "unknown"
        action = payload.get("action")
        return NormalizedWebhook(
            kind=EVENT_KINDS.get(event_name),
            event_type=f"{event_name}.{action}" if action else event_name,
            external_id=cls.header(headers, cls.delivery_id_header),
        )

    @classmethod
    def entity_from_event(cls, event: Event) -> Optional[RemoteEntity]:
        payload = event.payload
        if event.kind == EventKind.GITHUB_PULL_REQUEST and payload.get("pull_request"):
            repo = payload.get("repository", {}).get("full_name", "")
            return cls._pull_request_entity(repo, payload["pull_request"])
        if event.kind == EventKind.GITHUB_REPOSITORY and payload.get("repository"):
            return cls._repository_entity(payload["repository"])
        return None

    @staticmethod
    def _repository_entity(repo: Dict[str, Any]) -> RemoteEntity:
        return RemoteEntity(
            entity_type="repositories",
            external_id=str(repo["id"]),
            updated_at=parse_timestamp(repo.get("updated_at")),
            data={
                "github_id": repo["id"],
                "full_name": repo.get("full_name"),
                "private": repo.get("private"),
                "default_branch": repo.get("default_branch"),
                "language": repo.get("language"),
                "stars": repo.get("stargazers_count"),
                "html_url": repo.get("html_url"),
                "archived": repo.get("archived", False),
            },
        )

    @staticmethod
    def _pull_request_entity(repo: str, pr: Dict[str, Any]) -> RemoteEntity:
        return RemoteEntity(
            entity_type="pull_requests",
            external_id=f"{repo}#{pr['number']}",
            updated_at=parse_timestamp(pr.get("updated_at")),
            data={
                "repository": repo,
                "number": pr["number"],
                "title": pr.get("title"),
                "state": pr.get("state"),
                "draft": pr.get("draft", False),
                "merged": bool(pr.get("merged_at")),
                "author": (pr.get("user") or {}).get("login"),
                "head": (pr.get("head") or {}).get("ref"),
                "base": (pr.get("base") or {}).get("ref"),
                "html_url": pr.get("html_url"),
            },
        )

    # Remote API

    def auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credentials['access_token']}",
            "Accept": "application/vnd.github+json",
        }

    def next_page_params(self, response, data, params):
        if "next" not in response.links:
            return None
        return {**params, "page": int(params.get("page", 1)) + 1}

    async def list_entities(self, entity_type, since=None) -> AsyncIterator[RemoteEntity]:
        if entity_type == "repositories":
            async for entity in self._list_repositories(since):
                yield entity
        elif entity_type == "pull_requests":
            async for entity in self._list_pull_requests(since):
                yield entity
        else:
            raise IntegrationError(f"GitHub does not sync {entity_type}")

    async def _list_repositories(self, since) -> AsyncIterator[RemoteEntity]:
        params = {
            "per_page": 100,
            "sort": "updated",
            "direction": "desc"
        }
        async for repo in self.paginate_api_results("/user/repos", params):
            entity = self.build_entity("repositories", repo, self._repository_entity)
            # Sorted newest first; everything after this is older than the cursor
            if since and entity.updated_at and entity.updated_at <= since:
                return
            yield entity

    async def _repository_names(self) -> List[str]:
        names = self.integration.metadata.get("repositories")
        if names:
            return list(names)
        return [
            repo["full_name"]
            async for repo in self.paginate_api_results("/user/repos", {"per_page": 100})
        ]

    async def _list_pull_requests(self, since) -> AsyncIterator[RemoteEntity]:
        for repo in await self._repository_names():
            params = {
                "state": "all",
                "per_page": 100,
                "sort": "updated",
                "direction": "desc",
            }
            async for pr in self.paginate_api_results(f"/repos/{repo}/pulls", params):
                entity = self.build_entity("pull_requests", pr, lambda item: self._pull_request_entity(repo, item))
                if since and entity.updated_at and entity.updated_at <= since:
                    break
                yield entity

    async def authentication_probe(self) -> Dict[str, Any]:
        response = await self.call("GET", "/user")
        user = response.json()
        return {"login": user.get("login"), "name": user.get("name")}

    async def fetch_rate_limit(self) -> Optional[Dict[str, int]]:
        response = await self.call("GET", "/rate_limit")
        core = response.json().get("resources", {}).get("core", {})
        return {"remaining": core.get("remaining", 0), "limit": core.get("limit", 0)}

    async def api_access_probe(self) -> Dict[str, Any]:
        response = await self.call("GET", "/user/repos", params={"per_page": 1})
        return {"repositories_visible": len(response.json())}

    async def check_webhooks(self, webhook_url: Optional[str]) -> Optional[CheckResult]:
        """Check webhook registration on every tracked repository."""
        if not self.integration.metadata.get("webhooks_enabled"):
            return None

        repositories = self.integration.metadata.get("repositories") or []
        results = {"total": len(repositories), "configured": 0, "missing": 0, "errors": []}

        for repo in repositories:
            try:
                response = await self.call("GET", f"/repos/{repo}/hooks")
            except GatewayError as e:
                results["errors"].append({"repository": repo, "error": e.message})
                continue

            hooks = response.json()
            if any(self._hook_matches(hook, webhook_url) for hook in hooks):
                results["configured"] += 1
            else:
                results["missing"] += 1

        if results["errors"] or results["configured"] == 0:
            return CheckResult(passed=False, error="Webhook delivery is not verifiable", detail=results)
        return CheckResult(degraded=results["missing"] > 0, detail=results)

    @staticmethod
    def _hook_matches(hook: Dict[str, Any], webhook_url: Optional[str]) -> bool:
        if not hook.get("active", True):
            return False
        if webhook_url is None:
            return True
        return (hook.get("config") or {}).get("url") == webhook_url

    # Actions

    def actions(self):
        return {
            "create_issue_comment": self.create_issue_comment,
            "delete_issue_comment": self.delete_issue_comment,
        }

    async def create_issue_comment(self, repository: str, number: int, body: str) -> Dict[str, Any]:
        """Comment on an issue or pull request."""
        response = await self.call(
            "POST",
            f"/repos/{repository}/issues/{number}/comments",
            json={"body": body},
        )
        comment = response.json()
        return {
            "repository": repository,
            "number": number,
            "comment_id": comment["id"],
            "html_url": comment.get("html_url"),
        }

    async def delete_issue_comment(self, repository: str, comment_id: int) -> Dict[str, Any]:
        await self.call("DELETE", f"/repos/{repository}/issues/comments/{comment_id}")
        return {"repository": repository, "comment_id": comment_id, "deleted": True}
