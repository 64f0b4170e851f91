"""Base client adapter and utilities."""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List, AsyncIterator, Callable, Mapping, Protocol
from datetime import datetime
import asyncio
import logging
import time

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, wait_random, retry_if_exception_type
import httpx

from gateway.core.config import INTEGRATION_CONFIGS
from gateway.core.errors import (
    AuthenticationError,
    GatewayError,
    IntegrationError,
    RateLimitError,
    TransientError,
)
from gateway.models import (
    CallOutcome,
    CallOutcomeKind,
    CheckResult,
    Event,
    Integration,
    NormalizedWebhook,
    RemoteEntity,
    RetryPolicy,
    ServiceType,
)
from gateway.utils.rate_limiter import RateLimiter


logger = logging.getLogger(__name__)


class CallObserver(Protocol):
    """Receives the outcome of every adapter call."""

    async def record_outcome(self, outcome: CallOutcome) -> None:
        ...


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup on a plain mapping."""
    if name in headers:
        return headers[name]
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class BaseClientAdapter(ABC):
    """Base class for all client adapters.

    An adapter wraps one external service for one integration instance. The
    webhook side (signature verification, payload normalization) is exposed
    as classmethods because ingress runs it before any credentials are
    loaded.
    """

    service: ServiceType
    signature_header: str = ""
    event_type_header: Optional[str] = None
    delivery_id_header: Optional[str] = None

    def __init__(
        self,
        integration: Integration,
        credentials: Dict[str, Any],
        retry_policy: Optional[RetryPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        observer: Optional[CallObserver] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
        sleep=asyncio.sleep,
    ):
        self.integration = integration
        self.credentials = credentials
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limiter = rate_limiter
        self.observer = observer
        self.config = INTEGRATION_CONFIGS[self.service.value]
        self.api_base_url = self.config["api_base_url"]
        self.http_client = httpx.AsyncClient(
            base_url=self.api_base_url,
            timeout=timeout,
            transport=transport,
        )
        self._sleep = sleep
        self._backoff = (
            wait_exponential(multiplier=self.retry_policy.base_backoff, max=self.retry_policy.max_backoff)
            + wait_random(0, self.retry_policy.jitter)
        )
        # Last provider-reported quota, refreshed from every response
        self.last_rate_limit: Optional[Dict[str, int]] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.http_client.aclose()

    # Webhook side

    @classmethod
    @abstractmethod
    def verify_signature(
        cls,
        secret: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        now: Optional[float] = None,
    ) -> bool:
        """Recompute the provider signature over the raw body."""
        pass

    @classmethod
    @abstractmethod
    def normalize_webhook(cls, payload: Dict[str, Any], headers: Mapping[str, str]) -> NormalizedWebhook:
        """Map a verified delivery onto an event kind and external id."""
        pass

    @classmethod
    def challenge_response(cls, payload: Dict[str, Any]) -> Optional[str]:
        """Return the echo value for provider URL-verification handshakes."""
        return None

    @classmethod
    def entity_from_event(cls, event: Event) -> Optional[RemoteEntity]:
        """Extract the single entity a webhook event describes, if any."""
        return None

    @classmethod
    def header(cls, headers: Mapping[str, str], name: Optional[str]) -> Optional[str]:
        if not name:
            return None
        return _header(headers, name)

    # Remote API side

    @abstractmethod
    def auth_headers(self) -> Dict[str, str]:
        """Headers that authenticate a request."""
        pass

    @abstractmethod
    def list_entities(self, entity_type: str, since: Optional[datetime] = None) -> AsyncIterator[RemoteEntity]:
        """Iterate every remote entity of a type, across all pages.

        ``since`` is a hint; adapters may return older entities and callers
        filter by ``updated_at``.
        """
        pass

    @abstractmethod
    async def authentication_probe(self) -> Dict[str, Any]:
        """Cheap authenticated call identifying the account."""
        pass

    @staticmethod
    def build_entity(entity_type: str, item: Any, builder: Callable[[Any], RemoteEntity]) -> RemoteEntity:
        """Convert one listed item without ending the listing.

        A malformed item comes back as a placeholder carrying ``error`` and
        no ``updated_at``, so the caller counts it as a failed entity.
        """
        try:
            return builder(item)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            ident = None
            if isinstance(item, dict):
                ident = item.get("id") or item.get("uid") or item.get("full_name") or item.get("number")
            return RemoteEntity(
                entity_type=entity_type,
                external_id=str(ident) if ident is not None else "unknown",
                error=f"Malformed {entity_type} item: {e!r}",
            )

    def actions(self) -> Dict[str, Any]:
        """Named side-effecting actions this adapter can perform."""
        return {}

    async def perform(self, action: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Run a named action and return its result."""
        handler = self.actions().get(action)
        if handler is None:
            raise IntegrationError(f"{self.service.value} adapter has no action {action!r}")
        return await handler(**params)

    async def call(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """Make an API request with rate limiting and retries.

        Rate-limit and transient failures are retried with the shared retry
        policy; authentication failures never are.
        """
        started = time.monotonic()
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry_policy.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception_type((RateLimitError, TransientError)),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._send(method, path, params=params, json=json, data=data, headers=headers)
        except GatewayError as e:
            await self._record(self._outcome_kind(e), started, e.message)
            raise

        await self._record(CallOutcomeKind.SUCCESS, started)
        return response

    async def _send(self, method, path, params=None, json=None, data=None, headers=None) -> httpx.Response:
        if self.rate_limiter is not None:
            limit = self.config["rate_limit"]
            if not await self.rate_limiter.check_rate_limit(
                self.service.value, limit=limit["calls"], window=limit["window"]
            ):
                raise RateLimitError(f"Client-side quota exhausted for {self.service.value}")

        request_headers = {**self.auth_headers(), **(headers or {})}
        try:
            response = await self.http_client.request(
                method,
                path,
                headers=request_headers,
                params=params,
                json=json,
                data=data,
            )
        except httpx.TimeoutException as e:
            raise TransientError(f"{method} {path} timed out: {e}")
        except httpx.TransportError as e:
            raise TransientError(f"{method} {path} failed: {e}")

        self._remember_rate_limit(response)
        self.raise_for_status(response)
        return response

    def raise_for_status(self, response: httpx.Response) -> None:
        """Map provider responses onto the error taxonomy."""
        status = response.status_code
        if status < 400:
            return
        if status == 429 or (status == 403 and response.headers.get("X-RateLimit-Remaining") == "0"):
            raise RateLimitError(
                f"Rate limit exceeded: {status} {response.request.url.path}",
                retry_after=_retry_after(response),
            )
        if status == 401:
            raise AuthenticationError(f"Authentication failed: {response.text[:200]}")
        if status >= 500:
            raise TransientError(f"Provider error {status}: {response.text[:200]}")
        raise IntegrationError(f"API request failed with {status}: {response.text[:200]}")

    def _wait(self, retry_state) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return min(error.retry_after, self.retry_policy.max_backoff)
        return self._backoff(retry_state)

    def _remember_rate_limit(self, response: httpx.Response) -> None:
        remaining = response.headers.get("X-RateLimit-Remaining")
        limit = response.headers.get("X-RateLimit-Limit")
        if remaining is not None and limit is not None:
            try:
                self.last_rate_limit = {"remaining": int(remaining), "limit": int(limit)}
            except ValueError:
                pass

    @staticmethod
    def _outcome_kind(error: GatewayError) -> CallOutcomeKind:
        if isinstance(error, RateLimitError):
            return CallOutcomeKind.RATE_LIMITED
        if isinstance(error, AuthenticationError):
            return CallOutcomeKind.AUTH_FAILED
        if isinstance(error, TransientError):
            return CallOutcomeKind.TRANSIENT
        return CallOutcomeKind.ERROR

    async def _record(self, kind: CallOutcomeKind, started: float, message: Optional[str] = None) -> None:
        if self.observer is None or self.integration.id is None:
            return
        outcome = CallOutcome(
            integration_id=self.integration.id,
            service=self.service,
            kind=kind,
            latency_ms=(time.monotonic() - started) * 1000,
            message=message,
        )
        try:
            await self.observer.record_outcome(outcome)
        except Exception as e:
            logger.error(f"Failed to record call outcome for {self.integration.id}: {e}")

    async def paginate_api_results(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        max_pages: Optional[int] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Paginate through API results."""
        request_params = dict(params or {})
        pages = 0

        while True:
            response = await self.call("GET", path, params=request_params)
            data = response.json()

            for result in self.extract_results_from_response(data):
                yield result

            pages += 1
            next_params = self.next_page_params(response, data, request_params)
            if next_params is None:
                break
            if max_pages and pages >= max_pages:
                break
            request_params = next_params

    def extract_results_from_response(self, data: Any) -> List[Dict[str, Any]]:
        """Extract results from paginated response (override if needed)."""
        if isinstance(data, list):
            return data
        elif "results" in data:
            return data["results"]
        elif "data" in data:
            return data["data"]
        else:
            return []

    def next_page_params(
        self,
        response: httpx.Response,
        data: Any,
        params: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Parameters for the next page, or None on the last one (override if needed)."""
        return None

    # Health probe checks

    async def check_authentication(self) -> CheckResult:
        try:
            detail = await self.authentication_probe()
        except AuthenticationError as e:
            return CheckResult.failure(e.message)
        except GatewayError as e:
            # Could not reach the provider; credentials are not known to be bad
            return CheckResult(passed=True, degraded=True, error=e.message)
        return CheckResult(detail=detail)

    async def fetch_rate_limit(self) -> Optional[Dict[str, int]]:
        """Current provider quota as ``{"remaining", "limit"}``."""
        if self.last_rate_limit is not None:
            return self.last_rate_limit
        if self.rate_limiter is not None:
            limit = self.config["rate_limit"]
            remaining = await self.rate_limiter.get_remaining_requests(
                self.service.value, limit=limit["calls"], window=limit["window"]
            )
            return {"remaining": remaining, "limit": limit["calls"]}
        return None

    async def check_rate_limit(self, degraded_ratio: float = 0.2) -> CheckResult:
        try:
            quota = await self.fetch_rate_limit()
        except GatewayError as e:
            return CheckResult.failure(e.message)
        if not quota or not quota.get("limit"):
            return CheckResult(detail={"known": False})

        ratio = quota["remaining"] / quota["limit"]
        return CheckResult(
            degraded=ratio < degraded_ratio,
            detail={**quota, "percent_remaining": round(ratio * 100, 1)},
        )

    async def api_access_probe(self) -> Dict[str, Any]:
        """Representative read call timed by the API access check."""
        return await self.authentication_probe()

    async def check_api_access(self, latency_degraded_ms: int = 2000) -> CheckResult:
        started = time.monotonic()
        try:
            detail = await self.api_access_probe()
        except GatewayError as e:
            return CheckResult.failure(e.message)
        latency_ms = (time.monotonic() - started) * 1000
        return CheckResult(
            degraded=latency_ms > latency_degraded_ms,
            detail={**detail, "response_time_ms": round(latency_ms, 1)},
        )

    async def check_webhooks(self, webhook_url: Optional[str]) -> Optional[CheckResult]:
        """Verify provider-side webhook registration. None when not applicable."""
        return None
