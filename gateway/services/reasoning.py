"""Boundary to the external reasoning service."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import logging

import httpx
from pydantic import BaseModel, ValidationError

from gateway.core.config import Settings
from gateway.core.errors import TaskExecutionError

logger = logging.getLogger(__name__)


class ReasoningResult(BaseModel):
    text: str
    cost: float = 0.0
    model: Optional[str] = None


class ReasoningService(ABC):
    """Opaque ``generate(prompt, context)`` capability.

    Nothing it returns is trusted; the executor validates every result
    before acting on it.
    """

    @abstractmethod
    async def generate(self, prompt: str, context: Dict[str, Any]) -> ReasoningResult:
        pass


class HTTPReasoningService(ReasoningService):
    """Calls a reasoning endpoint over HTTP."""

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def generate(self, prompt: str, context: Dict[str, Any]) -> ReasoningResult:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.url, json={"prompt": prompt, "context": context}, headers=headers)
                response.raise_for_status()
                return ReasoningResult.model_validate(response.json())
        except httpx.HTTPError as e:
            raise TaskExecutionError(f"Reasoning service call failed: {e}")
        except (ValueError, ValidationError) as e:
            raise TaskExecutionError(f"Reasoning service returned an unusable response: {e}")


class UnconfiguredReasoningService(ReasoningService):
    async def generate(self, prompt: str, context: Dict[str, Any]) -> ReasoningResult:
        raise TaskExecutionError("Reasoning service is not configured")


def create_reasoning_service(settings: Settings) -> ReasoningService:
    if not settings.reasoning_service_url:
        logger.warning("REASONING_SERVICE_URL is not set; tasks that need reasoning will fail")
        return UnconfiguredReasoningService()
    return HTTPReasoningService(
        settings.reasoning_service_url,
        api_key=settings.reasoning_service_api_key,
        timeout=settings.reasoning_service_timeout,
    )
