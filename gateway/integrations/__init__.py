"""Client adapter implementations."""

from .base import BaseClientAdapter, CallObserver
from .registry import IntegrationRegistry
from .github import GitHubAdapter
from .vercel import VercelAdapter
from .slack import SlackAdapter

__all__ = [
    "BaseClientAdapter",
    "CallObserver",
    "IntegrationRegistry",
    "GitHubAdapter",
    "VercelAdapter",
    "SlackAdapter",
]
