"""Adapter registry keyed by service."""

from typing import Dict, Type, Optional, TYPE_CHECKING

from gateway.models import ServiceType

if TYPE_CHECKING:
    from gateway.integrations.base import BaseClientAdapter


class IntegrationRegistry:
    """Registry for client adapter implementations."""

    _adapters: Dict[ServiceType, Type["BaseClientAdapter"]] = {}

    @classmethod
    def register(cls, service: ServiceType):
        """Decorator to register an adapter class."""
        def decorator(adapter_class):
            cls._adapters[service] = adapter_class
            return adapter_class
        return decorator

    @classmethod
    def get(cls, service: ServiceType) -> Optional[Type["BaseClientAdapter"]]:
        """Get adapter class by service."""
        return cls._adapters.get(service)

    @classmethod
    def list_types(cls) -> list[ServiceType]:
        """List all registered services."""
        return list(cls._adapters.keys())
