"""
Cross-cluster service discovery mechanisms.
"""

from typing import Optional

from .api_server import APIServerDiscoveryProvider
from .base import KubernetesDiscoveryProvider, ServiceDiscoveryProvider, ServiceDiscoveryRegistry
from .dns import DNSDiscoveryProvider
from .manual import ManualDiscoveryProvider
from .propagation import PropagationDiscoveryProvider
from ..config.settings import Settings


def create_discovery_registry(settings: Optional[Settings] = None) -> ServiceDiscoveryRegistry:
    """Registry with every built-in mechanism, configured from settings."""
    settings = settings or Settings()
    registry = ServiceDiscoveryRegistry()
    for provider_class in (
        DNSDiscoveryProvider,
        APIServerDiscoveryProvider,
        PropagationDiscoveryProvider,
        ManualDiscoveryProvider,
    ):
        registry.register(provider_class(
            namespace=settings.discovery.namespace,
            managed_by=settings.discovery.managed_by
        ))
    return registry


__all__ = [
    "ServiceDiscoveryProvider",
    "KubernetesDiscoveryProvider",
    "ServiceDiscoveryRegistry",
    "DNSDiscoveryProvider",
    "APIServerDiscoveryProvider",
    "PropagationDiscoveryProvider",
    "ManualDiscoveryProvider",
    "create_discovery_registry"
]
