"""
Cross-cluster connectivity providers.
"""

from typing import Optional

from .base import ConnectivityProvider, ConnectivityRegistry, summarize_connectivity
from .kubernetes import KubernetesConnectivityProvider
from .manual import ManualConnectivityProvider
from ..config.settings import Settings


def create_connectivity_registry(settings: Optional[Settings] = None) -> ConnectivityRegistry:
    """Registry with every built-in connectivity provider."""
    settings = settings or Settings()
    registry = ConnectivityRegistry()
    for provider_class in (KubernetesConnectivityProvider, ManualConnectivityProvider):
        registry.register(provider_class(
            namespace=settings.discovery.namespace,
            managed_by=settings.discovery.managed_by
        ))
    return registry


__all__ = [
    "ConnectivityProvider",
    "ConnectivityRegistry",
    "KubernetesConnectivityProvider",
    "ManualConnectivityProvider",
    "create_connectivity_registry",
    "summarize_connectivity"
]
