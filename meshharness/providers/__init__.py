"""
Cluster providers and the registry that selects them by identifier.
"""

from functools import partial
from typing import Optional

from .base import ClusterProvider, ClusterProviderRegistry
from .kind import KindProvider
from .kube import ClusterHandle
from .minikube import MinikubeProvider
from ..config.settings import Settings


def create_provider_registry(settings: Optional[Settings] = None) -> ClusterProviderRegistry:
    """Registry with every built-in provider, configured from settings."""
    settings = settings or Settings()
    handle_factory = partial(ClusterHandle, api_timeout=settings.timeouts.api_call)
    registry = ClusterProviderRegistry()
    registry.register(KindProvider(settings.providers, settings.timeouts, handle_factory))
    registry.register(MinikubeProvider(settings.providers, settings.timeouts, handle_factory))
    return registry


__all__ = [
    "ClusterProvider",
    "ClusterProviderRegistry",
    "ClusterHandle",
    "KindProvider",
    "MinikubeProvider",
    "create_provider_registry"
]
