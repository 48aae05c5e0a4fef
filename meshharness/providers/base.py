"""
Cluster provider contract and registry.
"""

from abc import ABC, abstractmethod
from typing import Dict, List

from ..exceptions import ConfigInvalidError
from ..models import ClusterConfig, ClusterStatus
from ..utils.logging import get_logger


logger = get_logger(__name__)

# Recognized provider identifiers that have no implementation yet
UNIMPLEMENTED_PROVIDERS = frozenset({"k3s"})


class ClusterProvider(ABC):
    """Creates, deletes and queries single named clusters of one technology.

    Providers hold no state beyond what the backing technology stores.
    """

    #: Identifier the provider is registered under
    name: str = ""

    @abstractmethod
    async def create(self, config: ClusterConfig) -> None:
        """Create a cluster. Raises ClusterCreateError if it already exists."""

    @abstractmethod
    async def delete(self, name: str) -> None:
        """Delete a cluster. Raises ClusterNotFoundError if it does not exist."""

    @abstractmethod
    async def status(self, name: str) -> ClusterStatus:
        """Observe a cluster. An unknown cluster reports state ``not_found``."""

    @abstractmethod
    async def get_kubeconfig(self, name: str) -> str:
        """Return the kubeconfig text for a cluster."""

    @abstractmethod
    async def list_clusters(self) -> List[str]:
        """List every cluster known to the provider."""

    async def exists(self, name: str) -> bool:
        return name in await self.list_clusters()

    def validate_config(self, config: ClusterConfig) -> None:
        """Reject provider options before any side effect."""


class ClusterProviderRegistry:
    """Maps provider identifiers to provider instances."""

    def __init__(self):
        self._providers: Dict[str, ClusterProvider] = {}

    def register(self, provider: ClusterProvider, name: str = None) -> None:
        key = (name or provider.name).strip().lower()
        if not key:
            raise ValueError("Cluster provider must have a name")
        if key in self._providers:
            logger.warning(f"Replacing registered cluster provider '{key}'")
        self._providers[key] = provider
        logger.debug(f"Registered cluster provider '{key}'")

    def get(self, name: str) -> ClusterProvider:
        """Look up a provider.

        Raises:
            ConfigInvalidError: If the provider is unknown or not implemented
        """
        key = name.strip().lower()
        provider = self._providers.get(key)
        if provider is not None:
            return provider
        if key in UNIMPLEMENTED_PROVIDERS:
            raise ConfigInvalidError(
                f"cluster provider '{key}' is not implemented",
                details={"provider": key}
            )
        raise ConfigInvalidError(
            f"unsupported cluster provider '{key}'. Available providers: {', '.join(self.list()) or 'none'}",
            details={"provider": key, "available": self.list()}
        )

    def has(self, name: str) -> bool:
        return name.strip().lower() in self._providers

    def list(self) -> List[str]:
        return sorted(self._providers)
