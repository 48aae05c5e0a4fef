"""
Cross-cluster connectivity provider contract and registry.

A connectivity provider turns a topology's network settings into resources
on one cluster at a time, and reports what it finds there. Providers are
mesh agnostic: gateways are observed, never installed.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List

from kubernetes.client.exceptions import ApiException

from ..discovery.base import MANAGED_BY_LABEL
from ..exceptions import ConnectivityError, ConnectivityNotFoundError
from ..models import ConnectivityState, ConnectivityStatus, HealthCheck, NetworkConfig
from ..providers.kube import ClusterHandle
from ..utils.logging import get_logger


logger = get_logger(__name__)

COMPONENT_LABEL = "app.kubernetes.io/component"
COMPONENT = "connectivity"


class ConnectivityProvider(ABC):
    """Applies, removes and observes cross-cluster connectivity on one cluster."""

    #: Identifier the provider is registered under
    type: str = ""

    def __init__(self, namespace: str = "kube-system", managed_by: str = "meshharness"):
        self.namespace = namespace
        self.managed_by = managed_by

    def labels(self, name: str) -> Dict[str, str]:
        return {
            MANAGED_BY_LABEL: self.managed_by,
            "app.kubernetes.io/name": name,
            COMPONENT_LABEL: COMPONENT,
        }

    @property
    def label_selector(self) -> str:
        return f"{MANAGED_BY_LABEL}={self.managed_by},{COMPONENT_LABEL}={COMPONENT}"

    def error(self, handle: ClusterHandle, message: str, cause: Exception = None) -> ConnectivityError:
        return ConnectivityError(self.type, message, cluster=handle.name, cause=cause)

    def validate_config(self, network: NetworkConfig) -> None:
        """Reject network settings before touching any cluster.

        Raises:
            ConfigInvalidError: If the settings cannot be applied by this provider
        """

    @abstractmethod
    async def install(self, handle: ClusterHandle, network: NetworkConfig) -> None:
        """Apply the network settings to one cluster. Re-applying replaces what exists."""

    @abstractmethod
    async def uninstall(self, handle: ClusterHandle) -> None:
        """Remove everything the provider applied to one cluster."""

    @abstractmethod
    async def status(self, handle: ClusterHandle, network: NetworkConfig) -> ConnectivityStatus:
        """Compare what one cluster carries with the network settings."""

    @abstractmethod
    async def health_check(self, handle: ClusterHandle, network: NetworkConfig) -> List[HealthCheck]:
        """Run independent named health checks on one cluster."""

    async def apply_namespaced(self, handle: ClusterHandle, create_fn, replace_fn, body):
        """Create a namespaced object, replacing it if it already exists."""
        namespace = body.metadata.namespace
        try:
            return await handle.call(create_fn, namespace, body)
        except ApiException as e:
            if e.status != 409:
                raise
        return await handle.call(replace_fn, body.metadata.name, namespace, body)

    async def delete_ignore_missing(self, handle: ClusterHandle, fn, *args) -> bool:
        try:
            await handle.call(fn, *args)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise


def summarize_connectivity(statuses: Iterable[ConnectivityStatus]) -> str:
    """Collapse per-cluster connectivity into one topology-wide word.

    ``configured`` when every observed member is configured, ``not_configured``
    when none is, ``error`` when any member could not be read, and
    ``degraded`` otherwise.
    """
    states = [status.state for status in statuses]
    if not states:
        return "unknown"
    if ConnectivityState.ERROR in states:
        return ConnectivityState.ERROR.value
    if all(state == ConnectivityState.CONFIGURED for state in states):
        return ConnectivityState.CONFIGURED.value
    if all(state == ConnectivityState.NOT_CONFIGURED for state in states):
        return ConnectivityState.NOT_CONFIGURED.value
    return ConnectivityState.DEGRADED.value


class ConnectivityRegistry:
    """Maps connectivity provider identifiers to providers."""

    def __init__(self):
        self._providers: Dict[str, ConnectivityProvider] = {}

    def register(self, provider: ConnectivityProvider) -> None:
        if not provider.type:
            raise ValueError("Connectivity provider must declare a type")
        self._providers[provider.type] = provider
        logger.debug(f"Registered connectivity provider '{provider.type}'")

    def get(self, name: str) -> ConnectivityProvider:
        """Look up a provider.

        Raises:
            ConnectivityNotFoundError: If no provider is registered under the name
        """
        provider = self._providers.get(name.strip().lower())
        if provider is None:
            raise ConnectivityNotFoundError(name, self.list())
        return provider

    def list(self) -> List[str]:
        return sorted(self._providers)

    def validate_config(self, network: NetworkConfig) -> None:
        if not network.configured:
            return
        self.get(network.connectivity).validate_config(network)
