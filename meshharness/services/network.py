"""
Network configurator: applies a topology's connectivity settings to every
member through the connectivity provider the topology names.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, TypeVar

from .topology_manager import TopologyManager
from ..connectivity.base import ConnectivityProvider
from ..exceptions import ConfigInvalidError, NetworkSetupError
from ..models import ClusterTopology, ConnectivityStatus, HealthCheck
from ..providers.kube import ClusterHandle
from ..utils.logging import get_logger, LogContext
from ..utils.metrics import counter


logger = get_logger(__name__)

T = TypeVar("T")


class NetworkConfigurator:
    """Applies, removes and checks cross-cluster connectivity for a topology."""

    def __init__(self, topology_manager: TopologyManager):
        if topology_manager.connectivity is None:
            raise ConfigInvalidError("the topology manager has no connectivity providers")
        self.topology_manager = topology_manager

    def provider_for(self, topology: ClusterTopology) -> ConnectivityProvider:
        return self.topology_manager.connectivity.get(topology.network.connectivity)

    async def _for_each_cluster(self, topology: ClusterTopology,
                                action: Callable[[ClusterHandle], Awaitable[T]]) -> Dict[str, object]:
        members = topology.all_clusters()

        async def run(member):
            handle = await self.topology_manager.get_cluster_handle(member)
            try:
                return await action(handle)
            finally:
                handle.close()

        results = await asyncio.gather(*(run(member) for member in members), return_exceptions=True)
        return {member.name: result for member, result in zip(members, results)}

    async def configure(self, topology: ClusterTopology) -> Dict[str, ConnectivityStatus]:
        """Apply the network settings on every member concurrently.

        Returns:
            Connectivity status per member; empty when the topology has no network settings

        Raises:
            ConfigInvalidError: If the network settings are rejected
            ConnectivityNotFoundError: If the connectivity provider is not registered
            NetworkSetupError: If any member could not be configured
        """
        network = topology.network
        if not network.configured:
            logger.info("No network settings for this topology, nothing to configure")
            return {}

        provider = self.provider_for(topology)
        provider.validate_config(network)

        async def configure_cluster(handle: ClusterHandle) -> ConnectivityStatus:
            await provider.install(handle, network)
            return await provider.status(handle, network)

        with LogContext("configure_network", connectivity=provider.type):
            results = await self._for_each_cluster(topology, configure_cluster)

        failures = {name: result for name, result in results.items() if isinstance(result, BaseException)}
        for name, error in failures.items():
            logger.error(f"Network setup failed on cluster {name}: {error}")
        if failures:
            counter('connectivity.configure.errors', len(failures))
            raise NetworkSetupError(failures)

        counter('connectivity.configure.success', len(results))
        return results

    async def teardown(self, topology: ClusterTopology) -> Dict[str, Exception]:
        """Best-effort removal from every member.

        Returns:
            Mapping of cluster name to the error that prevented its teardown
        """
        provider = self.provider_for(topology)

        with LogContext("teardown_network", connectivity=provider.type):
            results = await self._for_each_cluster(topology, provider.uninstall)

        failures = {name: result for name, result in results.items() if isinstance(result, BaseException)}
        for name, error in failures.items():
            logger.error(f"Network teardown failed on cluster {name}, continuing: {error}")
        return failures

    async def status(self, topology: ClusterTopology) -> Dict[str, ConnectivityStatus]:
        if not topology.network.configured:
            return {}
        return await self.topology_manager.get_network_status(topology)

    async def health_check(self, topology: ClusterTopology) -> Dict[str, List[HealthCheck]]:
        """Named connectivity health checks per member."""
        if not topology.network.configured:
            return {}
        provider = self.provider_for(topology)

        async def check(handle: ClusterHandle) -> List[HealthCheck]:
            return await provider.health_check(handle, topology.network)

        results = await self._for_each_cluster(topology, check)
        return {
            name: result if not isinstance(result, BaseException)
            else [HealthCheck(name="cluster-access", healthy=False, message=str(result))]
            for name, result in results.items()
        }
