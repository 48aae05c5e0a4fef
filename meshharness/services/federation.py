"""
Federation configurator: wires trust settings and a discovery mechanism onto
every participating member of a running topology.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from .topology_manager import TopologyManager
from ..config.settings import Settings
from ..discovery.base import MANAGED_BY_LABEL, ServiceDiscoveryRegistry
from ..exceptions import ConfigInvalidError, DiscoveryInstallError, FederationError
from ..models import (
    ClusterTopology,
    DiscoveryState,
    HealthCheck,
    ServiceDiscoveryStatus
)
from ..providers.kube import ClusterHandle
from ..utils.logging import get_logger, LogContext
from ..utils.metrics import counter


logger = get_logger(__name__)

FEDERATION_CONFIG_MAP = "mesh-federation"

T = TypeVar("T")


class FederationConfigurator:
    """Applies a topology's federation settings to its clusters."""

    def __init__(self, topology_manager: TopologyManager,
                 discovery_registry: ServiceDiscoveryRegistry,
                 settings: Optional[Settings] = None):
        self.topology_manager = topology_manager
        self.discovery_registry = discovery_registry
        self.settings = settings or Settings()

    @property
    def namespace(self) -> str:
        return self.settings.discovery.namespace

    def participating_clusters(self, topology: ClusterTopology) -> List[str]:
        discovery = topology.federation.discovery
        if discovery.enabled:
            return list(discovery.clusters)
        return topology.cluster_names()

    def validate(self, topology: ClusterTopology) -> None:
        """Reject federation settings before touching any cluster.

        Raises:
            ConfigInvalidError: If discovery names unknown clusters or has invalid options
            DiscoveryNotFoundError: If the discovery mechanism is not registered
        """
        discovery = topology.federation.discovery
        self.discovery_registry.validate_config(discovery)
        members = set(topology.cluster_names())
        unknown = sorted(set(discovery.clusters) - members)
        if unknown:
            raise ConfigInvalidError(
                f"discovery names clusters outside the topology: {', '.join(unknown)}",
                details={"unknown_clusters": unknown, "members": sorted(members)}
            )

    async def _for_each_cluster(self, topology: ClusterTopology,
                                action: Callable[[ClusterHandle], Awaitable[T]]) -> Dict[str, object]:
        """Run an action on every participating cluster; results or exceptions by name."""
        names = self.participating_clusters(topology)

        async def run(name: str):
            handle = await self.topology_manager.get_cluster_handle(topology.get_cluster(name))
            try:
                return await action(handle)
            finally:
                handle.close()

        results = await asyncio.gather(*(run(name) for name in names), return_exceptions=True)
        return dict(zip(names, results))

    def _federation_config_map(self, topology: ClusterTopology, cluster: str) -> client.V1ConfigMap:
        federation = topology.federation
        data = {
            "trust-domain": federation.trust_domain or "",
            "cluster": cluster,
            "peers": ",".join(name for name in self.participating_clusters(topology) if name != cluster),
            "mesh-type": federation.service_mesh.type,
            "certificate-authority": federation.certificate_authority.type,
            "discovery": federation.discovery.type if federation.discovery.enabled else "none",
        }
        if federation.service_mesh.version:
            data["mesh-version"] = federation.service_mesh.version
        return client.V1ConfigMap(
            metadata=client.V1ObjectMeta(
                name=FEDERATION_CONFIG_MAP,
                namespace=self.namespace,
                labels={MANAGED_BY_LABEL: self.settings.discovery.managed_by}
            ),
            data=data
        )

    async def _apply_federation_config_map(self, handle: ClusterHandle, body: client.V1ConfigMap) -> None:
        try:
            await handle.call(handle.core_v1.create_namespaced_config_map, self.namespace, body)
        except ApiException as e:
            if e.status != 409:
                raise
            await handle.call(handle.core_v1.replace_namespaced_config_map, FEDERATION_CONFIG_MAP, self.namespace, body)

    async def configure(self, topology: ClusterTopology) -> Dict[str, ServiceDiscoveryStatus]:
        """Wire federation onto every participating cluster concurrently.

        Returns:
            Discovery status per participating cluster; empty when federation is disabled

        Raises:
            ConfigInvalidError: If the federation settings are rejected
            FederationError: If any cluster could not be configured
        """
        if not topology.federation.enabled:
            logger.info("Federation is disabled for this topology, nothing to configure")
            return {}

        self.validate(topology)
        discovery = topology.federation.discovery
        provider = self.discovery_registry.get(discovery.type) if discovery.enabled else None

        async def configure_cluster(handle: ClusterHandle) -> ServiceDiscoveryStatus:
            try:
                await self._apply_federation_config_map(handle, self._federation_config_map(topology, handle.name))
            except ApiException as e:
                raise DiscoveryInstallError("federation", f"cannot write {FEDERATION_CONFIG_MAP}: {e}",
                                            cluster=handle.name, cause=e)
            if provider is None:
                return ServiceDiscoveryStatus(type="none", state=DiscoveryState.NOT_CONFIGURED, healthy=True)

            current = await provider.status(handle)
            if current.installed:
                logger.info(f"{provider.type} discovery already installed on cluster {handle.name}")
                return current
            await provider.install(handle, discovery)
            return await provider.status(handle)

        with LogContext("configure_federation", trust_domain=topology.federation.trust_domain,
                        mechanism=discovery.type if discovery.enabled else "none"):
            results = await self._for_each_cluster(topology, configure_cluster)

        failures = {name: result for name, result in results.items() if isinstance(result, BaseException)}
        for name, error in failures.items():
            logger.error(f"Federation setup failed on cluster {name}: {error}")
        if failures:
            counter('discovery.federation.errors', len(failures))
            raise FederationError(failures)

        counter('discovery.federation.configured', len(results))
        return results

    async def teardown(self, topology: ClusterTopology) -> Dict[str, Exception]:
        """Best-effort removal from every participating cluster.

        Returns:
            Mapping of cluster name to the error that prevented its teardown
        """
        discovery = topology.federation.discovery
        provider = self.discovery_registry.get(discovery.type) if discovery.enabled else None

        async def teardown_cluster(handle: ClusterHandle) -> None:
            if provider is not None:
                await provider.uninstall(handle)
            try:
                await handle.call(handle.core_v1.delete_namespaced_config_map, FEDERATION_CONFIG_MAP, self.namespace)
            except ApiException as e:
                if e.status != 404:
                    raise

        with LogContext("teardown_federation", mechanism=discovery.type if discovery.enabled else "none"):
            results = await self._for_each_cluster(topology, teardown_cluster)

        failures = {name: result for name, result in results.items() if isinstance(result, BaseException)}
        for name, error in failures.items():
            logger.error(f"Federation teardown failed on cluster {name}, continuing: {error}")
        return failures

    async def status(self, topology: ClusterTopology) -> Dict[str, ServiceDiscoveryStatus]:
        """Discovery status per participating cluster; failures become error states."""
        discovery = topology.federation.discovery
        if not discovery.enabled:
            return {}
        provider = self.discovery_registry.get(discovery.type)

        results = await self._for_each_cluster(topology, provider.status)
        return {
            name: result if not isinstance(result, BaseException)
            else ServiceDiscoveryStatus(type=discovery.type, state=DiscoveryState.ERROR, error=str(result))
            for name, result in results.items()
        }

    async def health_check(self, topology: ClusterTopology) -> Dict[str, List[HealthCheck]]:
        """Named discovery health checks per participating cluster."""
        discovery = topology.federation.discovery
        if not discovery.enabled:
            return {}
        provider = self.discovery_registry.get(discovery.type)

        results = await self._for_each_cluster(topology, provider.health_check)
        return {
            name: result if not isinstance(result, BaseException)
            else [HealthCheck(name="cluster-access", healthy=False, message=str(result))]
            for name, result in results.items()
        }
