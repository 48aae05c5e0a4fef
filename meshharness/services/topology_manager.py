"""
Topology manager for provisioning and tearing down multi-cluster topologies.

The primary cluster is always created first. Remotes are then created
concurrently and each remote's outcome is collected independently; a failed
remote never cancels its siblings and nothing is rolled back.
"""

import asyncio
import time
from functools import partial
from typing import Callable, Dict, List, Optional

from ..config.settings import TimeoutConfig
from ..connectivity.base import ConnectivityRegistry, summarize_connectivity
from ..exceptions import (
    ClusterCreateError,
    ClusterDeleteError,
    ClusterNotFoundError,
    ConfigInvalidError,
    HarnessError,
    OperationTimeoutError,
    TopologyCreateError
)
from ..models import (
    ClusterConfig,
    ClusterStatus,
    ClusterTopology,
    ConnectivityState,
    ConnectivityStatus,
    TopologyHealth,
    TopologyStatus
)
from ..providers.base import ClusterProvider, ClusterProviderRegistry
from ..providers.kube import ClusterHandle
from ..utils.logging import get_logger, LogContext
from ..utils.metrics import counter, timer, gauge


logger = get_logger(__name__)


class TopologyManager:
    """Creates, deletes and observes cluster topologies."""

    def __init__(self,
                 providers: ClusterProviderRegistry,
                 timeouts: Optional[TimeoutConfig] = None,
                 handle_factory: Optional[Callable[[str, str], ClusterHandle]] = None,
                 connectivity: Optional[ConnectivityRegistry] = None):
        """Initialize the topology manager.

        Args:
            providers: Registry used to resolve each cluster's provider
            timeouts: Per-operation deadlines
            handle_factory: Builds API handles from kubeconfig text
            connectivity: Connectivity providers; without it network status is only the configured flag
        """
        self.providers = providers
        self.timeouts = timeouts or TimeoutConfig()
        self._handle_factory = handle_factory or partial(ClusterHandle, api_timeout=self.timeouts.api_call)
        self.connectivity = connectivity

    def _provider_for(self, config: ClusterConfig) -> ClusterProvider:
        return self.providers.get(config.provider)

    def validate_topology(self, topology: ClusterTopology) -> None:
        """Reject a topology before any side effect.

        Name uniqueness is enforced by the model; this checks that every
        member's provider exists and accepts the member's options, and that
        the network settings suit their connectivity provider.

        Raises:
            ConfigInvalidError: If any member cannot be provisioned
            ConnectivityNotFoundError: If the network names an unknown connectivity provider
        """
        names = topology.cluster_names()
        if len(names) != len(set(names)):
            raise ConfigInvalidError("cluster names in a topology must be unique", details={"clusters": names})

        for cluster in topology.all_clusters():
            self._provider_for(cluster).validate_config(cluster)
        if self.connectivity is not None:
            self.connectivity.validate_config(topology.network)

    # Single-cluster operations

    async def create_cluster(self, config: ClusterConfig) -> None:
        """Create one cluster within the create deadline.

        Raises:
            OperationTimeoutError: If the deadline expires
            ClusterCreateError: For any other provider failure
        """
        provider = self._provider_for(config)
        start_time = time.time()
        try:
            await asyncio.wait_for(provider.create(config), timeout=self.timeouts.cluster_create)
        except asyncio.TimeoutError:
            counter('topology.cluster.create.errors', 1, tags={'provider': config.provider, 'kind': 'timeout'})
            raise OperationTimeoutError(
                operation=f"create cluster {config.name}",
                timeout_seconds=self.timeouts.cluster_create,
                details={"cluster": config.name, "provider": config.provider}
            )
        except HarnessError:
            counter('topology.cluster.create.errors', 1, tags={'provider': config.provider})
            raise
        except Exception as e:
            counter('topology.cluster.create.errors', 1, tags={'provider': config.provider})
            raise ClusterCreateError(config.name, str(e), details={"provider": config.provider}, cause=e)

        duration = time.time() - start_time
        logger.info(f"Created cluster {config.name} with provider {config.provider} in {duration:.1f}s")
        counter('topology.cluster.create.success', 1, tags={'provider': config.provider})
        timer('topology.cluster.create.duration_ms', duration * 1000, tags={'provider': config.provider})

    async def delete_cluster(self, provider_name: str, name: str) -> None:
        """Delete one cluster within the delete deadline.

        Raises:
            ClusterNotFoundError: If the provider does not know the cluster
            OperationTimeoutError: If the deadline expires
            ClusterDeleteError: For any other provider failure
        """
        provider = self.providers.get(provider_name)
        try:
            await asyncio.wait_for(provider.delete(name), timeout=self.timeouts.cluster_delete)
        except asyncio.TimeoutError:
            raise OperationTimeoutError(
                operation=f"delete cluster {name}",
                timeout_seconds=self.timeouts.cluster_delete,
                details={"cluster": name, "provider": provider_name}
            )
        except HarnessError:
            raise
        except Exception as e:
            raise ClusterDeleteError(name, str(e), details={"provider": provider_name}, cause=e)

        logger.info(f"Deleted cluster {name} from provider {provider_name}")
        counter('topology.cluster.delete.success', 1, tags={'provider': provider_name})

    async def get_cluster_status(self, provider_name: str, name: str) -> ClusterStatus:
        """Observe one cluster; failures are reported in the status, not raised."""
        try:
            provider = self.providers.get(provider_name)
        except ConfigInvalidError as e:
            return ClusterStatus.failed(name, provider_name, e.message)

        try:
            return await asyncio.wait_for(provider.status(name), timeout=self.timeouts.status)
        except asyncio.TimeoutError:
            logger.warning(f"Status query for cluster {name} timed out after {self.timeouts.status}s")
            return ClusterStatus.failed(name, provider_name, f"status query timed out after {self.timeouts.status}s")
        except Exception as e:
            logger.warning(f"Status query for cluster {name} failed: {e}")
            return ClusterStatus.failed(name, provider_name, str(e))

    async def list_clusters(self, provider_name: str) -> List[str]:
        """Enumerate every cluster known to a provider, regardless of topology."""
        provider = self.providers.get(provider_name)
        return await provider.list_clusters()

    async def get_kubeconfig(self, config: ClusterConfig) -> str:
        return await self._provider_for(config).get_kubeconfig(config.name)

    def open_handle(self, name: str, kubeconfig: str) -> ClusterHandle:
        return self._handle_factory(name, kubeconfig)

    async def get_cluster_handle(self, config: ClusterConfig) -> ClusterHandle:
        """Open an API handle to a running cluster."""
        kubeconfig = await self.get_kubeconfig(config)
        return self.open_handle(config.name, kubeconfig)

    # Topology operations

    async def create_topology(self, topology: ClusterTopology) -> List[str]:
        """Create the primary, then every remote concurrently.

        Args:
            topology: Topology to provision

        Returns:
            Names of every cluster that was created

        Raises:
            ConfigInvalidError: If the topology is rejected before any side effect
            HarnessError: If the primary cluster fails; no remote is attempted
            TopologyCreateError: If any remote fails; it names every failed remote
        """
        self.validate_topology(topology)
        remotes = [topology.remotes[name] for name in sorted(topology.remotes)]

        with LogContext("create_topology", primary=topology.primary.name, remote_count=len(remotes)):
            logger.info(f"Creating primary cluster {topology.primary.name}")
            await self.create_cluster(topology.primary)

            if not remotes:
                counter('topology.create.success', 1)
                return [topology.primary.name]

            logger.info(f"Creating {len(remotes)} remote clusters: {', '.join(r.name for r in remotes)}")
            results = await asyncio.gather(
                *(self.create_cluster(remote) for remote in remotes),
                return_exceptions=True
            )

            created = [topology.primary.name]
            failures: Dict[str, Exception] = {}
            for remote, result in zip(remotes, results):
                if isinstance(result, BaseException):
                    logger.error(f"Failed to create remote cluster {remote.name}: {result}")
                    failures[remote.name] = result
                else:
                    created.append(remote.name)

            gauge('topology.clusters.created', len(created))
            if failures:
                counter('topology.create.partial', 1, tags={'failed': str(len(failures))})
                raise TopologyCreateError(failures)

            counter('topology.create.success', 1)
            return created

    async def delete_topology(self, topology: ClusterTopology) -> Dict[str, Exception]:
        """Delete every remote concurrently, then the primary.

        Every member is attempted exactly once. Failures are logged and
        collected; a cluster that is already gone is not a failure.

        Returns:
            Mapping of cluster name to the error that prevented its deletion
        """
        remotes = [topology.remotes[name] for name in sorted(topology.remotes)]
        failures: Dict[str, Exception] = {}

        with LogContext("delete_topology", primary=topology.primary.name, remote_count=len(remotes)):
            results = await asyncio.gather(
                *(self.delete_cluster(remote.provider, remote.name) for remote in remotes),
                return_exceptions=True
            )
            for remote, result in zip(remotes, results):
                self._record_delete_outcome(remote, result, failures)

            try:
                await self.delete_cluster(topology.primary.provider, topology.primary.name)
                result = None
            except Exception as e:
                result = e
            self._record_delete_outcome(topology.primary, result, failures)

        if failures:
            counter('topology.delete.partial', 1, tags={'failed': str(len(failures))})
        else:
            counter('topology.delete.success', 1)
        return failures

    def _record_delete_outcome(self, config: ClusterConfig, result, failures: Dict[str, Exception]) -> None:
        if result is None:
            return
        if isinstance(result, ClusterNotFoundError):
            logger.info(f"Cluster {config.name} already absent, nothing to delete")
            return
        logger.error(f"Failed to delete cluster {config.name}, continuing teardown: {result}")
        failures[config.name] = result

    async def get_topology_status(self, topology: ClusterTopology) -> TopologyStatus:
        """Query every member concurrently and derive the aggregate view."""
        members = topology.all_clusters()
        statuses = await asyncio.gather(
            *(self.get_cluster_status(member.provider, member.name) for member in members)
        )
        by_name = {status.name: status for status in statuses}

        primary_status = by_name[topology.primary.name]
        remote_statuses = {name: by_name[name] for name in topology.remotes}

        if all(status.healthy for status in statuses):
            health = TopologyHealth.HEALTHY
        elif not primary_status.healthy:
            health = TopologyHealth.UNHEALTHY
        else:
            health = TopologyHealth.DEGRADED

        error = None
        unhealthy = [s for s in statuses if not s.healthy]
        if unhealthy:
            error = "unhealthy clusters: " + ", ".join(
                f"{s.name} ({s.state.value})" for s in unhealthy
            )

        gauge('topology.clusters.healthy', len(statuses) - len(unhealthy))
        network: Dict[str, ConnectivityStatus] = {}
        if not topology.network.configured:
            network_status = "not_configured"
        elif self.connectivity is None:
            network_status = "configured"
        else:
            running = [topology.get_cluster(status.name) for status in statuses if status.healthy]
            try:
                network = await self.get_network_status(topology, running)
                network_status = summarize_connectivity(network.values())
            except HarnessError as e:
                logger.warning(f"Cannot observe network connectivity: {e.message}")
                network_status = ConnectivityState.ERROR.value

        return TopologyStatus(
            primary=primary_status,
            remotes=remote_statuses,
            overall_health=health,
            federation_status="enabled" if topology.federation.enabled else "disabled",
            network_status=network_status,
            network=network,
            error=error
        )

    async def get_network_status(self, topology: ClusterTopology,
                                 members: Optional[List[ClusterConfig]] = None) -> Dict[str, ConnectivityStatus]:
        """Connectivity per member, observed concurrently.

        A member that cannot be reached reports an error state instead of
        failing the whole query.

        Raises:
            ConfigInvalidError: If no connectivity providers are configured
            ConnectivityNotFoundError: If the topology names an unknown provider
        """
        if self.connectivity is None:
            raise ConfigInvalidError("no connectivity providers are configured")
        provider = self.connectivity.get(topology.network.connectivity)
        members = topology.all_clusters() if members is None else members

        async def observe(member: ClusterConfig) -> ConnectivityStatus:
            handle = await self.get_cluster_handle(member)
            try:
                return await provider.status(handle, topology.network)
            finally:
                handle.close()

        results = await asyncio.gather(*(observe(member) for member in members), return_exceptions=True)
        return {
            member.name: result if not isinstance(result, BaseException)
            else ConnectivityStatus(type=provider.type, state=ConnectivityState.ERROR, error=str(result))
            for member, result in zip(members, results)
        }

    async def get_kubeconfigs(self, topology: ClusterTopology) -> Dict[str, str]:
        """Kubeconfig text for every running member, keyed by cluster name."""
        members = topology.all_clusters()
        results = await asyncio.gather(
            *(self.get_kubeconfig(member) for member in members),
            return_exceptions=True
        )
        kubeconfigs = {}
        for member, result in zip(members, results):
            if isinstance(result, BaseException):
                logger.warning(f"No kubeconfig for cluster {member.name}: {result}")
                continue
            kubeconfigs[member.name] = result
        return kubeconfigs
