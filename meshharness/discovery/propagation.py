"""
Service propagation discovery.

A propagator deployment copies selected Services between clusters and marks
each copy with ``service-discovery/propagated=true``. Progress is recorded in
a state ConfigMap that the sync health check reads back.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from kubernetes import client
from kubernetes.client.exceptions import ApiException
from pydantic import BaseModel, Field

from .base import KubernetesDiscoveryProvider, ConfigInput, DEFAULT_AGENT_IMAGE
from ..exceptions import HarnessError
from ..models import DiscoveryState, HealthCheck, ServiceDiscoveryStatus
from ..providers.kube import ClusterHandle
from ..utils.logging import get_logger, LogContext
from ..utils.metrics import counter, gauge


logger = get_logger(__name__)

CONFIG_MAP_NAME = "service-propagation-config"
STATE_CONFIG_MAP_NAME = "service-propagation-state"
PROPAGATOR_NAME = "service-propagator"
PROPAGATED_LABEL = "service-discovery/propagated"
PROPAGATED_SELECTOR = f"{PROPAGATED_LABEL}=true"
DEFAULT_SYNC_INTERVAL = 300


class PropagationOptions(BaseModel):
    selector_labels: Dict[str, str] = Field(default_factory=dict, description="Only propagate matching services")
    exclude_labels: Dict[str, str] = Field(default_factory=dict, description="Never propagate matching services")
    namespaces: List[str] = Field(default_factory=list, description="Namespaces to watch; empty means all")
    sync_interval: int = Field(default=DEFAULT_SYNC_INTERVAL, ge=1, description="Seconds between syncs")
    image: str = Field(default=DEFAULT_AGENT_IMAGE)


RBAC_RULES = [
    client.V1PolicyRule(api_groups=[""], resources=["services", "endpoints"],
                        verbs=["get", "list", "watch", "create", "update", "patch", "delete"]),
    client.V1PolicyRule(api_groups=[""], resources=["namespaces"], verbs=["get", "list"]),
    client.V1PolicyRule(api_groups=[""], resources=["configmaps"], verbs=["get", "update", "patch"]),
]


def _label_string(labels: Dict[str, str]) -> str:
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def _utcnow() -> datetime:
    return datetime.utcnow()


def sync_is_recent(last_sync: Optional[str], interval: int, now: Optional[datetime] = None) -> bool:
    """Whether the recorded last sync falls within twice the sync interval."""
    if not last_sync:
        return False
    try:
        synced_at = datetime.fromisoformat(last_sync.rstrip("Z"))
    except ValueError:
        return False
    return (now or _utcnow()) - synced_at <= timedelta(seconds=2 * interval)


class PropagationDiscoveryProvider(KubernetesDiscoveryProvider):
    """Cross-cluster visibility by copying Services between clusters."""

    type = "propagation"
    options_model = PropagationOptions

    async def install(self, handle: ClusterHandle, config: ConfigInput) -> None:
        config = self.coerce_config(config)
        self.validate_config(config)
        options: PropagationOptions = self.parse_options(config)

        with LogContext("install_propagation_discovery", cluster=handle.name):
            try:
                await self.apply_config_map(handle, CONFIG_MAP_NAME, {
                    "clusters": ",".join(config.clusters),
                    "selector-labels": _label_string(options.selector_labels),
                    "exclude-labels": _label_string(options.exclude_labels),
                    "namespaces": ",".join(options.namespaces),
                    "sync-interval": str(options.sync_interval),
                })
                await self.apply_config_map(handle, STATE_CONFIG_MAP_NAME, {
                    "last-sync": _utcnow().isoformat() + "Z",
                    "propagated-services": "0",
                })
                await self.apply_rbac(handle, PROPAGATOR_NAME, RBAC_RULES)
                await self.apply_deployment(handle, self.deployment(
                    PROPAGATOR_NAME,
                    options.image,
                    ["/bin/sh", "-c", f"while true; do sleep {options.sync_interval}; done"],
                    service_account=PROPAGATOR_NAME
                ))
            except (ApiException, HarnessError) as e:
                raise self.install_error(handle, f"install failed: {e}", cause=e)

        counter('discovery.install.success', 1, tags={'mechanism': self.type})

    async def uninstall(self, handle: ClusterHandle) -> None:
        with LogContext("uninstall_propagation_discovery", cluster=handle.name):
            try:
                await self.delete_ignore_missing(
                    handle, handle.apps_v1.delete_namespaced_deployment, PROPAGATOR_NAME, self.namespace
                )
                services = await handle.call(
                    handle.core_v1.list_service_for_all_namespaces, label_selector=PROPAGATED_SELECTOR
                )
                for service in services.items:
                    await self.delete_ignore_missing(
                        handle, handle.core_v1.delete_namespaced_service,
                        service.metadata.name, service.metadata.namespace
                    )
                logger.info(f"Removed {len(services.items)} propagated services from cluster {handle.name}")
                await self.delete_rbac(handle, PROPAGATOR_NAME)
                for name in (CONFIG_MAP_NAME, STATE_CONFIG_MAP_NAME):
                    await self.delete_ignore_missing(
                        handle, handle.core_v1.delete_namespaced_config_map, name, self.namespace
                    )
            except (ApiException, HarnessError) as e:
                raise self.install_error(handle, f"uninstall failed: {e}", cause=e)

        counter('discovery.uninstall.success', 1, tags={'mechanism': self.type})

    async def _count_propagated(self, handle: ClusterHandle):
        services = await handle.call(
            handle.core_v1.list_service_for_all_namespaces, label_selector=PROPAGATED_SELECTOR
        )
        endpoints = await handle.call(
            handle.core_v1.list_endpoints_for_all_namespaces, label_selector=PROPAGATED_SELECTOR
        )
        addresses = sum(
            len(subset.addresses or [])
            for item in endpoints.items
            for subset in (item.subsets or [])
        )
        return len(services.items), addresses

    async def _sync_check(self, handle: ClusterHandle) -> HealthCheck:
        try:
            config_map = await handle.read_or_none(
                handle.core_v1.read_namespaced_config_map, CONFIG_MAP_NAME, self.namespace
            )
            state = await handle.read_or_none(
                handle.core_v1.read_namespaced_config_map, STATE_CONFIG_MAP_NAME, self.namespace
            )
        except (ApiException, HarnessError) as e:
            return HealthCheck(name="sync", healthy=False, message=f"cannot read propagation state: {e}")
        if state is None:
            return HealthCheck(name="sync", healthy=False, message="no propagation state recorded")

        try:
            interval = int((config_map.data or {}).get("sync-interval", DEFAULT_SYNC_INTERVAL)) if config_map else DEFAULT_SYNC_INTERVAL
        except ValueError:
            interval = DEFAULT_SYNC_INTERVAL
        last_sync = (state.data or {}).get("last-sync")
        recent = sync_is_recent(last_sync, interval)
        return HealthCheck(
            name="sync",
            healthy=recent,
            message=f"last sync at {last_sync}" if recent else f"last sync {last_sync or 'never'} is older than {2 * interval}s",
            details={"last_sync": last_sync, "sync_interval": interval}
        )

    async def status(self, handle: ClusterHandle) -> ServiceDiscoveryStatus:
        try:
            config_map = await handle.read_or_none(
                handle.core_v1.read_namespaced_config_map, CONFIG_MAP_NAME, self.namespace
            )
            deployment = await handle.read_or_none(
                handle.apps_v1.read_namespaced_deployment, PROPAGATOR_NAME, self.namespace
            )
            if config_map is None and deployment is None:
                return ServiceDiscoveryStatus(type=self.type, state=DiscoveryState.NOT_INSTALLED)
            services, endpoints = await self._count_propagated(handle)
        except (ApiException, HarnessError) as e:
            return ServiceDiscoveryStatus(type=self.type, state=DiscoveryState.ERROR, error=str(e))

        ready = await self.deployment_ready(handle, PROPAGATOR_NAME)
        healthy = config_map is not None and ready.healthy
        gauge('discovery.propagation.services', services, tags={'cluster': handle.name})
        return ServiceDiscoveryStatus(
            type=self.type,
            state=DiscoveryState.INSTALLED if healthy else DiscoveryState.DEGRADED,
            healthy=healthy,
            services_discovered=services,
            endpoints_discovered=endpoints,
            error=None if healthy else ready.message if config_map is not None else "configuration missing"
        )

    async def health_check(self, handle: ClusterHandle) -> List[HealthCheck]:
        return [
            await self.deployment_ready(handle, PROPAGATOR_NAME),
            await self.config_map_present(handle, STATE_CONFIG_MAP_NAME, check_name="propagation-state"),
            await self._sync_check(handle),
        ]
