"""
API-server aggregation discovery.

Runs an aggregator deployment on each participating cluster that polls a
shared API endpoint for service records.
"""

from typing import List

from kubernetes import client
from kubernetes.client.exceptions import ApiException
from pydantic import BaseModel, Field, field_validator

from .base import KubernetesDiscoveryProvider, ConfigInput, DEFAULT_AGENT_IMAGE
from ..exceptions import HarnessError
from ..models import DiscoveryState, HealthCheck, ServiceDiscoveryStatus
from ..providers.kube import ClusterHandle
from ..utils.logging import get_logger, LogContext
from ..utils.metrics import counter


logger = get_logger(__name__)

CONFIG_MAP_NAME = "api-server-aggregation-config"
AGGREGATOR_NAME = "api-server-aggregator"


class APIServerOptions(BaseModel):
    api_server_url: str = Field(..., description="Aggregation endpoint polled for service records")
    sync_interval: int = Field(default=60, ge=1, description="Seconds between polls")
    image: str = Field(default=DEFAULT_AGENT_IMAGE)

    @field_validator('api_server_url')
    @classmethod
    def validate_url(cls, v):
        if not v.startswith(("http://", "https://")):
            raise ValueError("api_server_url must be an http or https URL")
        return v.rstrip("/")


RBAC_RULES = [
    client.V1PolicyRule(api_groups=[""], resources=["services", "endpoints", "namespaces"],
                        verbs=["get", "list", "watch"]),
    client.V1PolicyRule(api_groups=["discovery.k8s.io"], resources=["endpointslices"],
                        verbs=["get", "list", "watch"]),
]


class APIServerDiscoveryProvider(KubernetesDiscoveryProvider):
    """Cross-cluster visibility through a shared aggregation endpoint."""

    type = "api-server"
    options_model = APIServerOptions

    async def install(self, handle: ClusterHandle, config: ConfigInput) -> None:
        config = self.coerce_config(config)
        self.validate_config(config)
        options: APIServerOptions = self.parse_options(config)

        with LogContext("install_api_server_discovery", cluster=handle.name):
            try:
                await self.apply_config_map(handle, CONFIG_MAP_NAME, {
                    "api-server-url": options.api_server_url,
                    "sync-interval": str(options.sync_interval),
                    "clusters": ",".join(config.clusters),
                    "local-cluster": handle.name,
                })
                await self.apply_rbac(handle, AGGREGATOR_NAME, RBAC_RULES)
                await self.apply_deployment(handle, self.deployment(
                    AGGREGATOR_NAME,
                    options.image,
                    ["/bin/sh", "-c", f"while true; do sleep {options.sync_interval}; done"],
                    service_account=AGGREGATOR_NAME
                ))
            except (ApiException, HarnessError) as e:
                raise self.install_error(handle, f"install failed: {e}", cause=e)

        counter('discovery.install.success', 1, tags={'mechanism': self.type})

    async def uninstall(self, handle: ClusterHandle) -> None:
        with LogContext("uninstall_api_server_discovery", cluster=handle.name):
            try:
                await self.delete_ignore_missing(
                    handle, handle.apps_v1.delete_namespaced_deployment, AGGREGATOR_NAME, self.namespace
                )
                await self.delete_rbac(handle, AGGREGATOR_NAME)
                await self.delete_ignore_missing(
                    handle, handle.core_v1.delete_namespaced_config_map, CONFIG_MAP_NAME, self.namespace
                )
            except (ApiException, HarnessError) as e:
                raise self.install_error(handle, f"uninstall failed: {e}", cause=e)

        counter('discovery.uninstall.success', 1, tags={'mechanism': self.type})

    async def _rbac_check(self, handle: ClusterHandle) -> HealthCheck:
        try:
            role = await handle.read_or_none(handle.rbac_v1.read_cluster_role, AGGREGATOR_NAME)
            binding = await handle.read_or_none(handle.rbac_v1.read_cluster_role_binding, AGGREGATOR_NAME)
        except (ApiException, HarnessError) as e:
            return HealthCheck(name="rbac", healthy=False, message=f"cannot read RBAC: {e}")
        missing = [kind for kind, obj in (("ClusterRole", role), ("ClusterRoleBinding", binding)) if obj is None]
        if missing:
            return HealthCheck(name="rbac", healthy=False, message=f"missing {', '.join(missing)}")
        return HealthCheck(name="rbac", healthy=True, message="aggregator RBAC present")

    async def status(self, handle: ClusterHandle) -> ServiceDiscoveryStatus:
        try:
            config_map = await handle.read_or_none(
                handle.core_v1.read_namespaced_config_map, CONFIG_MAP_NAME, self.namespace
            )
            deployment = await handle.read_or_none(
                handle.apps_v1.read_namespaced_deployment, AGGREGATOR_NAME, self.namespace
            )
        except (ApiException, HarnessError) as e:
            return ServiceDiscoveryStatus(type=self.type, state=DiscoveryState.ERROR, error=str(e))

        if config_map is None and deployment is None:
            return ServiceDiscoveryStatus(type=self.type, state=DiscoveryState.NOT_INSTALLED)

        ready = await self.deployment_ready(handle, AGGREGATOR_NAME)
        healthy = config_map is not None and ready.healthy
        clusters = [c for c in ((config_map.data or {}).get("clusters", "") if config_map else "").split(",") if c]
        return ServiceDiscoveryStatus(
            type=self.type,
            state=DiscoveryState.INSTALLED if healthy else DiscoveryState.DEGRADED,
            healthy=healthy,
            services_discovered=len(clusters),
            error=None if healthy else ready.message if config_map is not None else "configuration missing"
        )

    async def health_check(self, handle: ClusterHandle) -> List[HealthCheck]:
        return [
            await self.deployment_ready(handle, AGGREGATOR_NAME),
            await self.config_map_present(handle, CONFIG_MAP_NAME),
            await self._rbac_check(handle),
        ]
