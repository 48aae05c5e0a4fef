"""
Manual service discovery.

Records a static list of cross-cluster services in a ConfigMap; nothing runs
on the cluster.
"""

import json
from datetime import datetime
from typing import List

from kubernetes.client.exceptions import ApiException
from pydantic import BaseModel, Field

from .base import KubernetesDiscoveryProvider, ConfigInput
from ..exceptions import HarnessError
from ..models import DiscoveryState, HealthCheck, ServiceDiscoveryStatus
from ..providers.kube import ClusterHandle
from ..utils.logging import get_logger, LogContext
from ..utils.metrics import counter


logger = get_logger(__name__)

CONFIG_MAP_NAME = "manual-service-discovery-config"


class ManualServiceEntry(BaseModel):
    name: str
    namespace: str = "default"
    cluster: str
    endpoints: List[str] = Field(default_factory=list, description="host:port addresses")


class ManualOptions(BaseModel):
    services: List[ManualServiceEntry] = Field(default_factory=list)


class ManualDiscoveryProvider(KubernetesDiscoveryProvider):
    """Static service records maintained by the operator."""

    type = "manual"
    options_model = ManualOptions

    async def install(self, handle: ClusterHandle, config: ConfigInput) -> None:
        config = self.coerce_config(config)
        self.validate_config(config)
        options: ManualOptions = self.parse_options(config)

        with LogContext("install_manual_discovery", cluster=handle.name):
            try:
                await self.apply_config_map(handle, CONFIG_MAP_NAME, {
                    "clusters": ",".join(config.clusters),
                    "services": json.dumps([entry.model_dump() for entry in options.services]),
                    "installed-at": datetime.utcnow().isoformat() + "Z",
                })
            except (ApiException, HarnessError) as e:
                raise self.install_error(handle, f"install failed: {e}", cause=e)

        counter('discovery.install.success', 1, tags={'mechanism': self.type})

    async def uninstall(self, handle: ClusterHandle) -> None:
        try:
            await self.delete_ignore_missing(
                handle, handle.core_v1.delete_namespaced_config_map, CONFIG_MAP_NAME, self.namespace
            )
        except (ApiException, HarnessError) as e:
            raise self.install_error(handle, f"uninstall failed: {e}", cause=e)
        counter('discovery.uninstall.success', 1, tags={'mechanism': self.type})

    async def status(self, handle: ClusterHandle) -> ServiceDiscoveryStatus:
        try:
            config_map = await handle.read_or_none(
                handle.core_v1.read_namespaced_config_map, CONFIG_MAP_NAME, self.namespace
            )
        except (ApiException, HarnessError) as e:
            return ServiceDiscoveryStatus(type=self.type, state=DiscoveryState.ERROR, error=str(e))

        if config_map is None:
            return ServiceDiscoveryStatus(type=self.type, state=DiscoveryState.NOT_CONFIGURED)

        try:
            services = json.loads((config_map.data or {}).get("services", "[]"))
        except ValueError as e:
            return ServiceDiscoveryStatus(
                type=self.type, state=DiscoveryState.ERROR, error=f"unreadable service list: {e}"
            )
        return ServiceDiscoveryStatus(
            type=self.type,
            state=DiscoveryState.CONFIGURED,
            healthy=True,
            services_discovered=len(services),
            endpoints_discovered=sum(len(entry.get("endpoints", [])) for entry in services)
        )

    async def health_check(self, handle: ClusterHandle) -> List[HealthCheck]:
        return [await self.config_map_present(handle, CONFIG_MAP_NAME, check_name="manual-configuration")]
