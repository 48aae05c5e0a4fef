"""
Manual connectivity.

The operator wires the network themselves; the declared policies and
gateway are recorded in a ConfigMap so that every cluster carries a
description of the intended connectivity. Nothing else is created.
"""

import json
from datetime import datetime
from typing import List

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from .base import ConnectivityProvider
from ..exceptions import ConfigInvalidError, HarnessError
from ..models import ConnectivityState, ConnectivityStatus, HealthCheck, NetworkConfig
from ..providers.kube import ClusterHandle
from ..utils.logging import get_logger, LogContext
from ..utils.metrics import counter


logger = get_logger(__name__)

CONFIG_MAP_NAME = "manual-connectivity-config"


class ManualConnectivityProvider(ConnectivityProvider):
    """Records operator-managed connectivity without applying it."""

    type = "manual"

    def validate_config(self, network: NetworkConfig) -> None:
        names = []
        for index, policy in enumerate(network.policies):
            name = policy.get("name")
            if not isinstance(name, str) or not name.strip():
                raise ConfigInvalidError(f"manual connectivity policy {index} has no name",
                                         details={"connectivity": self.type})
            names.append(name)
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigInvalidError(f"manual connectivity policies declared twice: {', '.join(duplicates)}",
                                     details={"connectivity": self.type})

    async def install(self, handle: ClusterHandle, network: NetworkConfig) -> None:
        self.validate_config(network)
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=CONFIG_MAP_NAME, namespace=self.namespace,
                                         labels=self.labels(CONFIG_MAP_NAME)),
            data={
                "policies": json.dumps(network.policies, default=str),
                "gateway": network.gateway.model_dump_json() if network.gateway else "",
                "recorded-at": datetime.utcnow().isoformat() + "Z",
            }
        )
        with LogContext("install_connectivity", connectivity=self.type, cluster=handle.name):
            try:
                await self.apply_namespaced(
                    handle,
                    handle.core_v1.create_namespaced_config_map,
                    handle.core_v1.replace_namespaced_config_map,
                    body
                )
            except (ApiException, HarnessError) as e:
                raise self.error(handle, f"cannot record connectivity: {e}", cause=e)
        counter('connectivity.install.success', 1, tags={'connectivity': self.type})

    async def uninstall(self, handle: ClusterHandle) -> None:
        try:
            await self.delete_ignore_missing(
                handle, handle.core_v1.delete_namespaced_config_map, CONFIG_MAP_NAME, self.namespace
            )
        except (ApiException, HarnessError) as e:
            raise self.error(handle, f"cannot remove connectivity record: {e}", cause=e)
        counter('connectivity.uninstall.success', 1, tags={'connectivity': self.type})

    async def status(self, handle: ClusterHandle, network: NetworkConfig) -> ConnectivityStatus:
        try:
            config_map = await handle.read_or_none(
                handle.core_v1.read_namespaced_config_map, CONFIG_MAP_NAME, self.namespace
            )
        except (ApiException, HarnessError) as e:
            return ConnectivityStatus(type=self.type, state=ConnectivityState.ERROR, error=str(e))

        if config_map is None:
            return ConnectivityStatus(type=self.type, state=ConnectivityState.NOT_CONFIGURED)
        try:
            recorded = json.loads((config_map.data or {}).get("policies", "[]"))
        except ValueError as e:
            return ConnectivityStatus(type=self.type, state=ConnectivityState.ERROR,
                                      error=f"unreadable policy record: {e}")
        return ConnectivityStatus(
            type=self.type,
            state=ConnectivityState.CONFIGURED,
            healthy=True,
            policies=len(recorded)
        )

    async def health_check(self, handle: ClusterHandle, network: NetworkConfig) -> List[HealthCheck]:
        try:
            config_map = await handle.read_or_none(
                handle.core_v1.read_namespaced_config_map, CONFIG_MAP_NAME, self.namespace
            )
        except (ApiException, HarnessError) as e:
            return [HealthCheck(name="manual-configuration", healthy=False,
                                message=f"cannot read config map {CONFIG_MAP_NAME}: {e}")]
        if config_map is None:
            return [HealthCheck(name="manual-configuration", healthy=False,
                                message=f"config map {CONFIG_MAP_NAME} not found")]
        return [HealthCheck(name="manual-configuration", healthy=True,
                            message=f"config map {CONFIG_MAP_NAME} present")]
