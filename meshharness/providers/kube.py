"""
Kubernetes API connection handle for a single cluster.
"""

import asyncio
import os
import tempfile
from typing import Any, Callable, Optional

import yaml
from kubernetes import client, config
from kubernetes.client.exceptions import ApiException

from ..exceptions import ClusterUnhealthyError, OperationTimeoutError
from ..utils.logging import get_logger


logger = get_logger(__name__)


def summarize_nodes(node_list) -> tuple:
    """Return (total, ready, kubelet version) for a V1NodeList."""
    items = node_list.items or []
    ready = 0
    for node in items:
        conditions = (node.status.conditions if node.status else None) or []
        if any(c.type == "Ready" and c.status == "True" for c in conditions):
            ready += 1
    version = None
    if items and items[0].status and items[0].status.node_info:
        version = items[0].status.node_info.kubelet_version
    return len(items), ready, version


class ClusterHandle:
    """Connection to one cluster, built from its kubeconfig text.

    API clients are created lazily and cached. Blocking client calls are run
    through ``call`` so they never stall the event loop.
    """

    def __init__(self, name: str, kubeconfig: str, api_timeout: float = 30):
        self.name = name
        self.kubeconfig = kubeconfig
        self.api_timeout = api_timeout
        self._api_client: Optional[client.ApiClient] = None
        self._core_v1 = None
        self._apps_v1 = None
        self._rbac_v1 = None
        self._networking_v1 = None

    def _get_api_client(self) -> client.ApiClient:
        if self._api_client is not None:
            return self._api_client

        try:
            kubeconfig_dict = yaml.safe_load(self.kubeconfig)
            configuration = client.Configuration()
            config.load_kube_config_from_dict(kubeconfig_dict, client_configuration=configuration)
        except (yaml.YAMLError, config.ConfigException, TypeError) as e:
            raise ClusterUnhealthyError(self.name, f"invalid kubeconfig: {e}", cause=e)

        self._api_client = client.ApiClient(configuration)
        return self._api_client

    @property
    def core_v1(self):
        if self._core_v1 is None:
            self._core_v1 = client.CoreV1Api(self._get_api_client())
        return self._core_v1

    @property
    def apps_v1(self):
        if self._apps_v1 is None:
            self._apps_v1 = client.AppsV1Api(self._get_api_client())
        return self._apps_v1

    @property
    def rbac_v1(self):
        if self._rbac_v1 is None:
            self._rbac_v1 = client.RbacAuthorizationV1Api(self._get_api_client())
        return self._rbac_v1

    @property
    def networking_v1(self):
        if self._networking_v1 is None:
            self._networking_v1 = client.NetworkingV1Api(self._get_api_client())
        return self._networking_v1

    async def call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a blocking Kubernetes client call with the handle's deadline."""
        operation = getattr(fn, '__name__', 'kubernetes call')
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self.api_timeout
            )
        except asyncio.TimeoutError:
            raise OperationTimeoutError(
                operation=operation,
                timeout_seconds=self.api_timeout,
                details={"cluster": self.name}
            )

    async def read_or_none(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Like ``call`` but returns None when the object does not exist."""
        try:
            return await self.call(fn, *args, **kwargs)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def write_kubeconfig(self, directory: Optional[str] = None) -> str:
        """Write the kubeconfig to a private file and return its path."""
        fd, path = tempfile.mkstemp(prefix=f"{self.name}-", suffix=".kubeconfig", dir=directory)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(self.kubeconfig)
        return path

    def close(self):
        if self._api_client is not None:
            self._api_client.close()
            self._api_client = None
            self._core_v1 = self._apps_v1 = self._rbac_v1 = self._networking_v1 = None

    def __repr__(self):
        return f"ClusterHandle(name={self.name!r})"
