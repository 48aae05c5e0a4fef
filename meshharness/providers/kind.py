"""
kind (Kubernetes in Docker) cluster provider.
"""

import os
import tempfile
from typing import Callable, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .base import ClusterProvider
from .kube import ClusterHandle, summarize_nodes
from ..config.settings import ProviderConfig, TimeoutConfig
from ..exceptions import (
    ClusterCreateError,
    ClusterDeleteError,
    ClusterNotFoundError,
    CommandFailedError,
    ConfigInvalidError,
    HarnessError,
    OperationTimeoutError
)
from ..models import ClusterConfig, ClusterState, ClusterStatus
from ..utils.logging import get_logger
from ..utils.process import run_command
from ..utils.retry import retry_async, STANDARD_RETRY


logger = get_logger(__name__)

NO_CLUSTERS_MESSAGE = "No kind clusters found."


class KindOptions(BaseModel):
    """Options recognized by the kind provider."""

    nodes: int = Field(default=1, ge=1, le=10, description="Total node count, control plane included")
    image: Optional[str] = Field(default=None, description="Full node image, overrides the version")
    wait: Optional[str] = Field(default=None, description="Control plane wait duration, e.g. 5m")
    config_path: Optional[str] = Field(default=None, description="User-supplied kind cluster config file")


def build_kind_cluster_config(nodes: int) -> dict:
    """A kind cluster config with one control-plane node and ``nodes - 1`` workers."""
    return {
        "kind": "Cluster",
        "apiVersion": "kind.x-k8s.io/v1alpha4",
        "nodes": [{"role": "control-plane"}] + [{"role": "worker"} for _ in range(nodes - 1)],
    }


class KindProvider(ClusterProvider):
    """Manages clusters through the ``kind`` CLI."""

    name = "kind"

    def __init__(self, provider_config: Optional[ProviderConfig] = None,
                 timeouts: Optional[TimeoutConfig] = None,
                 handle_factory: Callable[[str, str], ClusterHandle] = ClusterHandle):
        self.provider_config = provider_config or ProviderConfig()
        self.timeouts = timeouts or TimeoutConfig()
        self._handle_factory = handle_factory

    @property
    def binary(self) -> str:
        return self.provider_config.kind_binary

    def _parse_options(self, config: ClusterConfig) -> KindOptions:
        try:
            return KindOptions.model_validate(config.options)
        except ValidationError as e:
            raise ConfigInvalidError(
                f"invalid kind options for cluster '{config.name}': {e}",
                details={"cluster": config.name, "provider": self.name},
                cause=e
            )

    def validate_config(self, config: ClusterConfig) -> None:
        self._parse_options(config)

    def _create_args(self, config: ClusterConfig, options: KindOptions, config_file: Optional[str]) -> List[str]:
        image = options.image or f"{self.provider_config.kind_node_image}:v{config.version}"
        args = [
            self.binary, "create", "cluster",
            "--name", config.name,
            "--image", image,
            "--wait", options.wait or self.provider_config.kind_wait,
        ]
        if config_file:
            args.extend(["--config", config_file])
        return args

    async def create(self, config: ClusterConfig) -> None:
        options = self._parse_options(config)

        if await self.exists(config.name):
            raise ClusterCreateError(config.name, "cluster already exists", details={"provider": self.name})

        generated_config = None
        config_file = options.config_path
        if config_file is None and options.nodes > 1:
            fd, generated_config = tempfile.mkstemp(prefix=f"kind-{config.name}-", suffix=".yaml")
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                yaml.safe_dump(build_kind_cluster_config(options.nodes), f, sort_keys=False)
            config_file = generated_config

        logger.info(f"Creating kind cluster {config.name} (Kubernetes {config.version}, {options.nodes} node(s))")
        try:
            await run_command(
                self._create_args(config, options, config_file),
                timeout=self.timeouts.cluster_create
            )
        except OperationTimeoutError as e:
            raise OperationTimeoutError(
                operation=f"create cluster {config.name}",
                timeout_seconds=e.details.get("timeout_seconds", self.timeouts.cluster_create),
                details={"cluster": config.name, "provider": self.name}
            )
        except HarnessError as e:
            raise ClusterCreateError(config.name, e.message, details={"provider": self.name}, cause=e)
        finally:
            if generated_config:
                os.unlink(generated_config)

    async def delete(self, name: str) -> None:
        if not await self.exists(name):
            raise ClusterNotFoundError(name, self.name)

        logger.info(f"Deleting kind cluster {name}")
        try:
            await run_command(
                [self.binary, "delete", "cluster", "--name", name],
                timeout=self.timeouts.cluster_delete
            )
        except OperationTimeoutError as e:
            raise OperationTimeoutError(
                operation=f"delete cluster {name}",
                timeout_seconds=e.details.get("timeout_seconds", self.timeouts.cluster_delete),
                details={"cluster": name, "provider": self.name}
            )
        except HarnessError as e:
            raise ClusterDeleteError(name, e.message, details={"provider": self.name}, cause=e)

    async def status(self, name: str) -> ClusterStatus:
        if not await self.exists(name):
            return ClusterStatus.not_found(name, self.name)

        try:
            kubeconfig = await self.get_kubeconfig(name)
            handle = self._handle_factory(name, kubeconfig)
            try:
                node_list = await handle.call(handle.core_v1.list_node)
            finally:
                handle.close()
        except Exception as e:
            logger.warning(f"Failed to query nodes of kind cluster {name}: {e}")
            return ClusterStatus.failed(name, self.name, str(e))

        total, ready, version = summarize_nodes(node_list)
        if total == 0:
            return ClusterStatus(name=name, provider=self.name, state=ClusterState.ERROR,
                                 error="cluster has no nodes")
        if ready == total:
            state = ClusterState.RUNNING
            error = None
        else:
            state = ClusterState.DEGRADED
            error = f"{total - ready} of {total} nodes not ready"

        return ClusterStatus(
            name=name,
            provider=self.name,
            state=state,
            nodes=total,
            version=version,
            healthy=state == ClusterState.RUNNING,
            error=error
        )

    @retry_async(STANDARD_RETRY)
    async def get_kubeconfig(self, name: str) -> str:
        try:
            result = await run_command(
                [self.binary, "get", "kubeconfig", "--name", name],
                timeout=self.timeouts.command
            )
        except CommandFailedError as e:
            if "could not locate" in e.stderr.lower() or "not found" in e.stderr.lower():
                raise ClusterNotFoundError(name, self.name)
            raise
        return result.stdout

    @retry_async(STANDARD_RETRY)
    async def list_clusters(self) -> List[str]:
        result = await run_command([self.binary, "get", "clusters"], timeout=self.timeouts.command)
        return [
            line.strip() for line in result.stdout.splitlines()
            if line.strip() and line.strip() != NO_CLUSTERS_MESSAGE
        ]
