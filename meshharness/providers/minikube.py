"""
minikube cluster provider.

Each cluster is a minikube profile.
"""

import json
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from .base import ClusterProvider
from .kube import ClusterHandle, summarize_nodes
from ..config.settings import ProviderConfig, TimeoutConfig
from ..exceptions import (
    ClusterCreateError,
    ClusterDeleteError,
    ClusterNotFoundError,
    ConfigInvalidError,
    HarnessError,
    OperationTimeoutError
)
from ..models import ClusterConfig, ClusterState, ClusterStatus
from ..utils.logging import get_logger
from ..utils.process import run_command
from ..utils.retry import retry_async, STANDARD_RETRY


logger = get_logger(__name__)


class MinikubeOptions(BaseModel):
    """Options recognized by the minikube provider."""

    memory: Optional[Union[int, str]] = Field(default=None, description="Memory, e.g. 4096 or 4g")
    cpus: Optional[int] = Field(default=None, ge=1)
    disk_size: Optional[str] = Field(default=None, description="Disk size, e.g. 20g")
    driver: Optional[str] = Field(default=None, description="docker, podman, kvm2, ...")
    network: Optional[str] = Field(default=None, description="Network to attach the profile to")
    nodes: int = Field(default=1, ge=1, le=10)
    addons: List[str] = Field(default_factory=list)


def parse_status_output(name: str, output: str) -> ClusterStatus:
    """Interpret ``minikube status --output json``.

    Multi-node profiles print one JSON object per node as a list; the first
    entry is the control plane.
    """
    try:
        data = json.loads(output)
    except ValueError:
        return _parse_status_text(name, output)

    entries: List[Dict[str, Any]] = data if isinstance(data, list) else [data]
    if not entries:
        return ClusterStatus.failed(name, MinikubeProvider.name, "empty status output")

    control_plane = entries[0]
    host = control_plane.get("Host")
    if host == "Running":
        components = {
            "kubelet": control_plane.get("Kubelet"),
            "API server": control_plane.get("APIServer"),
        }
        down = [component for component, value in components.items() if value is not None and value != "Running"]
        if down:
            return ClusterStatus(
                name=name,
                provider=MinikubeProvider.name,
                state=ClusterState.DEGRADED,
                nodes=len(entries),
                error=f"{' and '.join(down)} not running"
            )
        return ClusterStatus(
            name=name,
            provider=MinikubeProvider.name,
            state=ClusterState.RUNNING,
            nodes=len(entries),
            healthy=True
        )
    if host == "Stopped":
        return ClusterStatus(
            name=name,
            provider=MinikubeProvider.name,
            state=ClusterState.ERROR,
            nodes=len(entries),
            error="host is stopped"
        )
    return ClusterStatus.failed(name, MinikubeProvider.name, f"unknown host state: {host}")


def _parse_status_text(name: str, output: str) -> ClusterStatus:
    if "host: Running" in output:
        return ClusterStatus(name=name, provider=MinikubeProvider.name, state=ClusterState.RUNNING,
                             nodes=1, healthy=True)
    if "host: Stopped" in output:
        return ClusterStatus(name=name, provider=MinikubeProvider.name, state=ClusterState.ERROR,
                             nodes=1, error="host is stopped")
    return ClusterStatus.failed(name, MinikubeProvider.name, "unparseable status output")


class MinikubeProvider(ClusterProvider):
    """Manages clusters as minikube profiles."""

    name = "minikube"

    def __init__(self, provider_config: Optional[ProviderConfig] = None,
                 timeouts: Optional[TimeoutConfig] = None,
                 handle_factory: Callable[[str, str], ClusterHandle] = ClusterHandle):
        self.provider_config = provider_config or ProviderConfig()
        self.timeouts = timeouts or TimeoutConfig()
        self._handle_factory = handle_factory

    @property
    def binary(self) -> str:
        return self.provider_config.minikube_binary

    def _parse_options(self, config: ClusterConfig) -> MinikubeOptions:
        try:
            return MinikubeOptions.model_validate(config.options)
        except ValidationError as e:
            raise ConfigInvalidError(
                f"invalid minikube options for cluster '{config.name}': {e}",
                details={"cluster": config.name, "provider": self.name},
                cause=e
            )

    def validate_config(self, config: ClusterConfig) -> None:
        self._parse_options(config)

    def build_start_args(self, config: ClusterConfig) -> List[str]:
        options = self._parse_options(config)
        args = [
            self.binary, "start",
            "--profile", config.name,
            "--kubernetes-version", f"v{config.version}",
        ]
        if options.memory is not None:
            args.extend(["--memory", str(options.memory)])
        if options.cpus is not None:
            args.extend(["--cpus", str(options.cpus)])
        if options.disk_size:
            args.extend(["--disk-size", options.disk_size])
        if options.driver:
            args.extend(["--driver", options.driver])
        if options.network:
            args.extend(["--network", options.network])
        if options.nodes > 1:
            args.extend(["--nodes", str(options.nodes)])
        for addon in options.addons:
            args.extend(["--addons", addon])
        return args

    async def create(self, config: ClusterConfig) -> None:
        args = self.build_start_args(config)

        if await self.exists(config.name):
            raise ClusterCreateError(config.name, "cluster already exists", details={"provider": self.name})

        logger.info(f"Creating minikube profile {config.name} (Kubernetes {config.version})")
        try:
            await run_command(args, timeout=self.timeouts.cluster_create)
        except OperationTimeoutError:
            raise OperationTimeoutError(
                operation=f"create cluster {config.name}",
                timeout_seconds=self.timeouts.cluster_create,
                details={"cluster": config.name, "provider": self.name}
            )
        except HarnessError as e:
            raise ClusterCreateError(config.name, e.message, details={"provider": self.name}, cause=e)

    async def delete(self, name: str) -> None:
        if not await self.exists(name):
            raise ClusterNotFoundError(name, self.name)

        logger.info(f"Deleting minikube profile {name}")
        try:
            await run_command([self.binary, "delete", "--profile", name], timeout=self.timeouts.cluster_delete)
        except OperationTimeoutError:
            raise OperationTimeoutError(
                operation=f"delete cluster {name}",
                timeout_seconds=self.timeouts.cluster_delete,
                details={"cluster": name, "provider": self.name}
            )
        except HarnessError as e:
            raise ClusterDeleteError(name, e.message, details={"provider": self.name}, cause=e)

    async def status(self, name: str) -> ClusterStatus:
        if not await self.exists(name):
            return ClusterStatus.not_found(name, self.name)

        # minikube exits non-zero for stopped profiles but still prints the status
        result = await run_command(
            [self.binary, "status", "--profile", name, "--output", "json"],
            timeout=self.timeouts.status,
            check=False
        )
        status = parse_status_output(name, result.stdout or result.stderr)

        if status.healthy:
            try:
                kubeconfig = await self.get_kubeconfig(name)
                handle = self._handle_factory(name, kubeconfig)
                try:
                    node_list = await handle.call(handle.core_v1.list_node)
                finally:
                    handle.close()
                total, _, version = summarize_nodes(node_list)
                status = status.model_copy(update={"nodes": total, "version": version})
            except Exception as e:
                logger.warning(f"Failed to read nodes of minikube profile {name}: {e}")

        return status

    @retry_async(STANDARD_RETRY)
    async def get_kubeconfig(self, name: str) -> str:
        result = await run_command(
            [self.binary, "kubectl", "--profile", name, "--", "config", "view", "--raw"],
            timeout=self.timeouts.command
        )
        return result.stdout

    @retry_async(STANDARD_RETRY)
    async def list_clusters(self) -> List[str]:
        result = await run_command(
            [self.binary, "profile", "list", "--output", "json"],
            timeout=self.timeouts.command,
            check=False
        )
        try:
            data = json.loads(result.stdout or "{}")
        except ValueError:
            logger.warning(f"Unparseable minikube profile list output: {result.stdout[:200]}")
            return []
        return [profile["Name"] for profile in data.get("valid") or [] if profile.get("Name")]
