"""
Service discovery provider contract, shared Kubernetes helpers and registry.

Every mechanism validates its own option bag, installs its resources onto a
single cluster through a ClusterHandle, and reports status and a list of
independent named health checks.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Type, Union

from kubernetes import client
from kubernetes.client.exceptions import ApiException
from pydantic import BaseModel, ValidationError

from ..exceptions import (
    ConfigInvalidError,
    DiscoveryInstallError,
    DiscoveryNotFoundError,
    HarnessError
)
from ..models import HealthCheck, ServiceDiscoveryConfig, ServiceDiscoveryStatus
from ..providers.kube import ClusterHandle
from ..utils.logging import get_logger, log_health_check


logger = get_logger(__name__)

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
DEFAULT_AGENT_IMAGE = "alpine:3.19"

ConfigInput = Union[ServiceDiscoveryConfig, Dict[str, Any]]


class ServiceDiscoveryProvider(ABC):
    """Installs, removes and observes one cross-cluster discovery mechanism."""

    #: Mechanism identifier the provider is registered under
    type: str = ""
    #: Pydantic model describing the recognized options
    options_model: Type[BaseModel] = BaseModel

    def coerce_config(self, config: ConfigInput) -> ServiceDiscoveryConfig:
        if isinstance(config, ServiceDiscoveryConfig):
            return config
        try:
            return ServiceDiscoveryConfig.model_validate({"type": self.type, **config})
        except ValidationError as e:
            raise ConfigInvalidError(str(e), details={"mechanism": self.type}, cause=e)

    def parse_options(self, config: ServiceDiscoveryConfig) -> BaseModel:
        try:
            return self.options_model.model_validate(config.options)
        except ValidationError as e:
            messages = "; ".join(
                f"{'.'.join(str(p) for p in error['loc']) or 'options'}: {error['msg']}"
                for error in e.errors()
            )
            raise ConfigInvalidError(
                f"{self.type} discovery options rejected: {messages}",
                details={"mechanism": self.type},
                cause=e
            )

    def validate_config(self, config: ConfigInput) -> None:
        """Validate a discovery configuration.

        A disabled configuration is always valid. An enabled one must name at
        least one participating cluster and carry valid mechanism options.

        Raises:
            ConfigInvalidError: If the configuration is enabled but incomplete
        """
        config = self.coerce_config(config)
        if not config.enabled:
            return
        if not config.clusters:
            raise ConfigInvalidError(
                f"{self.type} discovery is enabled but names no participating clusters",
                details={"mechanism": self.type}
            )
        self.parse_options(config)

    @abstractmethod
    async def install(self, handle: ClusterHandle, config: ConfigInput) -> None:
        """Install the mechanism on one cluster.

        Callers should check ``status`` first; pre-existing installations are
        not detected beyond what ``status`` reports.
        """

    @abstractmethod
    async def uninstall(self, handle: ClusterHandle) -> None:
        """Remove everything the mechanism installed on one cluster."""

    @abstractmethod
    async def status(self, handle: ClusterHandle) -> ServiceDiscoveryStatus:
        """Report the mechanism's state on one cluster."""

    @abstractmethod
    async def health_check(self, handle: ClusterHandle) -> List[HealthCheck]:
        """Run independent named health checks on one cluster."""


class KubernetesDiscoveryProvider(ServiceDiscoveryProvider):
    """Base for mechanisms made of plain Kubernetes resources."""

    def __init__(self, namespace: str = "kube-system", managed_by: str = "meshharness"):
        self.namespace = namespace
        self.managed_by = managed_by

    def labels(self, name: str) -> Dict[str, str]:
        return {
            MANAGED_BY_LABEL: self.managed_by,
            "app.kubernetes.io/name": name,
            "app.kubernetes.io/component": f"discovery-{self.type}",
        }

    def install_error(self, handle: ClusterHandle, message: str, cause: Optional[Exception] = None):
        return DiscoveryInstallError(self.type, message, cluster=handle.name, cause=cause)

    # Resource builders

    def config_map(self, name: str, data: Dict[str, str], namespace: Optional[str] = None) -> client.V1ConfigMap:
        return client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace or self.namespace, labels=self.labels(name)),
            data=data
        )

    def deployment(self, name: str, image: str, command: List[str],
                   namespace: Optional[str] = None, service_account: Optional[str] = None,
                   ports: Optional[List[int]] = None) -> client.V1Deployment:
        selector = {"app": name}
        container = client.V1Container(
            name=name,
            image=image,
            command=command,
            ports=[client.V1ContainerPort(container_port=port) for port in (ports or [])] or None,
            resources=client.V1ResourceRequirements(
                requests={"cpu": "100m", "memory": "128Mi"},
                limits={"cpu": "250m", "memory": "256Mi"}
            )
        )
        return client.V1Deployment(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace or self.namespace, labels=self.labels(name)),
            spec=client.V1DeploymentSpec(
                replicas=1,
                selector=client.V1LabelSelector(match_labels=selector),
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels={**selector, **self.labels(name)}),
                    spec=client.V1PodSpec(service_account_name=service_account, containers=[container])
                )
            )
        )

    # Apply / delete helpers

    async def apply_namespaced(self, handle: ClusterHandle, create_fn, replace_fn, body, namespace: Optional[str] = None):
        """Create a namespaced object, replacing it if it already exists."""
        namespace = namespace or self.namespace
        try:
            return await handle.call(create_fn, namespace, body)
        except ApiException as e:
            if e.status != 409:
                raise
        return await handle.call(replace_fn, body.metadata.name, namespace, body)

    async def apply_cluster_scoped(self, handle: ClusterHandle, create_fn, replace_fn, body):
        """Create a cluster-scoped object, replacing it if it already exists."""
        try:
            return await handle.call(create_fn, body)
        except ApiException as e:
            if e.status != 409:
                raise
        return await handle.call(replace_fn, body.metadata.name, body)

    async def delete_ignore_missing(self, handle: ClusterHandle, fn, *args) -> bool:
        """Delete an object; returns False when it was already gone."""
        try:
            await handle.call(fn, *args)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    async def apply_config_map(self, handle: ClusterHandle, name: str, data: Dict[str, str]):
        return await self.apply_namespaced(
            handle,
            handle.core_v1.create_namespaced_config_map,
            handle.core_v1.replace_namespaced_config_map,
            self.config_map(name, data)
        )

    async def apply_deployment(self, handle: ClusterHandle, body: client.V1Deployment):
        return await self.apply_namespaced(
            handle,
            handle.apps_v1.create_namespaced_deployment,
            handle.apps_v1.replace_namespaced_deployment,
            body
        )

    async def apply_rbac(self, handle: ClusterHandle, name: str, rules: List[client.V1PolicyRule]) -> None:
        """ServiceAccount, ClusterRole and ClusterRoleBinding sharing one name."""
        account = client.V1ServiceAccount(
            metadata=client.V1ObjectMeta(name=name, namespace=self.namespace, labels=self.labels(name))
        )
        role = client.V1ClusterRole(
            metadata=client.V1ObjectMeta(name=name, labels=self.labels(name)),
            rules=rules
        )
        binding = client.V1ClusterRoleBinding(
            metadata=client.V1ObjectMeta(name=name, labels=self.labels(name)),
            role_ref=client.V1RoleRef(api_group="rbac.authorization.k8s.io", kind="ClusterRole", name=name),
            subjects=[client.RbacV1Subject(kind="ServiceAccount", name=name, namespace=self.namespace)]
        )

        await self.apply_namespaced(
            handle,
            handle.core_v1.create_namespaced_service_account,
            handle.core_v1.replace_namespaced_service_account,
            account
        )
        await self.apply_cluster_scoped(
            handle, handle.rbac_v1.create_cluster_role, handle.rbac_v1.replace_cluster_role, role
        )
        await self.apply_cluster_scoped(
            handle, handle.rbac_v1.create_cluster_role_binding, handle.rbac_v1.replace_cluster_role_binding, binding
        )

    async def delete_rbac(self, handle: ClusterHandle, name: str) -> None:
        await self.delete_ignore_missing(handle, handle.rbac_v1.delete_cluster_role_binding, name)
        await self.delete_ignore_missing(handle, handle.rbac_v1.delete_cluster_role, name)
        await self.delete_ignore_missing(handle, handle.core_v1.delete_namespaced_service_account, name, self.namespace)

    # Checks

    async def deployment_ready(self, handle: ClusterHandle, name: str, check_name: str = "deployment",
                               namespace: Optional[str] = None) -> HealthCheck:
        start_time = time.time()
        try:
            deployment = await handle.read_or_none(
                handle.apps_v1.read_namespaced_deployment, name, namespace or self.namespace
            )
        except (ApiException, HarnessError) as e:
            check = HealthCheck(name=check_name, healthy=False, message=f"cannot read deployment {name}: {e}")
        else:
            if deployment is None:
                check = HealthCheck(name=check_name, healthy=False, message=f"deployment {name} not found")
            else:
                desired = (deployment.spec.replicas if deployment.spec else None) or 0
                ready = (deployment.status.ready_replicas if deployment.status else None) or 0
                check = HealthCheck(
                    name=check_name,
                    healthy=desired > 0 and ready >= desired,
                    message=f"{ready}/{desired} replicas ready",
                    details={"deployment": name, "ready": ready, "desired": desired}
                )
        log_health_check(f"{self.type}/{handle.name}/{check.name}", check.healthy,
                         (time.time() - start_time) * 1000, error=None if check.healthy else check.message)
        return check

    async def config_map_present(self, handle: ClusterHandle, name: str, check_name: str = "configuration",
                                 namespace: Optional[str] = None) -> HealthCheck:
        try:
            config_map = await handle.read_or_none(
                handle.core_v1.read_namespaced_config_map, name, namespace or self.namespace
            )
        except (ApiException, HarnessError) as e:
            return HealthCheck(name=check_name, healthy=False, message=f"cannot read config map {name}: {e}")
        if config_map is None:
            return HealthCheck(name=check_name, healthy=False, message=f"config map {name} not found")
        return HealthCheck(name=check_name, healthy=True, message=f"config map {name} present",
                           details={"keys": sorted((config_map.data or {}).keys())})


class ServiceDiscoveryRegistry:
    """Maps discovery mechanism identifiers to providers."""

    def __init__(self):
        self._providers: Dict[str, ServiceDiscoveryProvider] = {}

    def register(self, provider: ServiceDiscoveryProvider) -> None:
        if not provider.type:
            raise ValueError("Service discovery provider must declare a type")
        self._providers[provider.type] = provider
        logger.debug(f"Registered service discovery provider '{provider.type}'")

    def get(self, mechanism: str) -> ServiceDiscoveryProvider:
        """Look up a provider.

        Raises:
            DiscoveryNotFoundError: If no provider is registered for the mechanism
        """
        provider = self._providers.get(mechanism.strip().lower())
        if provider is None:
            raise DiscoveryNotFoundError(mechanism, self.list())
        return provider

    def list(self) -> List[str]:
        return sorted(self._providers)

    def validate_config(self, config: ServiceDiscoveryConfig) -> None:
        """Validate a configuration with the provider its type names."""
        if not config.enabled:
            return
        self.get(config.type).validate_config(config)
