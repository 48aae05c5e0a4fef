"""
Plain Kubernetes connectivity.

Each entry of ``network.policies`` becomes an ingress NetworkPolicy that
admits traffic from the listed CIDRs. A topology with network settings but
no policies gets one policy admitting the private address ranges. A
configured gateway is only observed: its Service must exist and, for a
LoadBalancer, have an address.
"""

import ipaddress
import time
from typing import Dict, List, Set, Tuple

from kubernetes import client
from kubernetes.client.exceptions import ApiException
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .base import ConnectivityProvider
from ..exceptions import ConfigInvalidError, HarnessError
from ..models import ConnectivityState, ConnectivityStatus, GatewayConfig, HealthCheck, NetworkConfig
from ..providers.kube import ClusterHandle
from ..utils.logging import get_logger, log_health_check, LogContext
from ..utils.metrics import counter


logger = get_logger(__name__)

DEFAULT_POLICY_NAME = "cross-cluster-traffic"
DEFAULT_ALLOW_CIDRS = ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16")


class NetworkPolicyRule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$", max_length=63)
    namespace: str = Field(default="default")
    allow_cidrs: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOW_CIDRS), min_length=1)
    ports: List[int] = Field(default_factory=list, description="TCP ports; empty admits every port")
    pod_selector: Dict[str, str] = Field(default_factory=dict, description="Empty selects every pod")

    @field_validator('allow_cidrs')
    @classmethod
    def validate_cidrs(cls, v):
        for cidr in v:
            try:
                ipaddress.ip_network(cidr, strict=False)
            except ValueError:
                raise ValueError(f"invalid CIDR '{cidr}'")
        return v

    @field_validator('ports')
    @classmethod
    def validate_ports(cls, v):
        for port in v:
            if not 1 <= port <= 65535:
                raise ValueError(f"port {port} is out of range")
        return v

    @property
    def key(self) -> Tuple[str, str]:
        return self.namespace, self.name


class GatewayOptions(BaseModel):
    model_config = ConfigDict(extra="allow")

    service: str = Field(default="istio-eastwestgateway", description="Gateway Service name")
    namespace: str = Field(default="istio-system")


def _rejected(what: str, error: ValidationError) -> ConfigInvalidError:
    messages = "; ".join(
        f"{'.'.join(str(p) for p in e['loc']) or what}: {e['msg']}" for e in error.errors()
    )
    return ConfigInvalidError(f"kubernetes connectivity {what} rejected: {messages}",
                              details={"connectivity": "kubernetes"}, cause=error)


class KubernetesConnectivityProvider(ConnectivityProvider):
    """NetworkPolicies for cross-cluster traffic plus gateway observation."""

    type = "kubernetes"

    def rules(self, network: NetworkConfig) -> List[NetworkPolicyRule]:
        """Policies the network settings ask for.

        Raises:
            ConfigInvalidError: If a policy is malformed or two share a namespace and name
        """
        if not network.policies:
            return [NetworkPolicyRule(name=DEFAULT_POLICY_NAME)]
        rules = []
        seen: Set[Tuple[str, str]] = set()
        for index, entry in enumerate(network.policies):
            try:
                rule = NetworkPolicyRule.model_validate(entry)
            except ValidationError as e:
                raise _rejected(f"policy {index}", e)
            if rule.key in seen:
                raise ConfigInvalidError(
                    f"network policy {rule.namespace}/{rule.name} is declared twice",
                    details={"connectivity": self.type}
                )
            seen.add(rule.key)
            rules.append(rule)
        return rules

    def gateway_options(self, gateway: GatewayConfig) -> GatewayOptions:
        try:
            return GatewayOptions.model_validate(gateway.options)
        except ValidationError as e:
            raise _rejected("gateway", e)

    def validate_config(self, network: NetworkConfig) -> None:
        self.rules(network)
        if network.gateway:
            self.gateway_options(network.gateway)

    def network_policy(self, rule: NetworkPolicyRule) -> client.V1NetworkPolicy:
        ports = [client.V1NetworkPolicyPort(port=port, protocol="TCP") for port in rule.ports]
        return client.V1NetworkPolicy(
            metadata=client.V1ObjectMeta(name=rule.name, namespace=rule.namespace, labels=self.labels(rule.name)),
            spec=client.V1NetworkPolicySpec(
                pod_selector=client.V1LabelSelector(match_labels=rule.pod_selector or None),
                policy_types=["Ingress"],
                ingress=[client.V1NetworkPolicyIngressRule(
                    _from=[client.V1NetworkPolicyPeer(ip_block=client.V1IPBlock(cidr=cidr))
                           for cidr in rule.allow_cidrs],
                    ports=ports or None
                )]
            )
        )

    async def managed_policies(self, handle: ClusterHandle) -> Set[Tuple[str, str]]:
        policies = await handle.call(
            handle.networking_v1.list_network_policy_for_all_namespaces,
            label_selector=self.label_selector
        )
        return {(item.metadata.namespace, item.metadata.name) for item in policies.items or []}

    async def install(self, handle: ClusterHandle, network: NetworkConfig) -> None:
        """Apply every policy, then delete managed policies no longer declared."""
        rules = self.rules(network)
        wanted = {rule.key for rule in rules}

        with LogContext("install_connectivity", connectivity=self.type, cluster=handle.name, policies=len(rules)):
            try:
                for rule in rules:
                    await self.apply_namespaced(
                        handle,
                        handle.networking_v1.create_namespaced_network_policy,
                        handle.networking_v1.replace_namespaced_network_policy,
                        self.network_policy(rule)
                    )
                for namespace, name in sorted(await self.managed_policies(handle) - wanted):
                    logger.info(f"Removing stale network policy {namespace}/{name} from cluster {handle.name}")
                    await self.delete_ignore_missing(
                        handle, handle.networking_v1.delete_namespaced_network_policy, name, namespace
                    )
            except (ApiException, HarnessError) as e:
                raise self.error(handle, f"cannot apply network policies: {e}", cause=e)

        counter('connectivity.install.success', 1, tags={'connectivity': self.type})

    async def uninstall(self, handle: ClusterHandle) -> None:
        try:
            for namespace, name in sorted(await self.managed_policies(handle)):
                await self.delete_ignore_missing(
                    handle, handle.networking_v1.delete_namespaced_network_policy, name, namespace
                )
        except (ApiException, HarnessError) as e:
            raise self.error(handle, f"cannot remove network policies: {e}", cause=e)
        counter('connectivity.uninstall.success', 1, tags={'connectivity': self.type})

    async def gateway_check(self, handle: ClusterHandle, gateway: GatewayConfig) -> HealthCheck:
        start_time = time.time()
        options = self.gateway_options(gateway)
        where = f"{options.namespace}/{options.service}"
        try:
            service = await handle.read_or_none(
                handle.core_v1.read_namespaced_service, options.service, options.namespace
            )
        except (ApiException, HarnessError) as e:
            check = HealthCheck(name="gateway", healthy=False, message=f"cannot read gateway service {where}: {e}")
        else:
            if service is None:
                check = HealthCheck(name="gateway", healthy=False, message=f"gateway service {where} not found")
            elif service.spec.type == "LoadBalancer":
                ingress = (service.status.load_balancer.ingress if service.status and service.status.load_balancer
                           else None) or []
                addresses = [entry.ip or entry.hostname for entry in ingress]
                check = HealthCheck(
                    name="gateway",
                    healthy=bool(addresses),
                    message=f"gateway {where} at {', '.join(addresses)}" if addresses
                    else f"gateway {where} has no external address yet",
                    details={"service": where, "addresses": addresses}
                )
            else:
                check = HealthCheck(
                    name="gateway",
                    healthy=bool(service.spec.cluster_ip),
                    message=f"gateway {where} is a {service.spec.type} service",
                    details={"service": where, "cluster_ip": service.spec.cluster_ip}
                )
        log_health_check(f"{self.type}/{handle.name}/gateway", check.healthy,
                         (time.time() - start_time) * 1000, error=None if check.healthy else check.message)
        return check

    async def status(self, handle: ClusterHandle, network: NetworkConfig) -> ConnectivityStatus:
        wanted = {rule.key for rule in self.rules(network)}
        try:
            found = await self.managed_policies(handle)
        except (ApiException, HarnessError) as e:
            return ConnectivityStatus(type=self.type, state=ConnectivityState.ERROR,
                                      error=f"cannot list network policies: {e}")

        gateway_ready = None
        if network.gateway:
            gateway_ready = (await self.gateway_check(handle, network.gateway)).healthy

        missing = wanted - found
        if not found:
            state = ConnectivityState.NOT_CONFIGURED
        elif missing or gateway_ready is False:
            state = ConnectivityState.DEGRADED
        else:
            state = ConnectivityState.CONFIGURED

        error = None
        if found and missing:
            error = "missing network policies: " + ", ".join(f"{ns}/{name}" for ns, name in sorted(missing))
        return ConnectivityStatus(
            type=self.type,
            state=state,
            healthy=state == ConnectivityState.CONFIGURED,
            policies=len(found & wanted),
            gateway_ready=gateway_ready,
            error=error
        )

    async def health_check(self, handle: ClusterHandle, network: NetworkConfig) -> List[HealthCheck]:
        wanted = {rule.key for rule in self.rules(network)}
        try:
            found = await self.managed_policies(handle)
        except (ApiException, HarnessError) as e:
            checks = [HealthCheck(name="network-policies", healthy=False,
                                  message=f"cannot list network policies: {e}")]
        else:
            present = len(found & wanted)
            checks = [HealthCheck(
                name="network-policies",
                healthy=present == len(wanted),
                message=f"{present}/{len(wanted)} network policies present",
                details={"missing": [f"{ns}/{name}" for ns, name in sorted(wanted - found)]}
            )]
        if network.gateway:
            checks.append(await self.gateway_check(handle, network.gateway))
        return checks
