"""
DNS-based cross-cluster service discovery.

Installs a CoreDNS server block that forwards each participating cluster's
zone to the configured nameservers. The block is wrapped in marker lines so
that uninstall removes exactly what was inserted and nothing else.
"""

import ipaddress
import re
from datetime import datetime
from typing import List, Optional, Tuple

from kubernetes.client.exceptions import ApiException
from pydantic import BaseModel, Field, field_validator

from .base import KubernetesDiscoveryProvider, ConfigInput
from ..exceptions import DiscoveryInstallError, HarnessError
from ..models import DiscoveryState, HealthCheck, ServiceDiscoveryStatus
from ..providers.kube import ClusterHandle
from ..utils.logging import get_logger, LogContext
from ..utils.metrics import counter


logger = get_logger(__name__)

BEGIN_MARKER = "# BEGIN meshharness dns-federation"
END_MARKER = "# END meshharness dns-federation"

COREDNS_NAMESPACE = "kube-system"
COREDNS_CONFIG_MAP = "coredns"
COREDNS_DEPLOYMENT = "coredns"
KUBE_DNS_SERVICE = "kube-dns"
CONFIG_MAP_NAME = "dns-discovery-config"

_HOSTNAME_PATTERN = re.compile(r"^(?=.{1,253}$)([a-zA-Z0-9]([-a-zA-Z0-9]{0,61}[a-zA-Z0-9])?)(\.[a-zA-Z0-9]([-a-zA-Z0-9]{0,61}[a-zA-Z0-9])?)*$")


class CorefileError(ValueError):
    """The Corefile's federation markers are malformed."""


class DNSOptions(BaseModel):
    nameservers: List[str] = Field(..., min_length=1, description="Upstream nameservers for remote zones")
    domain: str = Field(default="cluster.local")
    ttl: int = Field(default=30, ge=0, le=3600, description="Cache TTL in seconds")
    search_domains: List[str] = Field(default_factory=list)

    @field_validator('nameservers')
    @classmethod
    def validate_nameservers(cls, v):
        for nameserver in v:
            host = nameserver.rsplit(':', 1)[0] if nameserver.count(':') == 1 else nameserver
            try:
                ipaddress.ip_address(host)
            except ValueError:
                if not _HOSTNAME_PATTERN.match(host):
                    raise ValueError(f"invalid nameserver '{nameserver}': not an IP address or hostname")
        return v


def render_federation_block(clusters: List[str], options: DNSOptions) -> str:
    """Render the marked CoreDNS server blocks for the participating clusters."""
    lines = [BEGIN_MARKER]
    upstreams = " ".join(options.nameservers)
    for cluster in clusters:
        lines.extend([
            f"{cluster}.{options.domain}:53 {{",
            "    errors",
            f"    cache {options.ttl}",
            f"    forward . {upstreams}",
            "}",
        ])
    lines.append(END_MARKER)
    return "\n".join(lines)


def _find_block(lines: List[str]) -> Optional[Tuple[int, int]]:
    """Locate the marked block; returns inclusive (begin, end) line indexes."""
    begins = [i for i, line in enumerate(lines) if line.strip() == BEGIN_MARKER]
    ends = [i for i, line in enumerate(lines) if line.strip() == END_MARKER]
    if not begins and not ends:
        return None
    if len(begins) != 1 or len(ends) != 1 or ends[0] < begins[0]:
        raise CorefileError(
            f"expected exactly one federation block, found {len(begins)} begin and {len(ends)} end markers"
        )
    return begins[0], ends[0]


def has_federation_block(corefile: str) -> bool:
    return _find_block(corefile.splitlines()) is not None


def upsert_federation_block(corefile: str, block: str) -> str:
    """Append the block, or replace a previously inserted one in place."""
    lines = corefile.splitlines()
    span = _find_block(lines)
    if span is None:
        return corefile.rstrip("\n") + "\n\n" + block + "\n"
    begin, end = span
    return "\n".join(lines[:begin] + block.splitlines() + lines[end + 1:]) + "\n"


def remove_federation_block(corefile: str) -> str:
    """Remove exactly the marked block and the blank line inserted before it."""
    lines = corefile.splitlines()
    span = _find_block(lines)
    if span is None:
        return corefile
    begin, end = span
    if begin > 0 and not lines[begin - 1].strip():
        begin -= 1
    remaining = lines[:begin] + lines[end + 1:]
    return "\n".join(remaining) + "\n" if remaining else ""


class DNSDiscoveryProvider(KubernetesDiscoveryProvider):
    """Cross-cluster visibility through CoreDNS zone forwarding."""

    type = "dns"
    options_model = DNSOptions

    async def _read_corefile(self, handle: ClusterHandle) -> Optional[str]:
        config_map = await handle.read_or_none(
            handle.core_v1.read_namespaced_config_map, COREDNS_CONFIG_MAP, COREDNS_NAMESPACE
        )
        if config_map is None:
            return None
        return (config_map.data or {}).get("Corefile")

    async def _write_corefile(self, handle: ClusterHandle, corefile: str) -> None:
        await handle.call(
            handle.core_v1.patch_namespaced_config_map,
            COREDNS_CONFIG_MAP, COREDNS_NAMESPACE, {"data": {"Corefile": corefile}}
        )
        await handle.call(
            handle.apps_v1.patch_namespaced_deployment,
            COREDNS_DEPLOYMENT, COREDNS_NAMESPACE,
            {"spec": {"template": {"metadata": {"annotations": {
                "kubectl.kubernetes.io/restartedAt": datetime.utcnow().isoformat() + "Z"
            }}}}}
        )

    async def install(self, handle: ClusterHandle, config: ConfigInput) -> None:
        config = self.coerce_config(config)
        self.validate_config(config)
        options: DNSOptions = self.parse_options(config)

        with LogContext("install_dns_discovery", cluster=handle.name):
            try:
                await self.apply_config_map(handle, CONFIG_MAP_NAME, {
                    "clusters": ",".join(config.clusters),
                    "nameservers": ",".join(options.nameservers),
                    "domain": options.domain,
                    "ttl": str(options.ttl),
                    "resolv.conf": "\n".join(
                        [f"nameserver {ns}" for ns in options.nameservers]
                        + ([f"search {' '.join(options.search_domains)}"] if options.search_domains else [])
                    ) + "\n",
                })

                corefile = await self._read_corefile(handle)
                if corefile is None:
                    raise self.install_error(handle, "CoreDNS Corefile not found")
                updated = upsert_federation_block(corefile, render_federation_block(config.clusters, options))
                if updated != corefile:
                    await self._write_corefile(handle, updated)
            except CorefileError as e:
                raise self.install_error(handle, str(e), cause=e)
            except (ApiException, HarnessError) as e:
                if isinstance(e, DiscoveryInstallError):
                    raise
                raise self.install_error(handle, f"install failed: {e}", cause=e)

        counter('discovery.install.success', 1, tags={'mechanism': self.type})

    async def uninstall(self, handle: ClusterHandle) -> None:
        with LogContext("uninstall_dns_discovery", cluster=handle.name):
            try:
                corefile = await self._read_corefile(handle)
                if corefile is not None and has_federation_block(corefile):
                    await self._write_corefile(handle, remove_federation_block(corefile))
                await self.delete_ignore_missing(
                    handle, handle.core_v1.delete_namespaced_config_map, CONFIG_MAP_NAME, self.namespace
                )
            except CorefileError as e:
                raise self.install_error(handle, f"refusing to edit Corefile: {e}", cause=e)
            except (ApiException, HarnessError) as e:
                raise self.install_error(handle, f"uninstall failed: {e}", cause=e)

        counter('discovery.uninstall.success', 1, tags={'mechanism': self.type})

    async def _stanza_check(self, handle: ClusterHandle) -> HealthCheck:
        try:
            corefile = await self._read_corefile(handle)
            present = corefile is not None and has_federation_block(corefile)
        except CorefileError as e:
            return HealthCheck(name="corefile-stanza", healthy=False, message=str(e))
        except (ApiException, HarnessError) as e:
            return HealthCheck(name="corefile-stanza", healthy=False, message=f"cannot read Corefile: {e}")
        return HealthCheck(
            name="corefile-stanza",
            healthy=present,
            message="federation block present" if present else "federation block missing"
        )

    async def _endpoint_count(self, handle: ClusterHandle) -> int:
        endpoints = await handle.read_or_none(
            handle.core_v1.read_namespaced_endpoints, KUBE_DNS_SERVICE, COREDNS_NAMESPACE
        )
        if endpoints is None:
            return 0
        return sum(len(subset.addresses or []) for subset in (endpoints.subsets or []))

    async def status(self, handle: ClusterHandle) -> ServiceDiscoveryStatus:
        try:
            config_map = await handle.read_or_none(
                handle.core_v1.read_namespaced_config_map, CONFIG_MAP_NAME, self.namespace
            )
            corefile = await self._read_corefile(handle)
            stanza = corefile is not None and has_federation_block(corefile)
            endpoints = await self._endpoint_count(handle)
        except (ApiException, HarnessError, CorefileError) as e:
            return ServiceDiscoveryStatus(type=self.type, state=DiscoveryState.ERROR, error=str(e))

        if config_map is None and not stanza:
            return ServiceDiscoveryStatus(type=self.type, state=DiscoveryState.NOT_INSTALLED)

        clusters = [c for c in ((config_map.data or {}).get("clusters", "") if config_map else "").split(",") if c]
        deployment = await self.deployment_ready(handle, COREDNS_DEPLOYMENT, "coredns-deployment", COREDNS_NAMESPACE)
        healthy = config_map is not None and stanza and deployment.healthy
        return ServiceDiscoveryStatus(
            type=self.type,
            state=DiscoveryState.INSTALLED if healthy else DiscoveryState.DEGRADED,
            healthy=healthy,
            services_discovered=len(clusters),
            endpoints_discovered=endpoints,
            error=None if healthy else "DNS discovery is partially installed or CoreDNS is not ready"
        )

    async def health_check(self, handle: ClusterHandle) -> List[HealthCheck]:
        checks = [
            await self.config_map_present(handle, CONFIG_MAP_NAME),
            await self._stanza_check(handle),
            await self.deployment_ready(handle, COREDNS_DEPLOYMENT, "coredns-deployment", COREDNS_NAMESPACE),
        ]
        try:
            endpoints = await self._endpoint_count(handle)
            checks.append(HealthCheck(
                name="dns-service-endpoints",
                healthy=endpoints > 0,
                message=f"{endpoints} {KUBE_DNS_SERVICE} endpoint(s) serving"
            ))
        except (ApiException, HarnessError) as e:
            checks.append(HealthCheck(name="dns-service-endpoints", healthy=False, message=str(e)))
        return checks
