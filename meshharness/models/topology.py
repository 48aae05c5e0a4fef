"""
Topology models: a primary cluster, its remotes, and the cross-cluster
federation and network settings that bind them together.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

from .cluster import ClusterConfig, ClusterStatus
from .discovery import ServiceDiscoveryConfig


class TopologyHealth(str, Enum):
    """Aggregate health of a topology."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ConnectivityState(str, Enum):
    """State of cross-cluster connectivity on one cluster."""
    CONFIGURED = "configured"
    NOT_CONFIGURED = "not_configured"
    DEGRADED = "degraded"
    ERROR = "error"


class ServiceMeshConfig(BaseModel):
    """Service mesh selection used for federation."""
    model_config = ConfigDict(frozen=True)

    type: str = Field(default="istio", description="Service mesh type")
    version: Optional[str] = Field(default=None, description="Service mesh version")
    options: Dict[str, Any] = Field(default_factory=dict)


class CertificateAuthorityConfig(BaseModel):
    """Certificate authority used to establish cross-cluster trust."""
    model_config = ConfigDict(frozen=True)

    type: str = Field(default="self-signed", description="Certificate authority type")
    options: Dict[str, Any] = Field(default_factory=dict)


class FederationConfig(BaseModel):
    """Cross-cluster trust and visibility settings."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    trust_domain: Optional[str] = Field(default=None, description="Identity namespace for cross-cluster certificates")
    service_mesh: ServiceMeshConfig = Field(default_factory=ServiceMeshConfig)
    certificate_authority: CertificateAuthorityConfig = Field(default_factory=CertificateAuthorityConfig)
    discovery: ServiceDiscoveryConfig = Field(default_factory=ServiceDiscoveryConfig)

    @model_validator(mode='after')
    def require_trust_domain(self):
        """Federation cannot be enabled without a trust domain."""
        if self.enabled and not (self.trust_domain and self.trust_domain.strip()):
            raise ValueError("federation.trust_domain is required when federation is enabled")
        return self


class GatewayConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str = Field(default="istio", description="Gateway implementation")
    options: Dict[str, Any] = Field(default_factory=dict)


class NetworkConfig(BaseModel):
    """Cross-cluster reachability hints."""
    model_config = ConfigDict(frozen=True)

    connectivity: str = Field(default="kubernetes", description="Connectivity provider identifier")
    gateway: Optional[GatewayConfig] = None
    service_discovery: Optional[str] = Field(default=None, description="Discovery mechanism hint")
    policies: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator('connectivity')
    @classmethod
    def normalize_connectivity(cls, v):
        return v.strip().lower()

    @property
    def configured(self) -> bool:
        return bool(self.gateway or self.service_discovery or self.policies)


class ConnectivityStatus(BaseModel):
    """Observed connectivity on one cluster."""

    type: str
    state: ConnectivityState
    healthy: bool = False
    policies: int = Field(default=0, ge=0, description="Managed network policies found")
    gateway_ready: Optional[bool] = Field(default=None, description="None when no gateway is expected")
    last_checked: datetime = Field(default_factory=datetime.utcnow)
    error: Optional[str] = None


class ClusterTopology(BaseModel):
    """One primary cluster plus zero or more remotes, managed as a unit."""
    model_config = ConfigDict(frozen=True)

    primary: ClusterConfig
    remotes: Dict[str, ClusterConfig] = Field(default_factory=dict)
    federation: FederationConfig = Field(default_factory=FederationConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)

    @model_validator(mode='before')
    @classmethod
    def fill_remote_names(cls, data):
        """Allow remotes to be keyed by name without repeating it."""
        if isinstance(data, dict) and isinstance(data.get('remotes'), dict):
            remotes = {}
            for key, value in data['remotes'].items():
                if isinstance(value, dict) and 'name' not in value:
                    value = {**value, 'name': key}
                remotes[key] = value
            data = {**data, 'remotes': remotes}
        return data

    @model_validator(mode='after')
    def validate_unique_names(self):
        """Remote keys match their names and nothing collides with the primary."""
        for key, remote in self.remotes.items():
            if key != remote.name:
                raise ValueError(f"Remote key '{key}' does not match cluster name '{remote.name}'")
            if remote.name == self.primary.name:
                raise ValueError(f"Remote cluster '{remote.name}' collides with the primary cluster name")
        return self

    @property
    def is_multi_cluster(self) -> bool:
        return bool(self.remotes)

    def all_clusters(self) -> List[ClusterConfig]:
        """Primary first, then remotes in name order."""
        return [self.primary] + [self.remotes[name] for name in sorted(self.remotes)]

    def cluster_names(self) -> List[str]:
        return [cluster.name for cluster in self.all_clusters()]

    def get_cluster(self, name: str) -> Optional[ClusterConfig]:
        if name == self.primary.name:
            return self.primary
        return self.remotes.get(name)


class TopologyStatus(BaseModel):
    """Derived, re-computable view of a topology's observed state."""

    primary: ClusterStatus
    remotes: Dict[str, ClusterStatus] = Field(default_factory=dict)
    overall_health: TopologyHealth
    federation_status: str = "disabled"
    network_status: str = "not_configured"
    network: Dict[str, ConnectivityStatus] = Field(default_factory=dict, description="Connectivity per observed member")
    error: Optional[str] = None

    def present_clusters(self) -> List[str]:
        names = [self.primary.name] if self.primary.present else []
        names.extend(name for name, status in sorted(self.remotes.items()) if status.present)
        return names
