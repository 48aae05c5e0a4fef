"""Service discovery configuration and status models."""

from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, Field, ConfigDict, field_validator


class DiscoveryType(str, Enum):
    """Supported cross-cluster discovery mechanisms."""
    DNS = "dns"
    API_SERVER = "api-server"
    PROPAGATION = "propagation"
    MANUAL = "manual"


class DiscoveryState(str, Enum):
    """Installation state of a discovery mechanism on one cluster."""
    INSTALLED = "installed"
    NOT_INSTALLED = "not_installed"
    DEGRADED = "degraded"
    CONFIGURED = "configured"
    NOT_CONFIGURED = "not_configured"
    ERROR = "error"


class ServiceDiscoveryConfig(BaseModel):
    """Per-mechanism discovery settings.

    ``options`` is interpreted only by the mechanism named by ``type``.
    """
    model_config = ConfigDict(frozen=True)

    type: str = Field(default=DiscoveryType.DNS.value, description="Discovery mechanism identifier")
    enabled: bool = Field(default=False, description="Whether cross-cluster discovery is wired")
    clusters: List[str] = Field(default_factory=list, description="Participating cluster names")
    options: Dict[str, Any] = Field(default_factory=dict, description="Mechanism-specific options")

    @field_validator('type')
    @classmethod
    def normalize_type(cls, v):
        return v.strip().lower()


class ServiceDiscoveryStatus(BaseModel):
    """Observed state of a discovery mechanism on one cluster."""

    type: str
    state: DiscoveryState
    healthy: bool = False
    services_discovered: int = Field(default=0, ge=0)
    endpoints_discovered: int = Field(default=0, ge=0)
    last_checked: datetime = Field(default_factory=datetime.utcnow)
    error: Optional[str] = None

    @property
    def installed(self) -> bool:
        return self.state in (DiscoveryState.INSTALLED, DiscoveryState.DEGRADED, DiscoveryState.CONFIGURED)


class HealthCheck(BaseModel):
    """Result of one independent, named health check."""

    name: str
    healthy: bool
    message: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)
    checked_at: datetime = Field(default_factory=datetime.utcnow)
