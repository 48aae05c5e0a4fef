"""Cluster intent and observed-state models."""

import re
from enum import Enum
from typing import Any, Dict, Optional
from datetime import datetime
from pydantic import BaseModel, Field, ConfigDict, field_validator


CLUSTER_NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


class ClusterState(str, Enum):
    """Lifecycle state of a single cluster as observed from its provider."""
    CREATING = "creating"
    RUNNING = "running"
    DEGRADED = "degraded"
    ERROR = "error"
    DELETED = "deleted"
    NOT_FOUND = "not_found"


class ClusterConfig(BaseModel):
    """Immutable intent for one cluster."""
    model_config = ConfigDict(frozen=True)

    provider: str = Field(default="kind", description="Cluster provider identifier")
    name: str = Field(..., min_length=1, max_length=63, description="Cluster name, unique within a topology")
    version: str = Field(default="1.27.0", description="Kubernetes version")
    options: Dict[str, Any] = Field(
        default_factory=dict,
        description="Provider-specific options (nodes, memory, cpus, driver, addons)"
    )

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        """Cluster names must be usable as DNS labels."""
        if not CLUSTER_NAME_PATTERN.match(v):
            raise ValueError(
                f"Invalid cluster name '{v}': use lowercase letters, digits and hyphens"
            )
        return v

    @field_validator('version')
    @classmethod
    def strip_version_prefix(cls, v):
        v = v.strip()
        if v.startswith('v'):
            v = v[1:]
        if not v:
            raise ValueError("Kubernetes version cannot be empty")
        return v

    @field_validator('provider')
    @classmethod
    def normalize_provider(cls, v):
        return v.strip().lower()


class ClusterStatus(BaseModel):
    """Observed state of one cluster, produced on demand by its provider."""

    name: str
    provider: str
    state: ClusterState
    nodes: int = Field(default=0, ge=0)
    version: Optional[str] = None
    healthy: bool = False
    error: Optional[str] = None
    last_checked: datetime = Field(default_factory=datetime.utcnow)

    @classmethod
    def not_found(cls, name: str, provider: str) -> "ClusterStatus":
        return cls(name=name, provider=provider, state=ClusterState.NOT_FOUND, healthy=False)

    @classmethod
    def failed(cls, name: str, provider: str, error: str) -> "ClusterStatus":
        return cls(name=name, provider=provider, state=ClusterState.ERROR, healthy=False, error=error)

    @property
    def present(self) -> bool:
        """Whether the provider knows about the cluster at all."""
        return self.state not in (ClusterState.NOT_FOUND, ClusterState.DELETED)
