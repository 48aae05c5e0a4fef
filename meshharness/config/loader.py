"""
Configuration document loading for the mesh test harness.

A harness document describes one cluster topology, its service discovery
settings and a set of named test configurations. Documents are YAML or JSON.
"""

import json
import yaml
from typing import Any, Dict, Optional, Union
from pathlib import Path
from pydantic import BaseModel, Field, ValidationError

from ..exceptions import ConfigInvalidError
from ..models import (
    ClusterTopology,
    ServiceDiscoveryConfig,
    TestConfig,
    MultiClusterTestConfig
)


class HarnessDocument(BaseModel):
    """A validated configuration document."""

    topology: ClusterTopology
    service_discovery: Optional[ServiceDiscoveryConfig] = None
    tests: Dict[str, TestConfig] = Field(default_factory=dict)
    multi_cluster_tests: Dict[str, MultiClusterTestConfig] = Field(default_factory=dict)

    @property
    def discovery(self) -> ServiceDiscoveryConfig:
        """The effective discovery settings for the topology."""
        return self.topology.federation.discovery


def load_config_file(file_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a configuration file (JSON or YAML).

    Args:
        file_path: Path to the configuration file

    Returns:
        Dictionary containing configuration data

    Raises:
        ConfigInvalidError: If the file is missing, has an unsupported format or cannot be parsed
    """
    file_path = Path(file_path)

    if not file_path.exists():
        raise ConfigInvalidError(f"configuration file not found: {file_path}", details={"path": str(file_path)})

    suffix = file_path.suffix.lower()
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            if suffix == '.json':
                data = json.load(f)
            elif suffix in ('.yml', '.yaml'):
                data = yaml.safe_load(f) or {}
            else:
                raise ConfigInvalidError(f"unsupported file format: {file_path.suffix}", details={"path": str(file_path)})
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigInvalidError(f"cannot parse {file_path}: {e}", details={"path": str(file_path)}, cause=e)

    if not isinstance(data, dict):
        raise ConfigInvalidError(f"top level of {file_path} must be a mapping", details={"path": str(file_path)})
    return data


def parse_harness_document(data: Dict[str, Any]) -> HarnessDocument:
    """Validate raw configuration data into a HarnessDocument.

    A top-level ``service_discovery`` section is folded into the topology's
    federation settings so every component sees a single source.
    """
    data = dict(data)
    discovery = data.get('service_discovery')
    topology = data.get('topology')
    if discovery is not None and isinstance(topology, dict):
        federation = dict(topology.get('federation') or {})
        federation['discovery'] = discovery
        data['topology'] = {**topology, 'federation': federation}

    try:
        return HarnessDocument.model_validate(data)
    except ValidationError as e:
        errors = [
            {"location": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in e.errors()
        ]
        raise ConfigInvalidError(
            "; ".join(f"{error['location']}: {error['message']}" for error in errors),
            details={"errors": errors},
            cause=e
        )


def load_harness_document(file_path: Union[str, Path]) -> HarnessDocument:
    """Load and validate a harness configuration document."""
    return parse_harness_document(load_config_file(file_path))


def save_config_file(config: Dict[str, Any], file_path: Union[str, Path]) -> None:
    """
    Save configuration data to a file (JSON or YAML).

    Raises:
        ConfigInvalidError: If the file format is not supported
    """
    file_path = Path(file_path)
    suffix = file_path.suffix.lower()
    if suffix not in ('.json', '.yml', '.yaml'):
        raise ConfigInvalidError(f"unsupported file format: {file_path.suffix}")

    file_path.parent.mkdir(parents=True, exist_ok=True)
    with open(file_path, 'w', encoding='utf-8') as f:
        if suffix == '.json':
            json.dump(config, f, indent=2, default=str)
        else:
            yaml.safe_dump(config, f, default_flow_style=False, indent=2, sort_keys=False)
