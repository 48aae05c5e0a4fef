"""
Pytest configuration and shared fixtures
"""

import asyncio
import json
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, Mock

import pytest
from kubernetes.client.exceptions import ApiException
from pydantic import BaseModel, ConfigDict

from meshharness.config.settings import CoordinatorConfig
from meshharness.exceptions import ClusterCreateError, ClusterNotFoundError
from meshharness.executors.base import ExecutorRegistry, TestExecutor
from meshharness.models import (
    ClusterConfig,
    ClusterState,
    ClusterStatus,
    ClusterTopology,
    TestEnvironment,
    TestResults,
    TestTarget
)
from meshharness.providers.base import ClusterProvider, ClusterProviderRegistry
from meshharness.utils.process import CommandResult


def api_error(status: int) -> ApiException:
    return ApiException(status=status, reason="test")


class FakeHandle:
    """Stands in for ClusterHandle; Kubernetes API groups are plain mocks."""

    def __init__(self, name: str = "primary"):
        self.name = name
        self.core_v1 = Mock()
        self.apps_v1 = Mock()
        self.rbac_v1 = Mock()
        self.networking_v1 = Mock()
        self.closed = False

    async def call(self, fn, *args, **kwargs):
        return fn(*args, **kwargs)

    async def read_or_none(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def close(self):
        self.closed = True


class ObjectStore:
    """Named objects served through a ``read_*`` side effect, 404 when missing."""

    def __init__(self, objects: Optional[Dict[str, object]] = None):
        self.objects = dict(objects or {})

    def read(self, name, *args, **kwargs):
        if name not in self.objects:
            raise api_error(404)
        return self.objects[name]


class InMemoryProvider(ClusterProvider):
    """Provider that keeps created clusters in memory.

    Clusters named in ``failing`` refuse to be created.
    """

    name = "memory"

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.clusters: Dict[str, ClusterConfig] = {}

    async def create(self, config):
        if config.name in self.clusters:
            raise ClusterCreateError(config.name, "already exists")
        if config.name in self.failing:
            raise ClusterCreateError(config.name, "out of memory")
        self.clusters[config.name] = config

    async def delete(self, name):
        if self.clusters.pop(name, None) is None:
            raise ClusterNotFoundError(name, self.name)

    async def status(self, name):
        config = self.clusters.get(name)
        if config is None:
            return ClusterStatus.not_found(name, self.name)
        return ClusterStatus(name=name, provider=self.name, state=ClusterState.RUNNING,
                             nodes=1, version=config.version, healthy=True)

    async def get_kubeconfig(self, name):
        if name not in self.clusters:
            raise ClusterNotFoundError(name, self.name)
        return f"apiVersion: v1\ncurrent-context: {name}\n"

    async def list_clusters(self):
        return sorted(self.clusters)


class ScriptedOptions(BaseModel):
    model_config = ConfigDict(extra="allow")


class ScriptedExecutor(TestExecutor):
    """Executor whose outcomes are scripted per run key.

    The key is the target cluster, or ``source->targets`` for cross-cluster
    checks. Each scripted entry is either TestResults or an exception to raise.
    Unscripted runs pass two tests.
    """

    type = "scripted"
    options_model = ScriptedOptions

    def __init__(self, script: Optional[Dict[str, list]] = None, delay: float = 0.0):
        super().__init__()
        self.script = {key: list(outcomes) for key, outcomes in (script or {}).items()}
        self.delay = delay
        self.calls: List[str] = []
        self.targets: List[TestTarget] = []

    @staticmethod
    def key_for(target: TestTarget) -> str:
        targets = target.env.get("MESH_TARGET_CLUSTERS")
        return f"{target.cluster}->{targets}" if targets else target.cluster

    async def run(self, target, options):
        key = self.key_for(target)
        self.calls.append(key)
        self.targets.append(target)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcomes = self.script.get(key)
        outcome = outcomes.pop(0) if outcomes else TestResults(total=2, passed=2)
        if isinstance(outcome, BaseException):
            raise outcome
        return CommandResult(args=[key], returncode=0, stdout=outcome.model_dump_json(), stderr="")

    def parse_output(self, result, options):
        return TestResults.model_validate(json.loads(result.stdout))


# Topology fixtures

@pytest.fixture
def sample_topology():
    """A primary with two remotes, all on the fake provider."""
    return ClusterTopology.model_validate({
        "primary": {"provider": "fake", "name": "primary"},
        "remotes": {
            "remote-a": {"provider": "fake"},
            "remote-b": {"provider": "fake"},
        },
    })


@pytest.fixture
def federated_topology():
    """Two clusters with federation and DNS discovery enabled."""
    return ClusterTopology.model_validate({
        "primary": {"provider": "fake", "name": "primary"},
        "remotes": {"remote-a": {"provider": "fake"}},
        "federation": {
            "enabled": True,
            "trust_domain": "mesh.local",
            "discovery": {
                "type": "dns",
                "enabled": True,
                "clusters": ["primary", "remote-a"],
                "options": {"nameservers": ["10.96.0.10"]},
            },
        },
    })


@pytest.fixture
def test_environment(sample_topology):
    return TestEnvironment(
        topology=sample_topology,
        kubeconfigs={name: f"/tmp/{name}.kubeconfig" for name in sample_topology.cluster_names()}
    )


# Provider fixtures

@pytest.fixture
def mock_provider():
    """Cluster provider mock registered as 'fake'."""
    provider = AsyncMock(spec=ClusterProvider)
    provider.name = "fake"
    provider.validate_config = Mock()
    provider.list_clusters.return_value = []
    return provider


@pytest.fixture
def provider_registry(mock_provider):
    registry = ClusterProviderRegistry()
    registry.register(mock_provider)
    return registry


# Executor fixtures

@pytest.fixture
def scripted_executor():
    return ScriptedExecutor()


@pytest.fixture
def executor_registry(scripted_executor):
    registry = ExecutorRegistry()
    registry.register(scripted_executor)
    return registry


@pytest.fixture
def coordinator_config():
    return CoordinatorConfig(default_retry_delay=0)


def cluster(name: str, provider: str = "fake") -> ClusterConfig:
    return ClusterConfig(provider=provider, name=name)
