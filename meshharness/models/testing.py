"""
Test configuration and result models.

Per-cluster and cross-cluster results roll up into ``OverallResults`` by
element-wise summation; the roll-up is never set independently.
"""

from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
from datetime import datetime
from pydantic import BaseModel, Field, ConfigDict

from .topology import ClusterTopology


class TestStatus(str, Enum):
    """Status of a single executor run."""
    __test__ = False

    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    ERROR = "error"


class ExecutionState(str, Enum):
    """Lifecycle of a tracked multi-cluster execution."""
    QUEUED = "queued"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (ExecutionState.QUEUED, ExecutionState.RUNNING)


class MultiClusterTestType(str, Enum):
    """Kinds of multi-cluster test suites."""
    FEDERATION = "federation"
    TRAFFIC = "traffic"
    DISCOVERY = "discovery"
    FAILOVER = "failover"
    LOAD_BALANCE = "load-balance"


class TestConfig(BaseModel):
    """Single-cluster test configuration handed to an executor."""
    __test__ = False
    model_config = ConfigDict(frozen=True)

    type: str = Field(..., description="Executor identifier (go, cypress, ...)")
    enabled: bool = True
    options: Dict[str, Any] = Field(default_factory=dict, description="Executor-specific options")


class RetryPolicy(BaseModel):
    """Retries applied to transient execution failures only."""
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=0, ge=0, le=10)
    retry_delay: float = Field(default=10.0, ge=0, description="Fixed delay between attempts in seconds")


class MultiClusterTestConfig(BaseModel):
    """Test configuration fanned out across topology members."""
    model_config = ConfigDict(frozen=True)

    type: MultiClusterTestType
    executor: str = Field(default="go", description="Executor used for every per-cluster run")
    enabled: bool = True
    options: Dict[str, Any] = Field(default_factory=dict)
    clusters: List[str] = Field(default_factory=list, description="Only run against these clusters")
    exclude_clusters: List[str] = Field(default_factory=list)
    parallel: bool = False
    max_concurrency: int = Field(default=3, ge=1)
    timeout: float = Field(default=1800.0, gt=0, description="Per-run timeout in seconds")
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)

    def executor_config(self, extra_options: Optional[Dict[str, Any]] = None) -> TestConfig:
        options = dict(self.options)
        options.update(extra_options or {})
        return TestConfig(type=self.executor, enabled=self.enabled, options=options)


class TestResults(BaseModel):
    """Counts and artifacts from one or more test runs."""
    __test__ = False

    total: int = Field(default=0, ge=0)
    passed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)
    duration: float = Field(default=0.0, ge=0, description="Duration in seconds")
    artifacts: Dict[str, str] = Field(default_factory=dict)

    def __add__(self, other: "TestResults") -> "TestResults":
        return TestResults(
            total=self.total + other.total,
            passed=self.passed + other.passed,
            failed=self.failed + other.failed,
            skipped=self.skipped + other.skipped,
            duration=self.duration + other.duration,
            artifacts={**self.artifacts, **other.artifacts},
        )

    def qualified(self, owner: str) -> "TestResults":
        """Copy with artifact names prefixed by the cluster or check that produced them."""
        return self.model_copy(update={
            "artifacts": {f"{owner}/{name}": path for name, path in self.artifacts.items()}
        })

    @classmethod
    def sum(cls, results: Iterable["TestResults"]) -> "TestResults":
        total = cls()
        for result in results:
            total = total + result
        return total


class TestTarget(BaseModel):
    """Where a single executor run points."""
    __test__ = False

    cluster: str
    kubeconfig: Optional[str] = Field(default=None, description="Path to the cluster kubeconfig")
    env: Dict[str, str] = Field(default_factory=dict, description="Extra environment for the run")

    def environment(self) -> Dict[str, str]:
        env = {"MESH_CLUSTER": self.cluster}
        if self.kubeconfig:
            env["KUBECONFIG"] = self.kubeconfig
        env.update(self.env)
        return env


class TestEnvironment(BaseModel):
    """A ready topology plus the connection details of its members."""
    __test__ = False

    topology: ClusterTopology
    kubeconfigs: Dict[str, str] = Field(default_factory=dict, description="Cluster name to kubeconfig path")

    def cluster_names(self) -> List[str]:
        return self.topology.cluster_names()

    def target(self, cluster: str, env: Optional[Dict[str, str]] = None) -> TestTarget:
        return TestTarget(cluster=cluster, kubeconfig=self.kubeconfigs.get(cluster), env=env or {})


class ClusterTestResult(BaseModel):
    """Final outcome of the per-cluster run on one cluster."""

    cluster: str
    status: TestStatus
    results: TestResults = Field(default_factory=TestResults)
    attempts: int = Field(default=0, ge=0)
    error: Optional[str] = None


class CrossClusterTestResult(BaseModel):
    """Outcome of one check spanning a source cluster and its targets."""

    test_name: str
    source_cluster: str
    target_clusters: List[str]
    status: TestStatus
    results: TestResults = Field(default_factory=TestResults)
    duration: float = 0.0
    error: Optional[str] = None
    traffic_validated: bool = False
    service_discovery: bool = False


class MultiClusterTestResults(BaseModel):
    """Combined report of a multi-cluster execution."""

    execution_id: str
    test_type: MultiClusterTestType
    status: ExecutionState
    overall_results: TestResults = Field(default_factory=TestResults)
    cluster_results: Dict[str, ClusterTestResult] = Field(default_factory=dict)
    cross_cluster_results: List[CrossClusterTestResult] = Field(default_factory=list)
    start_time: datetime = Field(default_factory=datetime.utcnow)
    end_time: Optional[datetime] = None
    total_duration: float = 0.0

    def aggregate(self) -> TestResults:
        """Sum every per-cluster and cross-cluster result into the roll-up.

        The roll-up duration is the wall-clock span of the execution, not a sum.
        """
        counts = TestResults.sum(
            [result.results.qualified(cluster) for cluster, result in self.cluster_results.items()]
            + [result.results.qualified(result.test_name) for result in self.cross_cluster_results]
        )
        self.overall_results = counts.model_copy(update={"duration": self.total_duration})
        return self.overall_results
