"""
Data models for topologies, service discovery, and test execution.
"""

from .cluster import ClusterState, ClusterConfig, ClusterStatus
from .discovery import (
    DiscoveryType,
    DiscoveryState,
    ServiceDiscoveryConfig,
    ServiceDiscoveryStatus,
    HealthCheck
)
from .topology import (
    TopologyHealth,
    ConnectivityState,
    ServiceMeshConfig,
    CertificateAuthorityConfig,
    FederationConfig,
    GatewayConfig,
    NetworkConfig,
    ConnectivityStatus,
    ClusterTopology,
    TopologyStatus
)
from .testing import (
    TestStatus,
    ExecutionState,
    MultiClusterTestType,
    TestConfig,
    RetryPolicy,
    MultiClusterTestConfig,
    TestResults,
    TestTarget,
    TestEnvironment,
    ClusterTestResult,
    CrossClusterTestResult,
    MultiClusterTestResults
)

__all__ = [
    "ClusterState",
    "ClusterConfig",
    "ClusterStatus",
    "DiscoveryType",
    "DiscoveryState",
    "ServiceDiscoveryConfig",
    "ServiceDiscoveryStatus",
    "HealthCheck",
    "TopologyHealth",
    "ConnectivityState",
    "ServiceMeshConfig",
    "CertificateAuthorityConfig",
    "FederationConfig",
    "GatewayConfig",
    "NetworkConfig",
    "ConnectivityStatus",
    "ClusterTopology",
    "TopologyStatus",
    "TestStatus",
    "ExecutionState",
    "MultiClusterTestType",
    "TestConfig",
    "RetryPolicy",
    "MultiClusterTestConfig",
    "TestResults",
    "TestTarget",
    "TestEnvironment",
    "ClusterTestResult",
    "CrossClusterTestResult",
    "MultiClusterTestResults"
]
