"""
Services for topology lifecycle, federation and network wiring, and distributed
test runs.
"""

from .coordinator import DistributedTestCoordinator, plan_cross_cluster_checks
from .federation import FederationConfigurator
from .network import NetworkConfigurator
from .topology_manager import TopologyManager

__all__ = [
    "TopologyManager",
    "FederationConfigurator",
    "NetworkConfigurator",
    "DistributedTestCoordinator",
    "plan_cross_cluster_checks"
]
