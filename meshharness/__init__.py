"""
Mesh test harness.

Provisions multi-cluster Kubernetes topologies, wires cross-cluster
federation and service discovery onto them, and runs test suites across
their members.
"""

__version__ = "0.1.0"
