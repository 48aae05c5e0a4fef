#!/usr/bin/env python3
"""
Mesh Test Harness - Programmatic Example

Creates the topology from harness.yaml, wires federation, runs the traffic
suite across every member and tears everything down again.
"""

import asyncio
import tempfile
from pathlib import Path

from meshharness.cli import Harness, build_test_environment
from meshharness.config import load_harness_document, load_settings
from meshharness.utils.logging import setup_logging


CONFIG = Path(__file__).with_name("harness.yaml")


async def main():
    settings = load_settings()
    setup_logging(log_level="INFO", structured=False)
    harness = Harness(settings)
    document = load_harness_document(CONFIG)
    topology = document.topology

    print("=== Creating topology ===")
    created = await harness.topology_manager.create_topology(topology)
    print(f"✓ Created clusters: {', '.join(created)}")

    try:
        print("=== Configuring federation ===")
        statuses = await harness.federation.configure(topology)
        for name, status in statuses.items():
            print(f"✓ {name}: {status.type} discovery {status.state.value}")

        print("=== Running traffic suite ===")
        with tempfile.TemporaryDirectory() as directory:
            env = await build_test_environment(harness, topology, directory)
            report = await harness.coordinator.execute_multi_cluster_test(
                env, document.multi_cluster_tests["traffic"]
            )

        for cluster, result in report.cluster_results.items():
            print(f"  {cluster}: {result.status.value} ({result.results.passed}/{result.results.total})")
        for check in report.cross_cluster_results:
            print(f"  {check.test_name}: {check.status.value}")
        print(f"Overall: {report.status.value}, {report.overall_results.failed} failed")

    finally:
        print("=== Tearing down ===")
        await harness.federation.teardown(topology)
        failures = await harness.topology_manager.delete_topology(topology)
        for name, error in failures.items():
            print(f"✗ Could not delete {name}: {error}")


if __name__ == "__main__":
    asyncio.run(main())
