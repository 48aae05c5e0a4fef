"""
Command line interface for the mesh test harness.

Every command prints a JSON document on stdout; logs go to stderr. Exit codes:
0 on success, 1 when tests ran and some failed, 2 when an operation failed or
tests could not run.
"""

import argparse
import asyncio
import json
import sys
import tempfile
from typing import Any, Dict, List, Optional

import yaml

from .config import HarnessDocument, Settings, load_harness_document, load_settings, save_config_file
from .connectivity import create_connectivity_registry
from .discovery import create_discovery_registry
from .exceptions import ConfigInvalidError, HarnessError, InternalError
from .executors import create_executor_registry
from .models import (
    ClusterConfig,
    ClusterTopology,
    ExecutionState,
    MultiClusterTestConfig,
    TestConfig,
    TestEnvironment,
    TestResults
)
from .providers import create_provider_registry
from .services import DistributedTestCoordinator, FederationConfigurator, NetworkConfigurator, TopologyManager
from .utils.logging import get_logger, setup_logging
from .utils.metrics import set_metrics_enabled


logger = get_logger(__name__)

EXIT_OK = 0
EXIT_TESTS_FAILED = 1
EXIT_ERROR = 2


class Harness:
    """Wires every component from one Settings instance."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.providers = create_provider_registry(settings)
        self.connectivity = create_connectivity_registry(settings)
        self.topology_manager = TopologyManager(self.providers, settings.timeouts, connectivity=self.connectivity)
        self.network = NetworkConfigurator(self.topology_manager)
        self.discovery = create_discovery_registry(settings)
        self.federation = FederationConfigurator(self.topology_manager, self.discovery, settings)
        self.executors = create_executor_registry(settings)
        self.coordinator = DistributedTestCoordinator(self.executors, settings.coordinator)


def emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def parse_options(pairs: Optional[List[str]]) -> Dict[str, Any]:
    """Parse ``key=value`` pairs; values are read as YAML scalars."""
    options = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ConfigInvalidError(f"option '{pair}' must have the form key=value")
        options[key.strip()] = yaml.safe_load(value) if value else ""
    return options


def parse_tags(value: Optional[str]) -> List[str]:
    return [tag.strip() for tag in (value or "").split(",") if tag.strip()]


# Topology commands

async def topology_create(harness: Harness, args) -> int:
    document = load_harness_document(args.config)
    created = await harness.topology_manager.create_topology(document.topology)
    emit({"created": created})
    return EXIT_OK


async def topology_delete(harness: Harness, args) -> int:
    topology = load_harness_document(args.config).topology
    failures = await harness.topology_manager.delete_topology(topology)
    emit({
        "deleted": [name for name in topology.cluster_names() if name not in failures],
        "failures": {name: str(error) for name, error in failures.items()}
    })
    return EXIT_ERROR if failures else EXIT_OK


async def topology_status(harness: Harness, args) -> int:
    topology = load_harness_document(args.config).topology
    status = await harness.topology_manager.get_topology_status(topology)
    emit(status.model_dump(mode="json"))
    return EXIT_OK


async def topology_list(harness: Harness, args) -> int:
    topology = load_harness_document(args.config).topology
    providers = sorted({cluster.provider for cluster in topology.all_clusters()})
    known = {}
    for provider in providers:
        known[provider] = await harness.topology_manager.list_clusters(provider)
    emit({
        "providers": known,
        "members": {
            cluster.name: cluster.name in known[cluster.provider]
            for cluster in topology.all_clusters()
        }
    })
    return EXIT_OK


# Cluster commands

async def cluster_create(harness: Harness, args) -> int:
    fields = {"provider": args.provider, "name": args.name, "options": parse_options(args.option)}
    if args.version:
        fields["version"] = args.version
    try:
        config = ClusterConfig(**fields)
    except ValueError as e:
        raise ConfigInvalidError(str(e), cause=e)
    harness.providers.get(config.provider).validate_config(config)
    await harness.topology_manager.create_cluster(config)
    emit({"created": config.name, "provider": config.provider})
    return EXIT_OK


async def cluster_delete(harness: Harness, args) -> int:
    await harness.topology_manager.delete_cluster(args.provider, args.name)
    emit({"deleted": args.name, "provider": args.provider})
    return EXIT_OK


async def cluster_status(harness: Harness, args) -> int:
    status = await harness.topology_manager.get_cluster_status(args.provider, args.name)
    emit(status.model_dump(mode="json"))
    return EXIT_OK


async def cluster_list(harness: Harness, args) -> int:
    emit({"provider": args.provider, "clusters": await harness.topology_manager.list_clusters(args.provider)})
    return EXIT_OK


# Federation commands

async def federation_configure(harness: Harness, args) -> int:
    topology = load_harness_document(args.config).topology
    statuses = await harness.federation.configure(topology)
    emit({
        "federation": "enabled" if topology.federation.enabled else "disabled",
        "clusters": {name: status.model_dump(mode="json") for name, status in statuses.items()}
    })
    return EXIT_OK


async def federation_teardown(harness: Harness, args) -> int:
    topology = load_harness_document(args.config).topology
    failures = await harness.federation.teardown(topology)
    emit({"failures": {name: str(error) for name, error in failures.items()}})
    return EXIT_ERROR if failures else EXIT_OK


async def federation_status(harness: Harness, args) -> int:
    topology = load_harness_document(args.config).topology
    statuses = await harness.federation.status(topology)
    checks = await harness.federation.health_check(topology)
    emit({
        "clusters": {
            name: {
                "status": status.model_dump(mode="json"),
                "health_checks": [check.model_dump(mode="json") for check in checks.get(name, [])]
            }
            for name, status in statuses.items()
        }
    })
    return EXIT_OK


# Network commands

async def network_configure(harness: Harness, args) -> int:
    topology = load_harness_document(args.config).topology
    statuses = await harness.network.configure(topology)
    emit({
        "connectivity": topology.network.connectivity if topology.network.configured else "none",
        "clusters": {name: status.model_dump(mode="json") for name, status in statuses.items()}
    })
    return EXIT_OK


async def network_teardown(harness: Harness, args) -> int:
    topology = load_harness_document(args.config).topology
    failures = await harness.network.teardown(topology)
    emit({"failures": {name: str(error) for name, error in failures.items()}})
    return EXIT_ERROR if failures else EXIT_OK


async def network_status(harness: Harness, args) -> int:
    topology = load_harness_document(args.config).topology
    statuses = await harness.network.status(topology)
    checks = await harness.network.health_check(topology)
    emit({
        "clusters": {
            name: {
                "status": status.model_dump(mode="json"),
                "health_checks": [check.model_dump(mode="json") for check in checks.get(name, [])]
            }
            for name, status in statuses.items()
        }
    })
    return EXIT_OK


# Test commands

def _with_tags(options: Dict[str, Any], tags: List[str]) -> Dict[str, Any]:
    if not tags:
        return options
    return {**options, "tags": tags}


def select_tests(document: HarnessDocument, args) -> Dict[str, Any]:
    """Enabled test entries after the --name and --type filters."""
    entries = document.multi_cluster_tests if args.multi_cluster else document.tests
    selected = {}
    for name, config in entries.items():
        if args.name and name != args.name:
            continue
        test_type = config.type.value if args.multi_cluster else config.type
        if args.type and test_type != args.type:
            continue
        if not config.enabled:
            logger.info(f"Skipping disabled test '{name}'")
            continue
        selected[name] = config
    if not selected:
        raise ConfigInvalidError("no enabled tests match the selection",
                                 details={"name": args.name, "type": args.type})
    return selected


async def build_test_environment(harness: Harness, topology: ClusterTopology, directory: str) -> TestEnvironment:
    """Write each running member's kubeconfig to ``directory``."""
    kubeconfigs = await harness.topology_manager.get_kubeconfigs(topology)
    if topology.primary.name not in kubeconfigs:
        raise ConfigInvalidError(f"primary cluster '{topology.primary.name}' is not reachable")
    paths = {}
    for name, kubeconfig in kubeconfigs.items():
        handle = harness.topology_manager.open_handle(name, kubeconfig)
        paths[name] = handle.write_kubeconfig(directory)
    return TestEnvironment(topology=topology, kubeconfigs=paths)


async def run_single_cluster_tests(harness: Harness, env: TestEnvironment,
                                   tests: Dict[str, TestConfig], tags: List[str]) -> Dict[str, Any]:
    report = {}
    target = env.target(env.topology.primary.name)
    for name, config in tests.items():
        config = config.model_copy(update={"options": _with_tags(config.options, tags)})
        try:
            results = await harness.executors.get(config.type).execute(target, config)
            report[name] = {"status": "failed" if results.failed else "passed",
                            "results": results.model_dump(mode="json")}
        except HarnessError as e:
            logger.error(f"Test '{name}' could not run: {e.message}")
            report[name] = {"status": "error", "error": e.to_dict()}
    return report


async def run_multi_cluster_tests(harness: Harness, env: TestEnvironment,
                                  tests: Dict[str, MultiClusterTestConfig], tags: List[str],
                                  parallel: bool) -> Dict[str, Any]:
    report = {}
    for name, config in tests.items():
        updates: Dict[str, Any] = {"options": _with_tags(config.options, tags)}
        if parallel:
            updates["parallel"] = True
        config = config.model_copy(update=updates)
        try:
            results = await harness.coordinator.execute_multi_cluster_test(env, config)
            report[name] = {"status": results.status.value, "results": results.model_dump(mode="json")}
        except HarnessError as e:
            logger.error(f"Multi-cluster test '{name}' could not run: {e.message}")
            report[name] = {"status": ExecutionState.ERROR.value, "error": e.to_dict()}
    return report


def exit_code_for(report: Dict[str, Any]) -> int:
    statuses = [entry["status"] for entry in report.values()]
    if any(status in ("error", "cancelled") for status in statuses):
        return EXIT_ERROR
    if any(status == "failed" for status in statuses):
        return EXIT_TESTS_FAILED
    return EXIT_OK


async def run_tests(harness: Harness, args) -> int:
    document = load_harness_document(args.config)
    tests = select_tests(document, args)
    tags = parse_tags(args.tags)

    with tempfile.TemporaryDirectory(prefix="meshharness-") as directory:
        env = await build_test_environment(harness, document.topology, directory)
        if args.multi_cluster:
            report = await run_multi_cluster_tests(harness, env, tests, tags, args.parallel)
        else:
            report = await run_single_cluster_tests(harness, env, tests, tags)

    counts = [
        entry["results"]["overall_results"] if args.multi_cluster else entry["results"]
        for entry in report.values() if "results" in entry
    ]
    overall = TestResults.sum(TestResults.model_validate(count) for count in counts)
    output = {"tests": report, "overall": overall.model_dump(mode="json")}
    if args.report:
        save_config_file(output, args.report)
    emit(output)
    return exit_code_for(report)


# Parser

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="meshharness",
        description="Multi-cluster Kubernetes test topologies and distributed test runs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  meshharness topology create -c harness.yaml
  meshharness federation configure -c harness.yaml
  meshharness network configure -c harness.yaml
  meshharness test run -c harness.yaml --multi-cluster --type traffic --parallel
  meshharness cluster create --provider kind --name dev --option nodes=3
        """
    )
    parser.add_argument("--settings-env-file", metavar="FILE", help="Read settings from this .env file")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        help="Override the configured log level")
    parser.add_argument("--plain-logs", action="store_true", help="Plain text instead of JSON log records")

    groups = parser.add_subparsers(dest="group", required=True)

    topology = groups.add_parser("topology", help="Manage a whole topology").add_subparsers(dest="command", required=True)
    for command, handler, help_text in (
        ("create", topology_create, "Create the primary, then every remote"),
        ("delete", topology_delete, "Delete every remote, then the primary"),
        ("status", topology_status, "Report per-cluster and overall health"),
        ("list", topology_list, "List provider clusters and topology membership"),
    ):
        sub = topology.add_parser(command, help=help_text)
        sub.add_argument("-c", "--config", required=True, help="Harness configuration document")
        sub.set_defaults(handler=handler)

    cluster = groups.add_parser("cluster", help="Manage single clusters").add_subparsers(dest="command", required=True)
    create = cluster.add_parser("create", help="Create one cluster")
    create.add_argument("--provider", required=True)
    create.add_argument("--name", required=True)
    create.add_argument("--version", help="Kubernetes version, e.g. 1.27.0")
    create.add_argument("--option", action="append", metavar="KEY=VALUE", help="Provider option, repeatable")
    create.set_defaults(handler=cluster_create)
    for command, handler in (("delete", cluster_delete), ("status", cluster_status)):
        sub = cluster.add_parser(command, help=f"{command.capitalize()} one cluster")
        sub.add_argument("--provider", required=True)
        sub.add_argument("--name", required=True)
        sub.set_defaults(handler=handler)
    listing = cluster.add_parser("list", help="List every cluster a provider knows")
    listing.add_argument("--provider", required=True)
    listing.set_defaults(handler=cluster_list)

    federation = groups.add_parser("federation", help="Wire cross-cluster federation").add_subparsers(dest="command", required=True)
    for command, handler, help_text in (
        ("configure", federation_configure, "Install federation settings and discovery"),
        ("teardown", federation_teardown, "Remove federation settings and discovery"),
        ("status", federation_status, "Report discovery status and health checks"),
    ):
        sub = federation.add_parser(command, help=help_text)
        sub.add_argument("-c", "--config", required=True, help="Harness configuration document")
        sub.set_defaults(handler=handler)

    network = groups.add_parser("network", help="Wire cross-cluster connectivity").add_subparsers(dest="command", required=True)
    for command, handler, help_text in (
        ("configure", network_configure, "Apply network policies on every member"),
        ("teardown", network_teardown, "Remove network policies from every member"),
        ("status", network_status, "Report connectivity status and health checks"),
    ):
        sub = network.add_parser(command, help=help_text)
        sub.add_argument("-c", "--config", required=True, help="Harness configuration document")
        sub.set_defaults(handler=handler)

    test = groups.add_parser("test", help="Run tests").add_subparsers(dest="command", required=True)
    run = test.add_parser("run", help="Run configured tests against the topology")
    run.add_argument("-c", "--config", required=True, help="Harness configuration document")
    run.add_argument("--type", help="Only run tests of this type")
    run.add_argument("--tags", help="Comma-separated tags passed to the executor")
    run.add_argument("--parallel", action="store_true", help="Fan multi-cluster runs out in parallel")
    run.add_argument("--multi-cluster", action="store_true", help="Run multi_cluster_tests through the coordinator")
    run.add_argument("--name", help="Only run the named test entry")
    run.add_argument("--report", metavar="FILE", help="Also write the report to a .json or .yaml file")
    run.set_defaults(handler=run_tests)

    return parser


async def dispatch(harness: Harness, args) -> int:
    try:
        return await args.handler(harness, args)
    except HarnessError as e:
        logger.error(f"{args.group} {args.command} failed: {e.message}")
        emit(e.to_dict())
        return EXIT_ERROR
    except Exception as e:
        logger.exception(f"{args.group} {args.command} failed unexpectedly")
        emit(InternalError(str(e), cause=e).to_dict())
        return EXIT_ERROR


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(env_file=args.settings_env_file)
    except ValueError as e:
        print(f"Invalid settings: {e}", file=sys.stderr)
        return EXIT_ERROR

    setup_logging(
        log_level=args.log_level or settings.logging.level.value,
        structured=settings.logging.structured and not args.plain_logs,
        log_format=settings.logging.format,
        debug=settings.debug
    )
    set_metrics_enabled(settings.metrics.enabled)

    try:
        return asyncio.run(dispatch(Harness(settings), args))
    except KeyboardInterrupt:
        print("Operation cancelled by user", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
