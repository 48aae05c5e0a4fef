"""
Tests for the distributed test coordinator.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from meshharness.config.settings import CoordinatorConfig
from meshharness.exceptions import (
    ClusterUnhealthyError,
    CommandNotFoundError,
    ConfigInvalidError,
    ExecutorNotFoundError,
    InternalError,
    NotFoundError
)
from meshharness.executors.base import ExecutorRegistry
from meshharness.models import (
    ExecutionState,
    MultiClusterTestConfig,
    MultiClusterTestType,
    TestResults,
    TestStatus
)
from meshharness.services import DistributedTestCoordinator, plan_cross_cluster_checks

from conftest import ScriptedExecutor


def mc_config(test_type="federation", **fields):
    return MultiClusterTestConfig(type=test_type, executor="scripted", **fields)


def unhealthy(cluster):
    return ClusterUnhealthyError(cluster, "api server not ready")


@pytest.fixture
def coordinator(executor_registry, coordinator_config):
    return DistributedTestCoordinator(executor_registry, coordinator_config)


def scripted_coordinator(coordinator_config, executor):
    registry = ExecutorRegistry()
    registry.register(executor)
    return DistributedTestCoordinator(registry, coordinator_config)


class ConcurrencyTrackingExecutor(ScriptedExecutor):
    """Records the highest number of runs in flight at once."""

    def __init__(self, delay):
        super().__init__(delay=delay)
        self.in_flight = 0
        self.peak = 0

    async def run(self, target, options):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            return await super().run(target, options)
        finally:
            self.in_flight -= 1


@pytest.mark.unit
class TestPlanning:
    """Test validation, target resolution and cross-cluster planning."""

    def test_plan_traffic_checks_every_ordered_pair(self):
        checks = plan_cross_cluster_checks(MultiClusterTestType.TRAFFIC, ["a", "b", "c"])

        assert len(checks) == 6
        assert ("a", ["b"]) in checks
        assert ("b", ["a"]) in checks
        assert all(source not in targets for source, targets in checks)

    def test_plan_failover_and_load_balance(self):
        assert plan_cross_cluster_checks(MultiClusterTestType.FAILOVER, ["a", "b", "c"]) == [("a", ["b", "c"])]
        assert plan_cross_cluster_checks(MultiClusterTestType.LOAD_BALANCE, ["a", "b"]) == [("a", ["a", "b"])]

    @pytest.mark.parametrize("test_type", list(MultiClusterTestType))
    def test_single_target_has_no_checks(self, test_type):
        assert plan_cross_cluster_checks(test_type, ["a"]) == []

    def test_federation_and_discovery_have_no_checks(self):
        assert plan_cross_cluster_checks(MultiClusterTestType.FEDERATION, ["a", "b"]) == []
        assert plan_cross_cluster_checks(MultiClusterTestType.DISCOVERY, ["a", "b"]) == []

    def test_resolve_targets_keeps_topology_order(self, coordinator, test_environment):
        targets = coordinator.resolve_targets(test_environment, mc_config(clusters=["remote-b", "primary"]))
        assert targets == ["primary", "remote-b"]

    def test_resolve_targets_excludes(self, coordinator, test_environment):
        targets = coordinator.resolve_targets(test_environment, mc_config(exclude_clusters=["remote-a"]))
        assert targets == ["primary", "remote-b"]

    def test_resolve_targets_unknown_cluster(self, coordinator, test_environment):
        with pytest.raises(ConfigInvalidError, match="remote-z"):
            coordinator.resolve_targets(test_environment, mc_config(clusters=["remote-z"]))

    def test_resolve_targets_nothing_left(self, coordinator, test_environment):
        config = mc_config(exclude_clusters=["primary", "remote-a", "remote-b"])
        with pytest.raises(ConfigInvalidError, match="no target clusters"):
            coordinator.resolve_targets(test_environment, config)

    def test_overlapping_include_and_exclude(self, coordinator):
        with pytest.raises(ConfigInvalidError, match="remote-a"):
            coordinator.validate_config(mc_config(clusters=["remote-a"], exclude_clusters=["remote-a"]))

    def test_unknown_executor(self, coordinator):
        config = MultiClusterTestConfig(type="federation", executor="jest")
        with pytest.raises(ExecutorNotFoundError):
            coordinator.validate_config(config)

    def test_apply_defaults_fills_unset_fields(self, executor_registry):
        coordinator = DistributedTestCoordinator(
            executor_registry,
            CoordinatorConfig(default_timeout=600, default_max_concurrency=5, default_retry_delay=2)
        )

        config = coordinator.apply_defaults(mc_config(timeout=90, retry_policy={"max_retries": 1}))

        assert config.timeout == 90
        assert config.max_concurrency == 5
        assert config.retry_policy.max_retries == 1
        assert config.retry_policy.retry_delay == 2

    def test_apply_defaults_keeps_explicit_values(self, coordinator):
        config = mc_config(timeout=90, max_concurrency=2, retry_policy={"retry_delay": 7})
        assert coordinator.apply_defaults(config) == config


@pytest.mark.unit
class TestExecution:
    """Test running multi-cluster suites."""

    async def test_runs_every_target(self, coordinator, scripted_executor, test_environment):
        report = await coordinator.execute_multi_cluster_test(test_environment, mc_config())

        assert report.status == ExecutionState.PASSED
        assert report.execution_id.startswith("mc-federation-")
        assert list(report.cluster_results) == ["primary", "remote-a", "remote-b"]
        assert report.cross_cluster_results == []
        assert scripted_executor.calls == ["primary", "remote-a", "remote-b"]
        assert scripted_executor.targets[0].kubeconfig == "/tmp/primary.kubeconfig"

    async def test_overall_results_are_the_sum(self, coordinator, test_environment):
        report = await coordinator.execute_multi_cluster_test(test_environment, mc_config("traffic", parallel=True))

        parts = [result.results for result in report.cluster_results.values()]
        parts += [result.results for result in report.cross_cluster_results]
        expected = TestResults.sum(parts)

        assert len(report.cross_cluster_results) == 6
        assert report.overall_results.total == expected.total == 18
        assert report.overall_results.passed == expected.passed
        assert report.overall_results.failed == expected.failed == 0
        assert report.overall_results.duration == report.total_duration

    async def test_cross_cluster_check_target(self, coordinator, scripted_executor, test_environment):
        report = await coordinator.execute_multi_cluster_test(test_environment, mc_config("failover"))

        check = report.cross_cluster_results[0]
        assert check.test_name == "failover-primary-to-remote-a-remote-b"
        assert check.traffic_validated
        target = scripted_executor.targets[-1]
        assert target.cluster == "primary"
        assert target.env == {
            "MESH_SOURCE_CLUSTER": "primary",
            "MESH_TARGET_CLUSTERS": "remote-a,remote-b",
            "MESH_TEST_TYPE": "failover",
        }

    async def test_failing_tests_mark_execution_failed(self, coordinator_config, test_environment):
        executor = ScriptedExecutor({"remote-a": [TestResults(total=2, passed=1, failed=1)]})
        coordinator = scripted_coordinator(coordinator_config, executor)

        report = await coordinator.execute_multi_cluster_test(
            test_environment, mc_config(retry_policy={"max_retries": 3})
        )

        assert report.status == ExecutionState.FAILED
        assert report.cluster_results["remote-a"].status == TestStatus.FAILED
        assert report.cluster_results["remote-a"].attempts == 1
        assert executor.calls.count("remote-a") == 1

    async def test_transient_failure_retried_invisibly(self, coordinator_config, test_environment):
        executor = ScriptedExecutor({
            "remote-a": [unhealthy("remote-a"), TestResults(total=3, passed=2, failed=1)],
        })
        coordinator = scripted_coordinator(coordinator_config, executor)

        report = await coordinator.execute_multi_cluster_test(
            test_environment, mc_config(retry_policy={"max_retries": 2})
        )

        result = report.cluster_results["remote-a"]
        assert result.attempts == 2
        assert result.status == TestStatus.FAILED
        assert result.error is None
        assert (result.results.total, result.results.failed) == (3, 1)
        assert report.overall_results.total == 7

    async def test_retries_exhausted(self, coordinator_config, test_environment):
        executor = ScriptedExecutor({"primary": [unhealthy("primary")] * 3})
        coordinator = scripted_coordinator(coordinator_config, executor)

        report = await coordinator.execute_multi_cluster_test(
            test_environment, mc_config(retry_policy={"max_retries": 2})
        )

        result = report.cluster_results["primary"]
        assert result.attempts == 3
        assert result.status == TestStatus.ERROR
        assert "api server not ready" in result.error
        assert report.status == ExecutionState.ERROR

    async def test_connection_error_from_run_retried(self, coordinator_config, test_environment):
        executor = ScriptedExecutor({
            "primary": [ConnectionError("connection refused"), TestResults(total=1, passed=1)],
        })
        coordinator = scripted_coordinator(coordinator_config, executor)

        report = await coordinator.execute_multi_cluster_test(
            test_environment, mc_config(clusters=["primary"], retry_policy={"max_retries": 2})
        )

        result = report.cluster_results["primary"]
        assert result.attempts == 2
        assert result.status == TestStatus.PASSED
        assert result.results.total == 1
        assert report.status == ExecutionState.PASSED

    async def test_os_error_from_run_retried_until_exhausted(self, coordinator_config, test_environment):
        executor = ScriptedExecutor({"primary": [OSError("no route to host")] * 2})
        coordinator = scripted_coordinator(coordinator_config, executor)

        report = await coordinator.execute_multi_cluster_test(
            test_environment, mc_config(clusters=["primary"], retry_policy={"max_retries": 1})
        )

        result = report.cluster_results["primary"]
        assert result.attempts == 2
        assert result.status == TestStatus.ERROR
        assert "no route to host" in result.error

    async def test_missing_binary_not_retried(self, coordinator_config, test_environment):
        executor = ScriptedExecutor({"primary": [CommandNotFoundError("go")]})
        coordinator = scripted_coordinator(coordinator_config, executor)

        report = await coordinator.execute_multi_cluster_test(
            test_environment, mc_config(clusters=["primary"], retry_policy={"max_retries": 3})
        )

        assert report.cluster_results["primary"].attempts == 1
        assert executor.calls == ["primary"]

    async def test_sequential_units_created_on_dispatch(self, coordinator, test_environment):
        run_on_cluster = AsyncMock(side_effect=RuntimeError("scheduler broke"))
        coordinator._run_on_cluster = run_on_cluster

        with pytest.raises(InternalError):
            await coordinator.execute_multi_cluster_test(test_environment, mc_config())

        assert run_on_cluster.call_count == 1

    async def test_non_transient_error_not_retried(self, coordinator_config, test_environment):
        executor = ScriptedExecutor({"primary": [ValueError("malformed report")]})
        coordinator = scripted_coordinator(coordinator_config, executor)

        report = await coordinator.execute_multi_cluster_test(
            test_environment, mc_config(retry_policy={"max_retries": 2})
        )

        assert report.cluster_results["primary"].attempts == 1
        assert report.cluster_results["primary"].status == TestStatus.ERROR
        assert report.cluster_results["remote-a"].status == TestStatus.PASSED

    async def test_error_outranks_failure(self, coordinator_config, test_environment):
        executor = ScriptedExecutor({
            "primary": [ValueError("malformed report")],
            "remote-a": [TestResults(total=1, failed=1)],
        })
        coordinator = scripted_coordinator(coordinator_config, executor)

        report = await coordinator.execute_multi_cluster_test(test_environment, mc_config())

        assert report.status == ExecutionState.ERROR

    async def test_timeout_is_an_error(self, coordinator_config, test_environment):
        coordinator = scripted_coordinator(coordinator_config, ScriptedExecutor(delay=1))

        report = await coordinator.execute_multi_cluster_test(
            test_environment, mc_config(clusters=["primary"], timeout=0.05, retry_policy={"max_retries": 2})
        )

        result = report.cluster_results["primary"]
        assert result.status == TestStatus.ERROR
        assert result.attempts == 1
        assert "timed out" in result.error

    async def test_disabled_config_refused(self, coordinator, scripted_executor, test_environment):
        with pytest.raises(ConfigInvalidError, match="disabled"):
            await coordinator.execute_multi_cluster_test(test_environment, mc_config(enabled=False))

        assert scripted_executor.calls == []

    async def test_parallel_runs_respect_concurrency(self, coordinator_config, test_environment):
        executor = ConcurrencyTrackingExecutor(delay=0.02)
        coordinator = scripted_coordinator(coordinator_config, executor)

        await coordinator.execute_multi_cluster_test(
            test_environment, mc_config("traffic", parallel=True, max_concurrency=2)
        )

        assert len(executor.calls) == 9
        assert executor.peak == 2


@pytest.mark.unit
class TestExecutionTracking:
    """Test submission, status queries and cancellation."""

    async def test_status_and_results(self, coordinator, test_environment):
        execution_id = await coordinator.submit(test_environment, mc_config())
        report = await coordinator.wait(execution_id)

        assert await coordinator.get_execution_status(execution_id) == ExecutionState.PASSED
        assert await coordinator.get_execution_results(execution_id) is report

    async def test_unknown_execution(self, coordinator):
        with pytest.raises(NotFoundError):
            await coordinator.get_execution_status("mc-traffic-missing")
        with pytest.raises(NotFoundError):
            await coordinator.cancel_execution("mc-traffic-missing")

    async def test_active_executions(self, coordinator_config, test_environment):
        coordinator = scripted_coordinator(coordinator_config, ScriptedExecutor(delay=0.05))

        execution_id = await coordinator.submit(test_environment, mc_config())
        assert await coordinator.list_active_executions() == [execution_id]
        assert await coordinator.get_execution_results(execution_id) is None

        await coordinator.wait(execution_id)
        assert await coordinator.list_active_executions() == []

    async def test_cancel_stops_further_dispatch(self, coordinator_config, test_environment):
        executor = ScriptedExecutor(delay=0.2)
        coordinator = scripted_coordinator(coordinator_config, executor)

        execution_id = await coordinator.submit(test_environment, mc_config("traffic"))
        await asyncio.sleep(0.05)
        state = await coordinator.cancel_execution(execution_id)
        report = await coordinator.wait(execution_id)

        assert state == ExecutionState.CANCELLED
        assert report.status == ExecutionState.CANCELLED
        assert executor.calls == ["primary"]
        assert report.cluster_results["remote-a"].status == TestStatus.CANCELLED
        assert report.cluster_results["remote-a"].error == "cancelled before dispatch"
        assert report.cross_cluster_results == []

    async def test_cancel_queued_execution(self, coordinator, scripted_executor, test_environment):
        execution_id = await coordinator.submit(test_environment, mc_config("traffic"))
        assert await coordinator.get_execution_status(execution_id) == ExecutionState.QUEUED

        state = await coordinator.cancel_execution(execution_id)
        report = await coordinator.wait(execution_id)

        assert state == ExecutionState.CANCELLED
        assert report.status == ExecutionState.CANCELLED
        assert scripted_executor.calls == []
        assert all(result.status == TestStatus.CANCELLED for result in report.cluster_results.values())

    async def test_abort_keeps_cancelled_state(self, coordinator, test_environment):
        coordinator._fan_out = AsyncMock(side_effect=RuntimeError("scheduler broke"))
        execution_id = await coordinator.submit(test_environment, mc_config())
        await coordinator.cancel_execution(execution_id)

        with pytest.raises(InternalError):
            await coordinator.wait(execution_id)

        assert await coordinator.get_execution_status(execution_id) == ExecutionState.CANCELLED

    async def test_abort_marks_running_execution_error(self, coordinator, test_environment):
        coordinator._fan_out = AsyncMock(side_effect=RuntimeError("scheduler broke"))
        execution_id = await coordinator.submit(test_environment, mc_config())

        with pytest.raises(InternalError):
            await coordinator.wait(execution_id)

        assert await coordinator.get_execution_status(execution_id) == ExecutionState.ERROR

    async def test_cancel_finished_execution_returns_its_state(self, coordinator, test_environment):
        execution_id = await coordinator.submit(test_environment, mc_config())
        await coordinator.wait(execution_id)

        assert await coordinator.cancel_execution(execution_id) == ExecutionState.PASSED
