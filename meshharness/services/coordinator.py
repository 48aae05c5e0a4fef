"""
Distributed test coordinator.

Fans a multi-cluster test configuration out across the members of a ready
topology, retries runs that fail for environmental reasons, runs the
cross-cluster checks the test type calls for and merges everything into one
report. The execution table is the only shared mutable state and is guarded
by a single lock.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from ..config.settings import CoordinatorConfig
from ..exceptions import (
    CancelledError,
    ConfigInvalidError,
    InternalError,
    NotFoundError,
    OperationTimeoutError
)
from ..executors.base import ExecutorRegistry, TestExecutor
from ..models import (
    ClusterTestResult,
    CrossClusterTestResult,
    ExecutionState,
    MultiClusterTestConfig,
    MultiClusterTestResults,
    MultiClusterTestType,
    TestConfig,
    TestEnvironment,
    TestResults,
    TestStatus,
    TestTarget
)
from ..utils.logging import get_logger, LogContext, set_execution_context, clear_execution_context
from ..utils.metrics import counter, timer
from ..utils.retry import RetryConfig, should_retry


logger = get_logger(__name__)


def plan_cross_cluster_checks(test_type: MultiClusterTestType, targets: List[str]) -> List[Tuple[str, List[str]]]:
    """Source cluster and target clusters of every cross-cluster check.

    traffic checks every ordered pair, failover checks the first target
    against the rest and load-balance checks the first target against all
    targets. Federation and discovery suites have no cross-cluster checks.
    """
    if len(targets) < 2:
        return []
    if test_type == MultiClusterTestType.TRAFFIC:
        return [(source, [target]) for source in targets for target in targets if source != target]
    if test_type == MultiClusterTestType.FAILOVER:
        return [(targets[0], list(targets[1:]))]
    if test_type == MultiClusterTestType.LOAD_BALANCE:
        return [(targets[0], list(targets))]
    return []


@dataclass
class _Execution:
    """Tracked state of one multi-cluster execution."""
    execution_id: str
    config: MultiClusterTestConfig
    targets: List[str]
    state: ExecutionState = ExecutionState.QUEUED
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    active_runs: Dict[str, TestExecutor] = field(default_factory=dict)
    task: Optional[asyncio.Task] = None
    results: Optional[MultiClusterTestResults] = None


@dataclass
class _Outcome:
    """Final outcome of one retried unit of work."""
    status: TestStatus
    results: TestResults
    attempts: int
    error: Optional[str] = None


class DistributedTestCoordinator:
    """Runs multi-cluster test suites and tracks their executions."""

    def __init__(self, executors: ExecutorRegistry, config: Optional[CoordinatorConfig] = None):
        """Initialize the coordinator.

        Args:
            executors: Registry used to resolve each config's executor
            config: Coordinator defaults
        """
        self.executors = executors
        self.config = config or CoordinatorConfig()
        self._executions: Dict[str, _Execution] = {}
        self._lock = asyncio.Lock()

    # Validation

    def apply_defaults(self, config: MultiClusterTestConfig) -> MultiClusterTestConfig:
        """Fill timeout, concurrency and retry delay the config leaves unset."""
        updates = {}
        if 'timeout' not in config.model_fields_set:
            updates['timeout'] = self.config.default_timeout
        if 'max_concurrency' not in config.model_fields_set:
            updates['max_concurrency'] = self.config.default_max_concurrency
        if 'retry_delay' not in config.retry_policy.model_fields_set:
            updates['retry_policy'] = config.retry_policy.model_copy(
                update={'retry_delay': self.config.default_retry_delay}
            )
        return config.model_copy(update=updates) if updates else config

    def validate_config(self, config: MultiClusterTestConfig) -> None:
        """Reject a multi-cluster test configuration before anything runs.

        A disabled configuration is still checked; it is only refused at
        execution time.

        Raises:
            ConfigInvalidError: If the configuration is inconsistent
            ExecutorNotFoundError: If the executor is not registered
        """
        overlap = sorted(set(config.clusters) & set(config.exclude_clusters))
        if overlap:
            raise ConfigInvalidError(
                f"clusters cannot be both included and excluded: {', '.join(overlap)}",
                details={"clusters": overlap}
            )
        if config.max_concurrency < 1:
            raise ConfigInvalidError("max_concurrency must be at least 1")
        self.executors.get(config.executor).validate_config(config.executor_config())

    def resolve_targets(self, env: TestEnvironment, config: MultiClusterTestConfig) -> List[str]:
        """Target clusters in topology order.

        Raises:
            ConfigInvalidError: If an included cluster is not a member or nothing remains
        """
        members = env.cluster_names()
        if config.clusters:
            unknown = sorted(set(config.clusters) - set(members))
            if unknown:
                raise ConfigInvalidError(
                    f"test targets clusters outside the topology: {', '.join(unknown)}",
                    details={"unknown_clusters": unknown, "members": members}
                )
            candidates = [name for name in members if name in config.clusters]
        else:
            candidates = members

        targets = [name for name in candidates if name not in config.exclude_clusters]
        if not targets:
            raise ConfigInvalidError(
                f"no target clusters remain for {config.type.value} tests",
                details={"members": members, "excluded": list(config.exclude_clusters)}
            )
        return targets

    # Execution lifecycle

    async def execute_multi_cluster_test(self, env: TestEnvironment,
                                         config: MultiClusterTestConfig) -> MultiClusterTestResults:
        """Run a multi-cluster test configuration to completion.

        Raises:
            ConfigInvalidError: If the config is disabled, invalid or resolves no targets
        """
        execution_id = await self.submit(env, config)
        return await self.wait(execution_id)

    async def submit(self, env: TestEnvironment, config: MultiClusterTestConfig) -> str:
        """Register an execution and start it in the background.

        Returns:
            The execution id, usable with ``wait`` and ``cancel_execution``
        """
        if not config.enabled:
            raise ConfigInvalidError(
                f"{config.type.value} multi-cluster tests are disabled",
                details={"test_type": config.type.value}
            )
        config = self.apply_defaults(config)
        self.validate_config(config)
        targets = self.resolve_targets(env, config)

        execution = _Execution(
            execution_id=f"mc-{config.type.value}-{uuid.uuid4().hex[:8]}",
            config=config,
            targets=targets
        )
        async with self._lock:
            self._executions[execution.execution_id] = execution
        execution.task = asyncio.create_task(self._run(execution, env))

        logger.info(f"Queued execution {execution.execution_id} on clusters {', '.join(targets)}")
        counter('coordinator.execution.submitted', 1, tags={'type': config.type.value})
        return execution.execution_id

    async def wait(self, execution_id: str) -> MultiClusterTestResults:
        """Wait for an execution to finish and return its report."""
        execution = await self._get(execution_id)
        return await execution.task

    async def cancel_execution(self, execution_id: str) -> ExecutionState:
        """Stop scheduling work for an execution.

        Runs that were already dispatched are signalled but not interrupted;
        no further per-cluster run, retry or cross-cluster check starts.

        Returns:
            The execution's state after the request

        Raises:
            NotFoundError: If the execution is unknown
        """
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                raise NotFoundError("execution", execution_id)
            if execution.state.terminal:
                logger.info(f"Execution {execution_id} already {execution.state.value}, nothing to cancel")
                return execution.state
            execution.cancel_event.set()
            # cancelled is only entered from running; a queued execution dispatches nothing
            if execution.state == ExecutionState.QUEUED:
                execution.state = ExecutionState.RUNNING
            execution.state = ExecutionState.CANCELLED
            runs = list(execution.active_runs.items())

        for run_id, executor in runs:
            await executor.cancel(run_id)

        logger.info(f"Cancellation requested for execution {execution_id}")
        counter('coordinator.execution.cancelled', 1)
        return execution.state

    async def get_execution_status(self, execution_id: str) -> ExecutionState:
        """Current state of an execution.

        Raises:
            NotFoundError: If the execution is unknown
        """
        return (await self._get(execution_id)).state

    async def get_execution_results(self, execution_id: str) -> Optional[MultiClusterTestResults]:
        """Final report of an execution, or None while it is in flight."""
        return (await self._get(execution_id)).results

    async def list_active_executions(self) -> List[str]:
        async with self._lock:
            return sorted(
                execution_id for execution_id, execution in self._executions.items()
                if not execution.state.terminal
            )

    async def _get(self, execution_id: str) -> _Execution:
        async with self._lock:
            execution = self._executions.get(execution_id)
        if execution is None:
            raise NotFoundError("execution", execution_id)
        return execution

    async def _set_state(self, execution: _Execution, state: ExecutionState) -> None:
        async with self._lock:
            if execution.state.terminal:
                return
            execution.state = state

    # Work

    async def _run(self, execution: _Execution, env: TestEnvironment) -> MultiClusterTestResults:
        config = execution.config
        set_execution_context(execution_id=execution.execution_id)
        await self._set_state(execution, ExecutionState.RUNNING)

        start_time = time.time()
        report = MultiClusterTestResults(
            execution_id=execution.execution_id,
            test_type=config.type,
            status=ExecutionState.RUNNING,
            start_time=datetime.utcnow()
        )
        semaphore = asyncio.Semaphore(config.max_concurrency)

        try:
            with LogContext("execute_multi_cluster_test", execution_id=execution.execution_id,
                            test_type=config.type.value, clusters=len(execution.targets)):
                cluster_results = await self._fan_out(
                    config,
                    [partial(self._run_on_cluster, execution, env, cluster, semaphore)
                     for cluster in execution.targets]
                )
                report.cluster_results = {result.cluster: result for result in cluster_results}

                checks = plan_cross_cluster_checks(config.type, execution.targets)
                if checks and not execution.cancel_event.is_set():
                    report.cross_cluster_results = await self._fan_out(
                        config,
                        [partial(self._run_cross_cluster, execution, env, source, targets, semaphore)
                         for source, targets in checks]
                    )

            report.end_time = datetime.utcnow()
            report.total_duration = time.time() - start_time
            report.aggregate()
            report.status = self._final_state(execution, report)
        except Exception as e:
            async with self._lock:
                if not execution.state.terminal:
                    execution.state = ExecutionState.ERROR
            counter('coordinator.execution.aborted', 1, tags={'type': config.type.value})
            raise InternalError(
                f"execution {execution.execution_id} aborted: {e}",
                details={"execution_id": execution.execution_id},
                cause=e
            )
        finally:
            clear_execution_context()

        async with self._lock:
            if execution.state != ExecutionState.CANCELLED:
                execution.state = report.status
            report.status = execution.state
            execution.results = report

        logger.info(
            f"Execution {execution.execution_id} {report.status.value}: "
            f"{report.overall_results.passed} passed, {report.overall_results.failed} failed, "
            f"{report.overall_results.skipped} skipped in {report.total_duration:.1f}s"
        )
        counter(f'coordinator.execution.{report.status.value}', 1, tags={'type': config.type.value})
        timer('coordinator.execution.duration_ms', report.total_duration * 1000, tags={'type': config.type.value})
        return report

    async def _fan_out(self, config: MultiClusterTestConfig, units: List[Callable[[], Awaitable]]) -> list:
        """Run units concurrently under the semaphore, or one after another.

        Each unit is a factory; its coroutine is only created when it is dispatched.
        """
        if config.parallel:
            return list(await asyncio.gather(*(unit() for unit in units)))
        results = []
        for unit in units:
            results.append(await unit())
        return results

    def _final_state(self, execution: _Execution, report: MultiClusterTestResults) -> ExecutionState:
        if execution.cancel_event.is_set():
            return ExecutionState.CANCELLED
        statuses = [result.status for result in report.cluster_results.values()]
        statuses.extend(result.status for result in report.cross_cluster_results)
        if TestStatus.ERROR in statuses:
            return ExecutionState.ERROR
        if report.overall_results.failed > 0:
            return ExecutionState.FAILED
        return ExecutionState.PASSED

    async def _run_on_cluster(self, execution: _Execution, env: TestEnvironment,
                              cluster: str, semaphore: asyncio.Semaphore) -> ClusterTestResult:
        async with semaphore:
            outcome = await self._run_with_retry(
                execution, env.target(cluster), execution.config.executor_config(), cluster
            )
        return ClusterTestResult(
            cluster=cluster,
            status=outcome.status,
            results=outcome.results,
            attempts=outcome.attempts,
            error=outcome.error
        )

    async def _run_cross_cluster(self, execution: _Execution, env: TestEnvironment, source: str,
                                 targets: List[str], semaphore: asyncio.Semaphore) -> CrossClusterTestResult:
        config = execution.config
        test_name = f"{config.type.value}-{source}-to-{'-'.join(targets)}"
        target = env.target(source, env={
            "MESH_SOURCE_CLUSTER": source,
            "MESH_TARGET_CLUSTERS": ",".join(targets),
            "MESH_TEST_TYPE": config.type.value,
        })

        start_time = time.time()
        async with semaphore:
            outcome = await self._run_with_retry(execution, target, config.executor_config(), test_name)
        passed = outcome.status == TestStatus.PASSED
        return CrossClusterTestResult(
            test_name=test_name,
            source_cluster=source,
            target_clusters=targets,
            status=outcome.status,
            results=outcome.results,
            duration=time.time() - start_time,
            error=outcome.error,
            traffic_validated=passed,
            service_discovery=passed
        )

    async def _run_with_retry(self, execution: _Execution, target: TestTarget,
                              test_config: TestConfig, label: str) -> _Outcome:
        """Run one unit, retrying only transient failures.

        Only the final attempt's counts are reported.
        """
        config = execution.config
        policy = RetryConfig.fixed(config.retry_policy.max_retries, config.retry_policy.retry_delay)
        executor = self.executors.get(config.executor)
        attempts = 0

        while True:
            if execution.cancel_event.is_set():
                return _Outcome(TestStatus.CANCELLED, TestResults(), attempts, "cancelled before dispatch")

            attempts += 1
            run_id = f"{execution.execution_id}-{label}-{attempts}"
            execution.active_runs[run_id] = executor
            try:
                results = await asyncio.wait_for(
                    executor.execute(target, test_config, execution_id=run_id),
                    timeout=config.timeout
                )
            except asyncio.TimeoutError:
                error = OperationTimeoutError(f"{config.executor} tests on {label}", config.timeout)
                logger.error(f"Run {run_id} timed out after {config.timeout}s")
                counter('coordinator.run.timeouts', 1, tags={'executor': config.executor})
                return _Outcome(TestStatus.ERROR, TestResults(), attempts, error.message)
            except CancelledError as e:
                return _Outcome(TestStatus.CANCELLED, TestResults(), attempts, e.message)
            except Exception as e:
                if attempts < policy.max_attempts and should_retry(e, policy):
                    logger.warning(
                        f"Run {run_id} failed transiently, retrying in {config.retry_policy.retry_delay}s "
                        f"(attempt {attempts}/{policy.max_attempts}): {e}"
                    )
                    counter('coordinator.run.retries', 1, tags={'executor': config.executor})
                    await self._pause(execution, config.retry_policy.retry_delay)
                    continue
                logger.error(f"Run {run_id} could not be carried out after {attempts} attempt(s): {e}")
                return _Outcome(TestStatus.ERROR, TestResults(), attempts, str(e))
            finally:
                execution.active_runs.pop(run_id, None)

            status = TestStatus.FAILED if results.failed else TestStatus.PASSED
            return _Outcome(status, results, attempts)

    async def _pause(self, execution: _Execution, delay: float) -> None:
        """Sleep between attempts, waking early on cancellation."""
        try:
            await asyncio.wait_for(execution.cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
