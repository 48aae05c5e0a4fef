"""
Test executor contract and registry.

An executor runs one test suite against one target cluster as an external
process and parses the counts out of its output. Failing tests are a normal
result, not an exception; exceptions are reserved for runs that could not
be carried out.
"""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError

from ..config.settings import ExecutorConfig
from ..exceptions import (
    CancelledError,
    ConfigInvalidError,
    ErrorCode,
    ExecutorNotFoundError,
    HarnessError,
    NotFoundError,
    TestExecutionError
)
from ..models import TestConfig, TestResults, TestStatus, TestTarget
from ..utils.logging import get_logger, LogContext
from ..utils.metrics import counter, timer
from ..utils.process import CommandResult


logger = get_logger(__name__)

FINISHED_STATUSES = (TestStatus.PASSED, TestStatus.FAILED, TestStatus.ERROR, TestStatus.CANCELLED)


def classify_run_error(error: Exception) -> ErrorCode:
    """Error code for an unexpected exception raised while a run was in flight.

    Connection and operating system errors come from the environment and are
    worth another attempt; anything else is a broken run.
    """
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCode.NETWORK_ERROR
    return ErrorCode.TEST_EXECUTION_FAILED


class TestExecutor(ABC):
    """Runs test suites of one framework against a single cluster."""

    __test__ = False

    #: Executor identifier the executor is registered under
    type: str = ""
    #: Pydantic model describing the recognized options
    options_model: Type[BaseModel] = BaseModel
    #: Finished runs kept for ``get_status``; older ones are forgotten
    max_history: int = 100

    def __init__(self, executor_config: Optional[ExecutorConfig] = None):
        self.executor_config = executor_config or ExecutorConfig()
        self._executions: Dict[str, TestStatus] = {}

    def parse_options(self, config: TestConfig) -> BaseModel:
        try:
            return self.options_model.model_validate(config.options)
        except ValidationError as e:
            messages = "; ".join(
                f"{'.'.join(str(p) for p in error['loc']) or 'options'}: {error['msg']}"
                for error in e.errors()
            )
            raise ConfigInvalidError(
                f"{self.type} executor options rejected: {messages}",
                details={"executor": self.type},
                cause=e
            )

    def validate_config(self, config: TestConfig) -> None:
        """Reject a test configuration before anything runs.

        Raises:
            ConfigInvalidError: If the config targets another executor or its options are invalid
        """
        if config.type != self.type:
            raise ConfigInvalidError(
                f"test type '{config.type}' cannot run on the {self.type} executor",
                details={"executor": self.type, "test_type": config.type}
            )
        self.parse_options(config)

    @abstractmethod
    async def run(self, target: TestTarget, options: BaseModel) -> CommandResult:
        """Launch the external test process and wait for it."""

    @abstractmethod
    def parse_output(self, result: CommandResult, options: BaseModel) -> TestResults:
        """Turn process output into counts and artifacts."""

    def new_execution_id(self) -> str:
        return f"{self.type}-{uuid.uuid4().hex[:8]}"

    async def execute(self, target: TestTarget, config: TestConfig,
                      execution_id: Optional[str] = None) -> TestResults:
        """Run a test suite against one target.

        Args:
            target: Cluster and connection details for the run
            config: Test configuration for this executor
            execution_id: Caller-chosen id, used by ``cancel`` and ``get_status``

        Returns:
            Parsed counts; failing tests are reported here, not raised

        Raises:
            ConfigInvalidError: If the configuration is rejected
            CancelledError: If the run was cancelled before it started
            HarnessError: If the run could not be carried out
        """
        self.validate_config(config)
        options = self.parse_options(config)
        execution_id = execution_id or self.new_execution_id()

        if self._executions.get(execution_id) == TestStatus.CANCELLED:
            raise CancelledError(execution_id)
        self._executions[execution_id] = TestStatus.RUNNING

        try:
            return await self._execute(target, options, execution_id)
        finally:
            self._prune()

    async def _execute(self, target: TestTarget, options: BaseModel, execution_id: str) -> TestResults:
        start_time = time.time()
        with LogContext("execute_tests", executor=self.type, cluster=target.cluster, execution_id=execution_id):
            try:
                result = await self.run(target, options)
            except asyncio.CancelledError:
                # Interrupted by the caller, usually a deadline
                if self._executions.get(execution_id) != TestStatus.CANCELLED:
                    self._executions[execution_id] = TestStatus.ERROR
                counter('executor.run.interrupted', 1, tags={'executor': self.type})
                raise
            except HarnessError:
                self._executions[execution_id] = TestStatus.ERROR
                counter('executor.run.errors', 1, tags={'executor': self.type})
                raise
            except Exception as e:
                self._executions[execution_id] = TestStatus.ERROR
                counter('executor.run.errors', 1, tags={'executor': self.type})
                raise TestExecutionError(
                    execution_id, str(e),
                    error_code=classify_run_error(e),
                    details={"cluster": target.cluster},
                    cause=e
                )

            results = self.parse_output(result, options)
            results.duration = time.time() - start_time

        if self._executions.get(execution_id) != TestStatus.CANCELLED:
            self._executions[execution_id] = TestStatus.FAILED if results.failed else TestStatus.PASSED

        logger.info(
            f"{self.type} run {execution_id} on {target.cluster}: "
            f"{results.passed} passed, {results.failed} failed, {results.skipped} skipped"
        )
        timer('executor.run.duration_ms', results.duration * 1000, tags={'executor': self.type})
        return results

    def _prune(self) -> None:
        """Forget the oldest finished runs beyond ``max_history``."""
        finished = [run_id for run_id, status in self._executions.items() if status in FINISHED_STATUSES]
        for run_id in finished[:max(0, len(finished) - self.max_history)]:
            del self._executions[run_id]

    async def cancel(self, execution_id: str) -> None:
        """Mark a run cancelled; a run that has not started yet will not start."""
        current = self._executions.get(execution_id)
        if current in (TestStatus.PASSED, TestStatus.FAILED, TestStatus.ERROR):
            return
        self._executions[execution_id] = TestStatus.CANCELLED
        logger.info(f"Cancelled {self.type} run {execution_id}")

    async def get_status(self, execution_id: str) -> TestStatus:
        """Status of a tracked run.

        Raises:
            NotFoundError: If the run is unknown
        """
        status = self._executions.get(execution_id)
        if status is None:
            raise NotFoundError("test execution", execution_id)
        return status


class ExecutorRegistry:
    """Maps executor identifiers to executors."""

    def __init__(self):
        self._executors: Dict[str, TestExecutor] = {}

    def register(self, executor: TestExecutor) -> None:
        if not executor.type:
            raise ValueError("Test executor must declare a type")
        self._executors[executor.type] = executor
        logger.debug(f"Registered test executor '{executor.type}'")

    def get(self, test_type: str) -> TestExecutor:
        """Look up an executor.

        Raises:
            ExecutorNotFoundError: If no executor is registered for the type
        """
        executor = self._executors.get(test_type)
        if executor is None:
            raise ExecutorNotFoundError(test_type, self.list())
        return executor

    def has(self, test_type: str) -> bool:
        return test_type in self._executors

    def list(self) -> List[str]:
        return sorted(self._executors)
