"""
Custom exception classes for the mesh test harness.

This module defines a hierarchy of custom exceptions that provide structured
error handling throughout the harness. Every error carries a stable error
code and the identity of the failing entity (cluster, mechanism or test id).
"""

import logging
from typing import Optional, Dict, Any, List
from enum import Enum


logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Stable error kinds reported by the harness."""

    # General errors
    CONFIG_INVALID = "CONFIG_INVALID"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    NOT_FOUND = "NOT_FOUND"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"

    # Cluster lifecycle errors
    CLUSTER_CREATE_FAILED = "CLUSTER_CREATE_FAILED"
    CLUSTER_DELETE_FAILED = "CLUSTER_DELETE_FAILED"
    CLUSTER_NOT_FOUND = "CLUSTER_NOT_FOUND"
    CLUSTER_UNHEALTHY = "CLUSTER_UNHEALTHY"

    # Service discovery errors
    DISCOVERY_INSTALL_FAILED = "DISCOVERY_INSTALL_FAILED"
    DISCOVERY_NOT_FOUND = "DISCOVERY_NOT_FOUND"

    # Cross-cluster connectivity errors
    CONNECTIVITY_FAILED = "CONNECTIVITY_FAILED"

    # Test execution errors
    TEST_EXECUTION_FAILED = "TEST_EXECUTION_FAILED"

    # Environment errors
    COMMAND_FAILED = "COMMAND_FAILED"
    NETWORK_ERROR = "NETWORK_ERROR"


# Error kinds caused by the execution environment rather than by a test outcome
RETRYABLE_ERROR_CODES = frozenset({
    ErrorCode.NETWORK_ERROR,
    ErrorCode.CLUSTER_UNHEALTHY,
    ErrorCode.COMMAND_FAILED,
})


class HarnessError(Exception):
    """Base exception class for all harness errors.

    It provides structured error information including error codes, messages,
    and additional context details.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None
    ):
        """Initialize the exception.

        Args:
            message: Human-readable error message
            error_code: Stable error kind
            details: Additional error context, including the failing entity
            cause: The underlying exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.cause = cause

        logger.debug(f"Exception created: {error_code.value} - {message}", exc_info=cause)

    @property
    def retryable(self) -> bool:
        """Whether the error was caused by a transient environment condition."""
        return self.error_code in RETRYABLE_ERROR_CODES

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for command output."""
        result = {
            "error": self.error_code.value,
            "message": self.message,
            "details": dict(self.details)
        }

        if self.cause:
            result["details"]["cause"] = str(self.cause)
            result["details"]["cause_type"] = type(self.cause).__name__

        return result


class ConfigInvalidError(HarnessError):
    """Raised when a configuration is rejected before any side effect."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 cause: Optional[Exception] = None):
        super().__init__(
            message=f"Invalid configuration: {message}",
            error_code=ErrorCode.CONFIG_INVALID,
            details=details,
            cause=cause
        )


class NotFoundError(HarnessError):
    """Raised when a tracked entity does not exist."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(
            message=f"{kind} '{identifier}' not found",
            error_code=ErrorCode.NOT_FOUND,
            details={"kind": kind, "id": identifier}
        )


class InternalError(HarnessError):
    """Raised for unexpected or unclassified failures."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 cause: Optional[Exception] = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.INTERNAL_ERROR,
            details=details,
            cause=cause
        )


class OperationTimeoutError(HarnessError):
    """Raised when an operation exceeds its deadline."""

    def __init__(self, operation: str, timeout_seconds: float,
                 details: Optional[Dict[str, Any]] = None):
        merged = {"operation": operation, "timeout_seconds": timeout_seconds}
        merged.update(details or {})
        super().__init__(
            message=f"Operation '{operation}' timed out after {timeout_seconds} seconds",
            error_code=ErrorCode.TIMEOUT,
            details=merged
        )


class CancelledError(HarnessError):
    """Raised when an execution was cancelled before it could finish."""

    def __init__(self, execution_id: str):
        super().__init__(
            message=f"Execution '{execution_id}' was cancelled",
            error_code=ErrorCode.CANCELLED,
            details={"execution_id": execution_id}
        )


# Command execution exceptions

class CommandFailedError(HarnessError):
    """Raised when an external command exits with a non-zero status."""

    def __init__(self, command: str, exit_code: int, stderr: str,
                 cause: Optional[Exception] = None):
        super().__init__(
            message=f"Command '{command}' failed with exit code {exit_code}: {stderr.strip()}",
            error_code=ErrorCode.COMMAND_FAILED,
            details={
                "command": command,
                "exit_code": exit_code,
                "stderr": stderr
            },
            cause=cause
        )
        self.exit_code = exit_code
        self.stderr = stderr


class CommandNotFoundError(HarnessError):
    """Raised when an external binary is not installed."""

    def __init__(self, binary: str):
        super().__init__(
            message=f"{binary} command not found. Please install {binary}.",
            error_code=ErrorCode.COMMAND_FAILED,
            details={"binary": binary}
        )

    @property
    def retryable(self) -> bool:
        # A missing binary stays missing between attempts
        return False


# Cluster lifecycle exceptions

class ClusterError(HarnessError):
    """Base exception for cluster lifecycle errors."""

    def __init__(self, message: str, cluster: str, error_code: ErrorCode,
                 details: Optional[Dict[str, Any]] = None,
                 cause: Optional[Exception] = None):
        merged = {"cluster": cluster}
        merged.update(details or {})
        super().__init__(message=message, error_code=error_code, details=merged, cause=cause)
        self.cluster = cluster


class ClusterCreateError(ClusterError):
    """Raised when a cluster cannot be created."""

    def __init__(self, cluster: str, message: str, details: Optional[Dict[str, Any]] = None,
                 cause: Optional[Exception] = None):
        super().__init__(
            message=f"Failed to create cluster '{cluster}': {message}",
            cluster=cluster,
            error_code=ErrorCode.CLUSTER_CREATE_FAILED,
            details=details,
            cause=cause
        )


class ClusterDeleteError(ClusterError):
    """Raised when a cluster cannot be deleted."""

    def __init__(self, cluster: str, message: str, details: Optional[Dict[str, Any]] = None,
                 cause: Optional[Exception] = None):
        super().__init__(
            message=f"Failed to delete cluster '{cluster}': {message}",
            cluster=cluster,
            error_code=ErrorCode.CLUSTER_DELETE_FAILED,
            details=details,
            cause=cause
        )


class ClusterNotFoundError(ClusterError):
    """Raised when a cluster is not known to its provider."""

    def __init__(self, cluster: str, provider: Optional[str] = None):
        super().__init__(
            message=f"Cluster '{cluster}' not found" + (f" in provider '{provider}'" if provider else ""),
            cluster=cluster,
            error_code=ErrorCode.CLUSTER_NOT_FOUND,
            details={"provider": provider}
        )


class ClusterUnhealthyError(ClusterError):
    """Raised when a cluster exists but cannot serve requests."""

    def __init__(self, cluster: str, message: str, cause: Optional[Exception] = None):
        super().__init__(
            message=f"Cluster '{cluster}' is unhealthy: {message}",
            cluster=cluster,
            error_code=ErrorCode.CLUSTER_UNHEALTHY,
            cause=cause
        )


class TopologyCreateError(HarnessError):
    """Raised when one or more remote clusters of a topology failed to create.

    The primary and every remote that succeeded are left running.
    """

    def __init__(self, failures: Dict[str, Exception]):
        self.failures = failures
        names = sorted(failures)
        summary = "; ".join(f"{name}: {failures[name]}" for name in names)
        super().__init__(
            message=f"Failed to create remote clusters {', '.join(names)}: {summary}",
            error_code=ErrorCode.CLUSTER_CREATE_FAILED,
            details={"failed_clusters": names}
        )

    @property
    def failed_clusters(self) -> List[str]:
        return sorted(self.failures)


# Service discovery exceptions

class DiscoveryInstallError(HarnessError):
    """Raised when a discovery mechanism cannot be installed or removed."""

    def __init__(self, mechanism: str, message: str, cluster: Optional[str] = None,
                 cause: Optional[Exception] = None):
        super().__init__(
            message=f"Service discovery '{mechanism}' failed: {message}",
            error_code=ErrorCode.DISCOVERY_INSTALL_FAILED,
            details={"mechanism": mechanism, "cluster": cluster},
            cause=cause
        )
        self.mechanism = mechanism


class DiscoveryNotFoundError(HarnessError):
    """Raised when a discovery mechanism is not registered."""

    def __init__(self, mechanism: str, available: Optional[List[str]] = None):
        available = available or []
        super().__init__(
            message=(
                f"Service discovery mechanism '{mechanism}' not found. "
                f"Available mechanisms: {', '.join(available) if available else 'none'}"
            ),
            error_code=ErrorCode.DISCOVERY_NOT_FOUND,
            details={"mechanism": mechanism, "available": available}
        )


class FederationError(HarnessError):
    """Raised when federation wiring failed on one or more clusters."""

    def __init__(self, failures: Dict[str, Exception]):
        self.failures = failures
        names = sorted(failures)
        summary = "; ".join(f"{name}: {failures[name]}" for name in names)
        super().__init__(
            message=f"Federation setup failed on clusters {', '.join(names)}: {summary}",
            error_code=ErrorCode.DISCOVERY_INSTALL_FAILED,
            details={"failed_clusters": names}
        )


# Connectivity exceptions

class ConnectivityError(HarnessError):
    """Raised when network policies cannot be applied to or removed from a cluster."""

    def __init__(self, provider: str, message: str, cluster: Optional[str] = None,
                 cause: Optional[Exception] = None):
        super().__init__(
            message=f"Connectivity '{provider}' failed: {message}",
            error_code=ErrorCode.CONNECTIVITY_FAILED,
            details={"provider": provider, "cluster": cluster},
            cause=cause
        )
        self.provider = provider


class ConnectivityNotFoundError(HarnessError):
    """Raised when a connectivity provider is not registered."""

    def __init__(self, provider: str, available: Optional[List[str]] = None):
        available = available or []
        super().__init__(
            message=(
                f"No connectivity provider registered for '{provider}'. "
                f"Available providers: {', '.join(available) if available else 'none'}"
            ),
            error_code=ErrorCode.CONFIG_INVALID,
            details={"provider": provider, "available": available}
        )


class NetworkSetupError(HarnessError):
    """Raised when connectivity could not be configured on one or more clusters."""

    def __init__(self, failures: Dict[str, Exception]):
        self.failures = failures
        names = sorted(failures)
        summary = "; ".join(f"{name}: {failures[name]}" for name in names)
        super().__init__(
            message=f"Network setup failed on clusters {', '.join(names)}: {summary}",
            error_code=ErrorCode.CONNECTIVITY_FAILED,
            details={"failed_clusters": names}
        )


# Test execution exceptions

class TestExecutionError(HarnessError):
    """Raised when a test run could not be carried out."""

    __test__ = False

    def __init__(self, test_id: str, message: str, error_code: ErrorCode = ErrorCode.TEST_EXECUTION_FAILED,
                 details: Optional[Dict[str, Any]] = None, cause: Optional[Exception] = None):
        merged = {"test_id": test_id}
        merged.update(details or {})
        super().__init__(
            message=f"Test '{test_id}' failed to execute: {message}",
            error_code=error_code,
            details=merged,
            cause=cause
        )
        self.test_id = test_id


class ExecutorNotFoundError(HarnessError):
    """Raised when no executor is registered for a test type."""

    def __init__(self, test_type: str, available: Optional[List[str]] = None):
        available = available or []
        super().__init__(
            message=(
                f"No test executor registered for type '{test_type}'. "
                f"Available executors: {', '.join(available) if available else 'none'}"
            ),
            error_code=ErrorCode.CONFIG_INVALID,
            details={"test_type": test_type, "available": available}
        )
