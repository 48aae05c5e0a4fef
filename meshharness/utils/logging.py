"""
Structured logging utilities for the mesh test harness.

This module provides structured logging capabilities with operation tracking,
performance metrics, and contextual information for debugging long-running
cluster and test operations.
"""

import json
import logging
import time
import uuid
from datetime import datetime
from typing import Dict, Any, Optional, Union
from contextvars import ContextVar


DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class LogContext:
    """Context manager for structured logging of a single operation."""

    def __init__(self, operation: str, **kwargs):
        self.operation = operation
        self.context = kwargs
        self.start_time = None
        self.operation_id = kwargs.pop('operation_id', str(uuid.uuid4())[:8])

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.time() - self.start_time) * 1000

        if exc_type is None:
            self.log_success(duration_ms)
        else:
            self.log_error(exc_val, duration_ms)

    def log_success(self, duration_ms: float):
        """Log successful operation completion."""
        logger = get_logger(self.context.get('logger_name', __name__))
        logger.info(
            f"Operation completed: {self.operation}",
            extra={
                'operation': self.operation,
                'operation_id': self.operation_id,
                'duration_ms': round(duration_ms, 2),
                'status': 'success',
                **self.context
            }
        )

    def log_error(self, error: BaseException, duration_ms: float):
        """Log operation failure."""
        logger = get_logger(self.context.get('logger_name', __name__))
        logger.error(
            f"Operation failed: {self.operation} - {str(error)}",
            extra={
                'operation': self.operation,
                'operation_id': self.operation_id,
                'duration_ms': round(duration_ms, 2),
                'status': 'error',
                'error_type': type(error).__name__,
                'error_message': str(error),
                **self.context
            },
            exc_info=(type(error), error, error.__traceback__)
        )


# Context variable for execution tracking
execution_context: ContextVar[Dict[str, Any]] = ContextVar('execution_context', default={})

_RESERVED_RECORD_KEYS = frozenset([
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'taskName'
])


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured JSON logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            'timestamp': datetime.utcnow().isoformat() + 'Z',
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        context = execution_context.get()
        if context:
            log_entry['execution_context'] = context

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_entry[key] = value

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': self.formatException(record.exc_info)
            }

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class ExecutionTrackingFilter(logging.Filter):
    """Filter to add execution tracking information to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add execution context to log record."""
        for key, value in execution_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def setup_logging(
    log_level: str = "INFO",
    structured: bool = True,
    enable_execution_tracking: bool = True,
    log_format: str = DEFAULT_LOG_FORMAT,
    debug: bool = False
) -> None:
    """
    Set up harness logging configuration.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        structured: Whether to use structured JSON logging
        enable_execution_tracking: Whether to attach execution context to records
        log_format: Format string used when structured logging is disabled
        debug: Whether harness loggers should emit debug records
    """
    level = getattr(logging, log_level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Logs go to stderr so command output on stdout stays machine-readable
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)

    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(log_format)

    console_handler.setFormatter(formatter)

    if enable_execution_tracking:
        console_handler.addFilter(ExecutionTrackingFilter())

    root_logger.addHandler(console_handler)

    configure_logger_levels(debug)


def configure_logger_levels(debug: bool = False):
    """Configure specific logger levels to reduce noise."""
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('kubernetes').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)

    logging.getLogger('meshharness').setLevel(logging.DEBUG if debug else logging.INFO)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the specified name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def set_execution_context(**kwargs):
    """Set execution context for logging in the current task."""
    current_context = dict(execution_context.get())
    current_context.update(kwargs)
    execution_context.set(current_context)


def clear_execution_context():
    """Clear the current execution context."""
    execution_context.set({})


def get_execution_context() -> Dict[str, Any]:
    """Get the current execution context."""
    return execution_context.get()


def log_health_check(
    component: str,
    healthy: bool,
    response_time_ms: float,
    error: Optional[str] = None,
    **details
):
    """
    Log health check results.

    Args:
        component: Checked component (cluster or discovery mechanism)
        healthy: Whether the check passed
        response_time_ms: Response time in milliseconds
        error: Error message if health check failed
        **details: Additional health check details
    """
    logger = get_logger('meshharness.health')

    log_data = {
        'component': component,
        'healthy': healthy,
        'response_time_ms': round(response_time_ms, 2),
        'error': error,
        **details
    }

    if healthy:
        logger.info(f"Health check passed: {component}", extra=log_data)
    else:
        logger.warning(f"Health check failed: {component} - {error}", extra=log_data)


def log_metrics(
    metric_name: str,
    value: Union[int, float],
    unit: Optional[str] = None,
    tags: Optional[Dict[str, str]] = None,
    **context
):
    """
    Log metrics for monitoring.

    Args:
        metric_name: Name of the metric
        value: Metric value
        unit: Unit of measurement
        tags: Metric tags for filtering
        **context: Additional context
    """
    logger = get_logger('meshharness.metrics')

    log_data = {
        'metric_name': metric_name,
        'value': value,
        'unit': unit,
        'tags': tags or {},
        **context
    }

    logger.debug(f"Metric: {metric_name}={value}{unit or ''}", extra=log_data)
