"""
Metrics collection utilities for the mesh test harness.

This module provides in-process performance metrics collection and
aggregation for cluster, discovery and test operations.
"""

from datetime import datetime
from typing import Dict, List, Optional, Union
from dataclasses import dataclass, field
from collections import defaultdict, deque
from threading import Lock
from enum import Enum

from .logging import get_logger, log_metrics


logger = get_logger(__name__)


class MetricType(str, Enum):
    """Types of metrics that can be collected."""
    COUNTER = "counter"
    GAUGE = "gauge"
    TIMER = "timer"


@dataclass
class MetricValue:
    """Individual metric value with timestamp."""
    value: Union[int, float]
    timestamp: datetime
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class MetricSummary:
    """Summary statistics for a metric."""
    name: str
    metric_type: MetricType
    count: int
    sum: float
    min: float
    max: float
    avg: float
    p95: float
    last_value: float
    last_updated: datetime


class MetricsCollector:
    """Thread-safe metrics collector with aggregation capabilities."""

    def __init__(self, max_values_per_metric: int = 1000):
        self.max_values_per_metric = max_values_per_metric
        self._metrics: Dict[str, deque] = defaultdict(lambda: deque(maxlen=max_values_per_metric))
        self._metric_types: Dict[str, MetricType] = {}
        self._lock = Lock()
        self.enabled = True

    def counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """Record a counter metric (monotonically increasing)."""
        self._record_metric(name, MetricType.COUNTER, value, tags)

    def gauge(self, name: str, value: Union[int, float], tags: Optional[Dict[str, str]] = None):
        """Record a gauge metric (point-in-time value)."""
        self._record_metric(name, MetricType.GAUGE, value, tags)

    def timer(self, name: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        """Record a timer metric (duration in milliseconds)."""
        self._record_metric(name, MetricType.TIMER, duration_ms, tags)

    def _record_metric(self, name: str, metric_type: MetricType, value: Union[int, float],
                       tags: Optional[Dict[str, str]] = None):
        """Record a metric value with thread safety."""
        if not self.enabled:
            return

        with self._lock:
            if name not in self._metric_types:
                self._metric_types[name] = metric_type
            elif self._metric_types[name] != metric_type:
                logger.warning(f"Metric type mismatch for {name}: expected {self._metric_types[name]}, got {metric_type}")

            self._metrics[name].append(MetricValue(
                value=value,
                timestamp=datetime.utcnow(),
                tags=tags or {}
            ))

        log_metrics(name, value, tags=tags, metric_type=metric_type.value)

    def get_metric_summary(self, name: str) -> Optional[MetricSummary]:
        """
        Get summary statistics for a metric.

        Args:
            name: Metric name

        Returns:
            Metric summary or None if metric doesn't exist
        """
        with self._lock:
            values = list(self._metrics.get(name, ()))
            if not values:
                return None
            metric_type = self._metric_types[name]

        numeric_values = sorted(v.value for v in values)
        count = len(numeric_values)
        total = sum(numeric_values)

        return MetricSummary(
            name=name,
            metric_type=metric_type,
            count=count,
            sum=total,
            min=numeric_values[0],
            max=numeric_values[-1],
            avg=total / count,
            p95=numeric_values[min(int(count * 0.95), count - 1)],
            last_value=values[-1].value,
            last_updated=values[-1].timestamp
        )

    def get_all_metrics(self) -> Dict[str, MetricSummary]:
        """Get summary statistics for all metrics."""
        summaries = {}
        for name in self.get_metric_names():
            summary = self.get_metric_summary(name)
            if summary:
                summaries[name] = summary
        return summaries

    def get_metric_names(self) -> List[str]:
        """Get list of all metric names."""
        with self._lock:
            return list(self._metrics.keys())

    def clear_metrics(self, name: Optional[str] = None):
        """Clear one metric, or all metrics when no name is given."""
        with self._lock:
            if name:
                self._metrics.pop(name, None)
                self._metric_types.pop(name, None)
            else:
                self._metrics.clear()
                self._metric_types.clear()


# Process-wide collector, like the logging module's root logger
metrics_collector = MetricsCollector()


def counter(name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
    """Record a counter metric."""
    metrics_collector.counter(name, value, tags)


def gauge(name: str, value: Union[int, float], tags: Optional[Dict[str, str]] = None):
    """Record a gauge metric."""
    metrics_collector.gauge(name, value, tags)


def timer(name: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
    """Record a timer metric."""
    metrics_collector.timer(name, duration_ms, tags)


def get_metric_summary(name: str) -> Optional[MetricSummary]:
    """Get summary statistics for a metric."""
    return metrics_collector.get_metric_summary(name)


def get_all_metrics() -> Dict[str, MetricSummary]:
    """Get summary statistics for all metrics."""
    return metrics_collector.get_all_metrics()


def clear_metrics(name: Optional[str] = None):
    """Clear metrics data."""
    metrics_collector.clear_metrics(name)


def set_metrics_enabled(enabled: bool):
    """Turn metric recording on or off."""
    metrics_collector.enabled = enabled
