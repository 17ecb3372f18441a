"""
Centralized metrics management for the lorewright world-info server.

Metrics are kept in-process: each recorded value is appended to a bounded
deque per metric, from which statistics and a Prometheus text export are
computed on demand.
"""

import time
import statistics
from typing import Dict, Any, Optional, List, Callable
from dataclasses import dataclass, field
from enum import Enum
from collections import defaultdict, deque
from contextlib import contextmanager

from loguru import logger

from lorewright_Server_API.app.core.config import load_world_info_config


class MetricType(Enum):
    """Types of metrics supported."""
    COUNTER = "counter"
    HISTOGRAM = "histogram"


@dataclass
class MetricDefinition:
    """Definition of a metric."""
    name: str
    type: MetricType
    description: str
    unit: str = ""
    labels: List[str] = field(default_factory=list)
    buckets: Optional[List[float]] = None  # For histograms


@dataclass
class MetricValue:
    """A metric value with metadata."""
    value: float
    timestamp: float = field(default_factory=time.time)
    labels: Dict[str, str] = field(default_factory=dict)


class MetricsRegistry:
    """Registry for all application metrics."""

    def __init__(self, enabled: bool = True, max_values: int = 1000):
        self.enabled = enabled
        self.metrics: Dict[str, MetricDefinition] = {}
        self.values: Dict[str, deque] = defaultdict(lambda: deque(maxlen=max_values))
        self.callbacks: Dict[str, List[Callable]] = defaultdict(list)
        self._register_standard_metrics()

    def _register_standard_metrics(self):
        """Register world-info metrics."""
        self.register_metric(
            MetricDefinition(
                name="world_info_resolutions_total",
                type=MetricType.COUNTER,
                description="Total number of world-info resolutions",
                labels=["trigger", "dry_run", "outcome"],
            )
        )
        self.register_metric(
            MetricDefinition(
                name="world_info_activated_entries",
                type=MetricType.HISTOGRAM,
                description="Entries activated per world-info resolution",
                buckets=[0, 1, 2, 5, 10, 25, 50, 100],
            )
        )
        self.register_metric(
            MetricDefinition(
                name="world_info_budget_overflow_total",
                type=MetricType.COUNTER,
                description="Resolutions in which at least one entry was dropped by the token budget",
            )
        )
        self.register_metric(
            MetricDefinition(
                name="world_info_scan_hard_limit_total",
                type=MetricType.COUNTER,
                description="Scans stopped by the hard pass limit",
            )
        )
        self.register_metric(
            MetricDefinition(
                name="world_info_resolve_duration_seconds",
                type=MetricType.HISTOGRAM,
                description="World-info resolution duration in seconds",
                unit="s",
                buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, 5],
            )
        )

    def register_metric(self, definition: MetricDefinition) -> bool:
        """
        Register a new metric definition.

        Returns:
            True if registered successfully
        """
        if definition.name in self.metrics:
            logger.warning(f"Metric {definition.name} already registered")
            return False
        self.metrics[definition.name] = definition
        logger.debug(f"Registered metric: {definition.name}")
        return True

    def record(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """Record a metric value."""
        if not self.enabled:
            return
        if metric_name not in self.metrics:
            logger.warning(f"Metric {metric_name} not registered")
            return

        labels = labels or {}
        self.values[metric_name].append(MetricValue(value=value, labels=labels))

        for callback in self.callbacks[metric_name]:
            try:
                callback(metric_name, value, labels)
            except Exception as e:
                logger.error(f"Metric callback error: {e}")

    def increment(self, metric_name: str, value: float = 1, labels: Optional[Dict[str, str]] = None):
        self.record(metric_name, value, labels)

    def observe(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
        self.record(metric_name, value, labels)

    @contextmanager
    def timer(self, metric_name: str, labels: Optional[Dict[str, str]] = None):
        """Context manager to time an operation into a histogram metric."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            self.observe(metric_name, time.perf_counter() - start_time, labels)

    def add_callback(self, metric_name: str, callback: Callable):
        """Add a callback(metric_name, value, labels) for metric events."""
        self.callbacks[metric_name].append(callback)

    def get_metric_stats(self, metric_name: str, labels: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """
        Get statistics for a metric.

        Args:
            metric_name: Name of the metric
            labels: Optional label filter (exact match on provided keys)
        """
        if metric_name not in self.values:
            return {}

        values = list(self.values[metric_name])
        if labels:
            values = [val for val in values if all(
                val.labels.get(key) == expected for key, expected in labels.items()
            )]
        if not values:
            return {}

        numeric_values = [v.value for v in values]
        return {
            "count": len(numeric_values),
            "sum": sum(numeric_values),
            "mean": statistics.mean(numeric_values),
            "median": statistics.median(numeric_values),
            "min": min(numeric_values),
            "max": max(numeric_values),
            "stddev": statistics.stdev(numeric_values) if len(numeric_values) > 1 else 0,
            "latest": numeric_values[-1],
            "latest_timestamp": values[-1].timestamp,
        }

    def export_prometheus_format(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []

        for metric_name, definition in self.metrics.items():
            if metric_name not in self.values or not self.values[metric_name]:
                continue

            lines.append(f"# HELP {metric_name} {definition.description}")
            lines.append(f"# TYPE {metric_name} {definition.type.value}")

            label_groups = defaultdict(list)
            for value in self.values[metric_name]:
                label_key = ",".join(f'{k}="{v}"' for k, v in sorted(value.labels.items()))
                label_groups[label_key].append(value)

            for label_str, values in label_groups.items():
                braces = f"{{{label_str}}}" if label_str else ""
                if definition.type == MetricType.COUNTER:
                    lines.append(f"{metric_name}{braces} {sum(v.value for v in values)}")
                else:
                    numeric_values = [v.value for v in values]
                    prefix = f"{label_str}," if label_str else ""
                    for bucket in definition.buckets or []:
                        count = sum(1 for v in numeric_values if v <= bucket)
                        lines.append(f'{metric_name}_bucket{{{prefix}le="{bucket}"}} {count}')
                    lines.append(f'{metric_name}_bucket{{{prefix}le="+Inf"}} {len(numeric_values)}')
                    lines.append(f"{metric_name}_sum{braces} {sum(numeric_values)}")
                    lines.append(f"{metric_name}_count{braces} {len(numeric_values)}")

        return "\n".join(lines) + "\n"

    def reset(self):
        """Drop recorded values (definitions are kept)."""
        self.values.clear()


# Global metrics registry instance
_metrics_registry: Optional[MetricsRegistry] = None


def get_metrics_registry() -> MetricsRegistry:
    """Get or create the global metrics registry."""
    global _metrics_registry
    if _metrics_registry is None:
        _metrics_registry = MetricsRegistry(enabled=load_world_info_config().metrics_enabled)
    return _metrics_registry


def increment_counter(metric_name: str, value: float = 1, labels: Optional[Dict[str, str]] = None):
    """Increment a counter metric."""
    get_metrics_registry().increment(metric_name, value, labels)


def observe_histogram(metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
    """Observe a value for histogram metric."""
    get_metrics_registry().observe(metric_name, value, labels)


@contextmanager
def time_operation(metric_name: str, labels: Optional[Dict[str, str]] = None):
    """Time an operation and record to histogram metric."""
    with get_metrics_registry().timer(metric_name, labels):
        yield
