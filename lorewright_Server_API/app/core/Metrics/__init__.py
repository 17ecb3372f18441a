"""
In-process metrics for the lorewright world-info server.

Counters and histograms are recorded into a process-wide
``MetricsRegistry`` and can be exported in Prometheus text format.
"""

# Metrics management
from .metrics_manager import (
    MetricType,
    MetricDefinition,
    MetricValue,
    MetricsRegistry,
    get_metrics_registry,
    increment_counter,
    observe_histogram,
    time_operation
)

__all__ = [
    "MetricType",
    "MetricDefinition",
    "MetricValue",
    "MetricsRegistry",
    "get_metrics_registry",
    "increment_counter",
    "observe_histogram",
    "time_operation",
]
