"""Health checks and Prometheus metrics for telemd."""

from .metrics_collector import MetricsCollector
from .pipeline_metrics import PipelineMetricsCollector
from .health_monitor import (
    HealthMonitor,
    HealthState,
    HealthCheck,
    HealthStatus,
    aggregate_health,
)

__all__ = [
    'MetricsCollector',
    'PipelineMetricsCollector',
    'HealthMonitor',
    'HealthState',
    'HealthCheck',
    'HealthStatus',
    'aggregate_health',
]
