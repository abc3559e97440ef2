"""
Monitoring module for the GPS stream engine.

Components:
- PipelineMetrics: Prometheus counters, histograms and worker-state gauge
- Health checks: broker connectivity and stream/group status
"""

from src.monitoring.health import (
    HealthCheckResult,
    HealthStatus,
    check_redis,
    check_stream,
    run_health_checks,
)
from src.monitoring.metrics import (
    WORKER_STATES,
    PipelineMetrics,
    get_metrics,
    init_metrics,
)

__all__ = [
    # Metrics
    "WORKER_STATES",
    "PipelineMetrics",
    "get_metrics",
    "init_metrics",
    # Health
    "HealthCheckResult",
    "HealthStatus",
    "check_redis",
    "check_stream",
    "run_health_checks",
]
