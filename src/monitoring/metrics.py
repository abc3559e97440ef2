"""
Prometheus metrics for the GPS stream engine.

Responsibilities:
- Count processed, malformed, failed, reclaimed and dead-lettered messages
- Track per-message and per-step processing latency
- Expose worker lifecycle state
- Serve metrics for Prometheus scraping
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

from src.utils.logging import get_logger

logger = get_logger(__name__)

_LATENCY_BUCKETS = (0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0)

WORKER_STATES = ("starting", "recovering", "running", "stopping", "stopped")


class PipelineMetrics:
    """
    Prometheus metrics for stream consumer workers.

    All series are labelled by pipeline stage so that single-stage and
    multi-stage deployments report through the same names.
    """

    def __init__(
        self,
        registry: CollectorRegistry | None = None,
        prefix: str = "gps_stream",
    ) -> None:
        """
        Initialize metrics.

        Args:
            registry: Prometheus registry (a private one if None)
            prefix: Prefix for all metric names
        """
        self._registry = registry or CollectorRegistry()
        self._prefix = prefix

        self._init_message_metrics()
        self._init_recovery_metrics()
        self._init_latency_metrics()
        self._init_worker_metrics()

        logger.debug("Metrics initialized", prefix=prefix)

    def _metric_name(self, name: str) -> str:
        """Generate full metric name with prefix."""
        return f"{self._prefix}_{name}"

    def _init_message_metrics(self) -> None:
        self.messages_processed_total = Counter(
            self._metric_name("messages_processed_total"),
            "Messages processed and acknowledged",
            ["stage"],
            registry=self._registry,
        )
        self.messages_malformed_total = Counter(
            self._metric_name("messages_malformed_total"),
            "Messages acknowledged without processing (data-quality faults)",
            ["stage", "field"],
            registry=self._registry,
        )
        self.messages_failed_total = Counter(
            self._metric_name("messages_failed_total"),
            "Messages left pending after a processing error",
            ["stage", "error_type"],
            registry=self._registry,
        )
        self.messages_acked_total = Counter(
            self._metric_name("messages_acked_total"),
            "Messages acknowledged on the input stream",
            ["stage"],
            registry=self._registry,
        )
        self.batches_read_total = Counter(
            self._metric_name("batches_read_total"),
            "Non-empty batches read from the input stream",
            ["stage"],
            registry=self._registry,
        )
        self.lease_conflicts_total = Counter(
            self._metric_name("lease_conflicts_total"),
            "Messages deferred because another worker held the sensor lease",
            ["stage"],
            registry=self._registry,
        )

    def _init_recovery_metrics(self) -> None:
        self.messages_reclaimed_total = Counter(
            self._metric_name("messages_reclaimed_total"),
            "Pending entries claimed from idle consumers",
            ["stage"],
            registry=self._registry,
        )
        self.messages_dead_lettered_total = Counter(
            self._metric_name("messages_dead_lettered_total"),
            "Pending entries moved to the dead-letter stream",
            ["stage"],
            registry=self._registry,
        )
        self.recovery_runs_total = Counter(
            self._metric_name("recovery_runs_total"),
            "Pending-entry recovery passes",
            ["stage"],
            registry=self._registry,
        )

    def _init_latency_metrics(self) -> None:
        self.message_latency_seconds = Histogram(
            self._metric_name("message_latency_seconds"),
            "Load-to-save time for one message",
            ["stage"],
            buckets=_LATENCY_BUCKETS,
            registry=self._registry,
        )
        self.step_latency_seconds = Histogram(
            self._metric_name("step_latency_seconds"),
            "Time spent in one processing step",
            ["stage", "step"],
            buckets=_LATENCY_BUCKETS,
            registry=self._registry,
        )

    def _init_worker_metrics(self) -> None:
        self.worker_state = Gauge(
            self._metric_name("worker_state"),
            "1 for the worker's current lifecycle state, 0 otherwise",
            ["stage", "state"],
            registry=self._registry,
        )
        self.transient_errors_total = Counter(
            self._metric_name("transient_errors_total"),
            "Loop-level errors followed by a backoff",
            ["stage", "error_type"],
            registry=self._registry,
        )

    # ==========================================================================
    # Recording methods
    # ==========================================================================

    def record_processed(self, stage: str, duration_seconds: float) -> None:
        """Record a fully processed message."""
        self.messages_processed_total.labels(stage=stage).inc()
        self.message_latency_seconds.labels(stage=stage).observe(duration_seconds)

    def record_step(self, stage: str, step: str, duration_seconds: float) -> None:
        """Record the duration of one processing step."""
        self.step_latency_seconds.labels(stage=stage, step=step).observe(duration_seconds)

    def record_malformed(self, stage: str, field: str | None) -> None:
        self.messages_malformed_total.labels(stage=stage, field=field or "unknown").inc()

    def record_failed(self, stage: str, error_type: str) -> None:
        self.messages_failed_total.labels(stage=stage, error_type=error_type).inc()

    def record_acked(self, stage: str, count: int = 1) -> None:
        self.messages_acked_total.labels(stage=stage).inc(count)

    def record_lease_conflict(self, stage: str) -> None:
        self.lease_conflicts_total.labels(stage=stage).inc()

    def record_batch(self, stage: str) -> None:
        self.batches_read_total.labels(stage=stage).inc()

    def record_recovery(self, stage: str, reclaimed: int, dead_lettered: int) -> None:
        """Record one recovery pass."""
        self.recovery_runs_total.labels(stage=stage).inc()
        if reclaimed:
            self.messages_reclaimed_total.labels(stage=stage).inc(reclaimed)
        if dead_lettered:
            self.messages_dead_lettered_total.labels(stage=stage).inc(dead_lettered)

    def record_transient_error(self, stage: str, error_type: str) -> None:
        self.transient_errors_total.labels(stage=stage, error_type=error_type).inc()

    def set_worker_state(self, stage: str, state: str) -> None:
        """Mark the worker's current lifecycle state."""
        for name in WORKER_STATES:
            self.worker_state.labels(stage=stage, state=name).set(1 if name == state else 0)

    # ==========================================================================
    # Export methods
    # ==========================================================================

    def generate_metrics(self) -> bytes:
        """Generate Prometheus metrics output."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for Prometheus metrics."""
        return CONTENT_TYPE_LATEST

    def get_registry(self) -> CollectorRegistry:
        """Get the Prometheus registry."""
        return self._registry

    def serve(self, port: int, addr: str = "0.0.0.0") -> None:
        """Start the HTTP exporter in a background thread."""
        start_http_server(port, addr=addr, registry=self._registry)
        logger.info("Metrics exporter listening", port=port)


# Global metrics instance
_metrics: PipelineMetrics | None = None


def get_metrics() -> PipelineMetrics:
    """Get the global metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = PipelineMetrics()
    return _metrics


def init_metrics(
    registry: CollectorRegistry | None = None,
    prefix: str = "gps_stream",
) -> PipelineMetrics:
    """Initialize the global metrics instance."""
    global _metrics
    _metrics = PipelineMetrics(registry=registry, prefix=prefix)
    return _metrics
