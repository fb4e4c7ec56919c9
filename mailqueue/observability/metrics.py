"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from mailqueue.constants import (
    METRIC_CLAIMS_ACQUIRED,
    METRIC_CLAIMS_EXPIRED,
    METRIC_DELIVERY_DURATION,
    METRIC_MESSAGES_DELIVERED,
    METRIC_MESSAGES_ENQUEUED,
    METRIC_MESSAGES_TERMINALLY_FAILED,
    METRIC_QUEUE_DEPTH,
    METRIC_SWEEP_ERRORS,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the mail queue.

    Collects metrics for:
    - Queue depth
    - Enqueued messages and delivery outcomes
    - Delivery duration
    - Claims acquired and expired
    - Storage errors during sweeps
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of pending messages",
            registry=self._registry,
        )

        self.messages_enqueued = Counter(
            METRIC_MESSAGES_ENQUEUED,
            "Total number of messages enqueued",
            registry=self._registry,
        )

        # outcome is "sent" or "failed"
        self.messages_delivered = Counter(
            METRIC_MESSAGES_DELIVERED,
            "Total number of delivery attempts by outcome",
            ["worker_id", "outcome"],
            registry=self._registry,
        )

        self.messages_terminally_failed = Counter(
            METRIC_MESSAGES_TERMINALLY_FAILED,
            "Total number of messages abandoned after max attempts",
            registry=self._registry,
        )

        self.delivery_duration = Histogram(
            METRIC_DELIVERY_DURATION,
            "Time spent in the transport per message",
            ["outcome"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self._registry,
        )

        self.claims_acquired = Counter(
            METRIC_CLAIMS_ACQUIRED,
            "Total number of messages claimed",
            ["worker_id"],
            registry=self._registry,
        )

        self.claims_expired = Counter(
            METRIC_CLAIMS_EXPIRED,
            "Total number of expired claims released",
            registry=self._registry,
        )

        # stage is "claim", "record_sent" or "record_failed"
        self.sweep_errors = Counter(
            METRIC_SWEEP_ERRORS,
            "Total number of storage errors absorbed by workers",
            ["worker_id", "stage"],
            registry=self._registry,
        )

    def record_enqueued(self, count: int = 1) -> None:
        self.messages_enqueued.inc(count)

    def record_delivery(
        self,
        worker_id: str,
        success: bool,
        duration_seconds: float,
    ) -> None:
        """Record one delivery attempt."""
        outcome = "sent" if success else "failed"
        self.messages_delivered.labels(worker_id=worker_id, outcome=outcome).inc()
        self.delivery_duration.labels(outcome=outcome).observe(duration_seconds)

    def record_terminal_failures(self, count: int) -> None:
        if count > 0:
            self.messages_terminally_failed.inc(count)

    def record_claims_acquired(self, worker_id: str, count: int) -> None:
        if count > 0:
            self.claims_acquired.labels(worker_id=worker_id).inc(count)

    def record_claims_expired(self, count: int) -> None:
        if count > 0:
            self.claims_expired.inc(count)

    def record_sweep_error(self, worker_id: str, stage: str) -> None:
        self.sweep_errors.labels(worker_id=worker_id, stage=stage).inc()

    def update_queue_depth(self, depth: int) -> None:
        self.queue_depth.set(depth)


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: When given, also serve /metrics over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port is not None:
        start_http_server(port)
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
