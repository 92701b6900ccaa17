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

from taskscheduler.constants import (
    METRIC_CURSOR_RESTARTS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_COLLECTED,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_SUBMITTED,
    METRIC_LOCAL_QUEUE_SIZE,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the task scheduler.

    Collects metrics for:
    - Job submissions
    - Jobs collected by dispatchers
    - Job completions and execution duration
    - Postponed jobs held in local queues
    - Cursor restarts
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        # Jobs submitted counter
        self.jobs_submitted = Counter(
            METRIC_JOBS_SUBMITTED,
            "Total number of jobs submitted",
            ["job_class"],
            registry=self._registry,
        )

        # Jobs collected counter
        self.jobs_collected = Counter(
            METRIC_JOBS_COLLECTED,
            "Total number of jobs collected for processing",
            ["dispatcher_id"],
            registry=self._registry,
        )

        # Jobs completed counter
        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of jobs completed",
            ["job_class", "status"],
            registry=self._registry,
        )

        # Job duration histogram
        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["job_class", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        # Postponed jobs waiting in local queues
        self.local_queue_size = Gauge(
            METRIC_LOCAL_QUEUE_SIZE,
            "Number of postponed jobs held in the local queue",
            ["dispatcher_id"],
            registry=self._registry,
        )

        # Cursor restarts counter
        self.cursor_restarts = Counter(
            METRIC_CURSOR_RESTARTS,
            "Total number of queue cursor restarts",
            ["reason"],
            registry=self._registry,
        )

    def record_job_submitted(self, job_class: str) -> None:
        """Record a job submission."""
        self.jobs_submitted.labels(job_class=job_class).inc()

    def record_job_collected(self, dispatcher_id: str) -> None:
        """Record a job collected by a dispatcher."""
        self.jobs_collected.labels(dispatcher_id=dispatcher_id).inc()

    def record_job_completed(
        self,
        job_class: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record a job completion."""
        self.jobs_completed.labels(job_class=job_class, status=status).inc()
        self.job_duration.labels(job_class=job_class, status=status).observe(
            duration_seconds
        )

    def update_local_queue_size(self, dispatcher_id: str, size: int) -> None:
        """Update the local queue size of a dispatcher."""
        self.local_queue_size.labels(dispatcher_id=dispatcher_id).set(size)

    def record_cursor_restart(self, reason: str) -> None:
        """Record a cursor restart."""
        self.cursor_restarts.labels(reason=reason).inc()


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: If given, serve the metrics over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port:
        start_http_server(port, registry=_metrics._registry)
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
