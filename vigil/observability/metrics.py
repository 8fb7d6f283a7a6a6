"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from vigil.constants import (
    METRIC_CLAIMED,
    METRIC_DEAD_LETTER_REQUEUES,
    METRIC_DEAD_LETTERS,
    METRIC_ENQUEUED,
    METRIC_EXECUTION_DURATION,
    METRIC_INGESTED,
    METRIC_LEASES_RECLAIMED,
    METRIC_LOCK_ATTEMPTS,
    METRIC_OUTCOMES,
    METRIC_QUEUE_DEPTH,
    METRIC_SCAN_SUBJECTS,
)
from vigil.types.job import QueueStats

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the queues.

    Collects metrics for:
    - Queue depth per status
    - Enqueues, claims and outcomes
    - Execution duration
    - Stale lease reclaims and lock contention
    - Scheduler scans and dead-letter triage
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
            "Number of records per queue and status",
            ["queue", "status"],
            registry=self._registry,
        )
        self.enqueued = Counter(
            METRIC_ENQUEUED,
            "Enqueue calls by result",
            ["queue", "result"],
            registry=self._registry,
        )
        self.claimed = Counter(
            METRIC_CLAIMED,
            "Records claimed",
            ["queue"],
            registry=self._registry,
        )
        self.outcomes = Counter(
            METRIC_OUTCOMES,
            "Execution outcomes by resulting status and error category",
            ["queue", "status", "category"],
            registry=self._registry,
        )
        self.execution_duration = Histogram(
            METRIC_EXECUTION_DURATION,
            "Executor duration in seconds",
            ["queue", "job_type"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )
        self.leases_reclaimed = Counter(
            METRIC_LEASES_RECLAIMED,
            "Expired leases returned to pending",
            ["queue"],
            registry=self._registry,
        )
        self.lock_attempts = Counter(
            METRIC_LOCK_ATTEMPTS,
            "Lock acquisition attempts",
            ["lock_key", "result"],
            registry=self._registry,
        )
        self.scan_subjects = Counter(
            METRIC_SCAN_SUBJECTS,
            "Subjects examined by scheduler scans",
            ["scan", "result"],
            registry=self._registry,
        )
        self.dead_letters = Gauge(
            METRIC_DEAD_LETTERS,
            "Dead-lettered records by category",
            ["queue", "category"],
            registry=self._registry,
        )
        self.dead_letter_requeues = Counter(
            METRIC_DEAD_LETTER_REQUEUES,
            "Dead letters moved back to pending",
            ["queue", "reason"],
            registry=self._registry,
        )
        self.ingested = Counter(
            METRIC_INGESTED,
            "Inbound notifications by result",
            ["topic", "result"],
            registry=self._registry,
        )

    def record_enqueue(self, queue: str, created: bool) -> None:
        self.enqueued.labels(queue=queue, result="created" if created else "duplicate").inc()

    def record_claimed(self, queue: str, count: int) -> None:
        if count:
            self.claimed.labels(queue=queue).inc(count)

    def record_outcome(
        self,
        queue: str,
        job_type: str,
        status: str,
        category: str | None,
        duration_seconds: float,
    ) -> None:
        """Record a reported execution outcome."""
        self.outcomes.labels(queue=queue, status=status, category=category or "none").inc()
        self.execution_duration.labels(queue=queue, job_type=job_type).observe(duration_seconds)

    def record_reclaimed(self, queue: str, count: int) -> None:
        if count:
            self.leases_reclaimed.labels(queue=queue).inc(count)

    def record_lock_attempt(self, lock_key: str, acquired: bool) -> None:
        self.lock_attempts.labels(lock_key=lock_key, result="acquired" if acquired else "contended").inc()

    def record_scan_subject(self, scan: str, result: str) -> None:
        self.scan_subjects.labels(scan=scan, result=result).inc()

    def record_ingested(self, topic: str, result: str) -> None:
        self.ingested.labels(topic=topic, result=result).inc()

    def record_requeue(self, queue: str, reason: str) -> None:
        self.dead_letter_requeues.labels(queue=queue, reason=reason).inc()

    def update_queue_stats(self, queue: str, stats: QueueStats) -> None:
        """Publish a stats snapshot as gauges."""
        for status, value in stats.as_dict().items():
            self.queue_depth.labels(queue=queue, status=status).set(value)

    def update_dead_letters(self, queue: str, by_category: dict[str, int]) -> None:
        for category, value in by_category.items():
            self.dead_letters.labels(queue=queue, category=category).set(value)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """Get the metrics collector instance, creating it on first use."""
    if _metrics is None:
        return setup_metrics()
    return _metrics
