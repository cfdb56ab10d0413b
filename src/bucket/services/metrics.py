"""
Prometheus metrics emission for Bucket.

Mirrors the database monitor's counters and probe results so they can be
scraped from /metrics. All metrics use the 'bucket_' prefix.
"""
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from bucket import __version__


class MetricsEmitter:
    """Prometheus metrics emission (emit only, no reading).

    Usage:
        emitter = MetricsEmitter()
        emitter.record_db_query(12.5)
        emitter.update_db_health(True, latency_ms=3.2)
        metrics_output = emitter.get_metrics()
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        """Initialize MetricsEmitter.

        Args:
            registry: Optional registry (a fresh one is created if not provided)
        """
        self._registry = registry or CollectorRegistry()

        self._info = Info(
            "bucket",
            "Bucket file sharing service information",
            registry=self._registry,
        )
        self._info.info({
            "version": __version__,
            "component": "bucket",
        })

        self._uptime = Gauge(
            "bucket_uptime_seconds",
            "Process uptime in seconds",
            registry=self._registry,
        )

        # Database query metrics
        self._db_queries = Counter(
            "bucket_db_queries_total",
            "Database queries completed",
            registry=self._registry,
        )

        self._db_slow_queries = Counter(
            "bucket_db_slow_queries_total",
            "Database queries slower than 1000ms",
            registry=self._registry,
        )

        self._db_errors = Counter(
            "bucket_db_errors_total",
            "Database operation and health check failures",
            registry=self._registry,
        )

        # Query time buckets span 1ms to 10s
        self._db_query_duration = Histogram(
            "bucket_db_query_duration_seconds",
            "Database query duration in seconds",
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self._registry,
        )

        # Health probe
        self._db_healthy = Gauge(
            "bucket_db_healthy",
            "Database health (1=healthy, 0=unhealthy)",
            registry=self._registry,
        )
        self._db_healthy.set(1)

        self._db_latency = Gauge(
            "bucket_db_health_check_latency_seconds",
            "Latency of the last successful database health probe",
            registry=self._registry,
        )

        self._health_checks = Counter(
            "bucket_db_health_checks_total",
            "Database health checks performed",
            ["result"],
            registry=self._registry,
        )

        # File operations
        self._file_operations = Counter(
            "bucket_file_operations_total",
            "File metadata operations",
            ["operation", "status"],
            registry=self._registry,
        )

    def record_db_query(self, duration_ms: float, slow: bool = False) -> None:
        """Record a completed database query.

        Args:
            duration_ms: Query time in milliseconds
            slow: Whether the query crossed the slow query threshold
        """
        self._db_queries.inc()
        self._db_query_duration.observe(duration_ms / 1000.0)
        if slow:
            self._db_slow_queries.inc()

    def record_db_error(self) -> None:
        self._db_errors.inc()

    def update_db_health(self, healthy: bool, latency_ms: Optional[float] = None) -> None:
        """Record the outcome of a health probe.

        Args:
            healthy: Whether the probe succeeded
            latency_ms: Probe latency in milliseconds (successful probes only)
        """
        self._db_healthy.set(1 if healthy else 0)
        self._health_checks.labels(result="healthy" if healthy else "unhealthy").inc()
        if latency_ms is not None:
            self._db_latency.set(latency_ms / 1000.0)

    def record_file_operation(self, operation: str, status: str = "success") -> None:
        """Record a file metadata operation.

        Args:
            operation: Operation name (create, delete, lookup, ...)
            status: Outcome (success, error)
        """
        self._file_operations.labels(operation=operation, status=status).inc()

    def update_uptime(self, seconds: float) -> None:
        self._uptime.set(seconds)

    def get_metrics(self) -> str:
        """Get metrics in Prometheus text format."""
        return generate_latest(self._registry).decode("utf-8")

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry
