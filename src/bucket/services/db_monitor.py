"""Database Monitor - data store health probing and query metrics.

This service:
- Probes the data store with a minimal read and records its latency
- Runs the probe on a recurring schedule until stopped
- Counts queries, errors and slow queries reported by the retry executor
- Hands out copies of the current DatabaseMetrics snapshot

One monitor exists per process. The application constructs it at startup and
passes it to everything that records metrics.
"""

import asyncio
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, TypeVar

from bucket.core.logging import ServerLogger

if TYPE_CHECKING:
    from bucket.services.metrics import MetricsEmitter

T = TypeVar("T")

SLOW_QUERY_THRESHOLD_MS = 1000.0
DEFAULT_HEALTH_CHECK_INTERVAL_MS = 60000


@dataclass
class DatabaseMetrics:
    """Point-in-time view of data store health and cumulative counters."""

    is_healthy: bool = True
    latency_ms: float = 0.0
    connection_count: int = 0
    last_health_check: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error_count: int = 0
    query_count: int = 0
    slow_query_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_healthy": self.is_healthy,
            "latency_ms": round(self.latency_ms, 3),
            "connection_count": self.connection_count,
            "last_health_check": self.last_health_check.isoformat(),
            "error_count": self.error_count,
            "query_count": self.query_count,
            "slow_query_count": self.slow_query_count,
        }


class DatabaseMonitor:
    """Tracks data store health and query counters.

    Usage:
        monitor = DatabaseMonitor(probe=store.ping, metrics=emitter)
        monitor.start_health_checks(30000)
        ...
        snapshot = monitor.get_metrics()
        monitor.stop_health_checks()

    Two independent pieces of state:
    - the schedule (stopped/running), changed only by start/stop_health_checks
    - the health flag, changed only by the outcome of health_check()
    """

    def __init__(
        self,
        probe: Callable[[], Awaitable[Any]],
        *,
        logger: Optional[ServerLogger] = None,
        metrics: Optional["MetricsEmitter"] = None,
        connection_count_provider: Optional[Callable[[], int]] = None,
        default_interval_ms: int = DEFAULT_HEALTH_CHECK_INTERVAL_MS,
    ) -> None:
        """Initialize the monitor.

        Args:
            probe: Coroutine function performing a minimal read on the data store.
            logger: Logger for health events.
            metrics: Optional Prometheus emitter mirroring the counters.
            connection_count_provider: Returns the number of open connections.
            default_interval_ms: Health check period used by start().
        """
        self._probe = probe
        self._log = logger or ServerLogger("bucket.db.monitor")
        self._metrics_emitter = metrics
        self._connection_count_provider = connection_count_provider
        self._default_interval_ms = default_interval_ms

        self._snapshot = DatabaseMetrics()
        self._query_count = 0
        self._error_count = 0
        self._slow_query_count = 0

        self._health_check_task: Optional[asyncio.Task[None]] = None
        self._interval_ms: Optional[int] = None

    # -------------------------------------------------------------------------
    # Health checks
    # -------------------------------------------------------------------------

    async def health_check(self) -> DatabaseMetrics:
        """Probe the data store once and update the snapshot.

        Never raises on probe failure: the failure is counted, logged and
        reflected as is_healthy=False.
        """
        was_healthy = self._snapshot.is_healthy
        started = time.perf_counter()
        try:
            await self._probe()
        except Exception as e:
            self._error_count += 1
            self._snapshot = replace(
                self._snapshot,
                is_healthy=False,
                last_health_check=datetime.now(timezone.utc),
            )
            self._note_health_change(was_healthy)
            if self._metrics_emitter:
                self._metrics_emitter.record_db_error()
                self._metrics_emitter.update_db_health(False)
            self._log.error(
                "Database health check failed",
                e,
                is_healthy=False,
                error_count=self._error_count,
                total_queries=self._query_count,
            )
            return self.get_metrics()

        latency_ms = (time.perf_counter() - started) * 1000.0
        self._snapshot = replace(
            self._snapshot,
            is_healthy=True,
            latency_ms=latency_ms,
            connection_count=self._current_connection_count(),
            last_health_check=datetime.now(timezone.utc),
        )
        if self._metrics_emitter:
            self._metrics_emitter.update_db_health(True, latency_ms)
        self._note_health_change(was_healthy)

        self._log.info(
            "Database health check completed",
            is_healthy=True,
            latency_ms=round(latency_ms, 3),
            query_count=self._query_count,
            error_count=self._error_count,
            slow_query_count=self._slow_query_count,
        )
        return self.get_metrics()

    def _note_health_change(self, was_healthy: bool) -> None:
        if was_healthy != self._snapshot.is_healthy:
            self._log.log_state_change(
                "DatabaseMonitor",
                "health_check",
                {"is_healthy": was_healthy},
                {"is_healthy": self._snapshot.is_healthy},
            )

    def _current_connection_count(self) -> int:
        if self._connection_count_provider is None:
            return 0
        try:
            return int(self._connection_count_provider())
        except Exception as e:
            self._log.warn("connection_count_unavailable", error=str(e))
            return self._snapshot.connection_count

    async def is_healthy(self) -> bool:
        """Run a health check and return only the health flag."""
        metrics = await self.health_check()
        return metrics.is_healthy

    @property
    def is_monitoring(self) -> bool:
        """Whether the recurring health check schedule is active."""
        return self._health_check_task is not None and not self._health_check_task.done()

    @property
    def interval_ms(self) -> Optional[int]:
        """Period of the active schedule, None when stopped."""
        return self._interval_ms if self.is_monitoring else None

    def start_health_checks(self, interval_ms: int = DEFAULT_HEALTH_CHECK_INTERVAL_MS) -> None:
        """Start probing every interval_ms, replacing any running schedule.

        Must be called from a running event loop.
        """
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be positive, got {interval_ms}")

        if self._health_check_task is not None:
            self._health_check_task.cancel()

        loop = asyncio.get_running_loop()
        self._interval_ms = interval_ms
        self._health_check_task = loop.create_task(
            self._health_check_loop(interval_ms / 1000.0),
            name="db-health-check",
        )

        self._log.info(
            "Database health monitoring started",
            interval_ms=interval_ms,
            check_frequency=f"{interval_ms / 1000}s",
        )

    def stop_health_checks(self) -> None:
        """Cancel the recurring schedule. Safe to call when not running."""
        task = self._health_check_task
        if task is None:
            return

        task.cancel()
        self._health_check_task = None
        self._interval_ms = None
        self._log.info("Database health monitoring stopped")

    async def _health_check_loop(self, interval_seconds: float) -> None:
        """First probe fires one interval after the schedule starts."""
        while True:
            await asyncio.sleep(interval_seconds)
            await self.health_check()

    # -------------------------------------------------------------------------
    # Counters
    # -------------------------------------------------------------------------

    def record_query(self, duration_ms: float) -> None:
        """Count a completed query; durations above 1000 ms also count as slow."""
        self._query_count += 1
        is_slow = duration_ms > SLOW_QUERY_THRESHOLD_MS
        if is_slow:
            self._slow_query_count += 1
        if self._metrics_emitter:
            self._metrics_emitter.record_db_query(duration_ms, slow=is_slow)

    def record_error(self) -> None:
        self._error_count += 1
        if self._metrics_emitter:
            self._metrics_emitter.record_db_error()

    def get_metrics(self) -> DatabaseMetrics:
        """Copy of the current snapshot with live counter values.

        Mutating the returned object does not affect the monitor.
        """
        return replace(
            self._snapshot,
            query_count=self._query_count,
            error_count=self._error_count,
            slow_query_count=self._slow_query_count,
        )

    def reset_counters(self) -> None:
        """Zero query, error and slow query counts.

        Health flag, latency and last check time are left untouched.
        """
        self._query_count = 0
        self._error_count = 0
        self._slow_query_count = 0
        self._log.info("Database metrics counters reset")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Run an initial probe, then schedule the default interval."""
        await self.health_check()
        self.start_health_checks(self._default_interval_ms)

    async def stop(self) -> None:
        """Stop the schedule and wait for the loop task to finish."""
        task = self._health_check_task
        self.stop_health_checks()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass


async def with_database_monitoring(
    operation: Callable[[], Awaitable[T]],
    operation_name: str,
    *,
    monitor: DatabaseMonitor,
    logger: Optional[ServerLogger] = None,
) -> T:
    """Run one attempt of an operation, recording its timing or failure.

    Failures are re-raised unchanged.
    """
    logger = logger or ServerLogger("bucket.db.monitor")
    started = time.perf_counter()

    try:
        result = await operation()
    except Exception as e:
        query_time_ms = (time.perf_counter() - started) * 1000.0
        monitor.record_error()
        logger.error(
            f"Database operation failed: {operation_name}",
            e,
            operation_name=operation_name,
            query_time_ms=round(query_time_ms, 2),
            success=False,
        )
        raise

    query_time_ms = (time.perf_counter() - started) * 1000.0
    monitor.record_query(query_time_ms)
    logger.info(
        f"Database operation completed: {operation_name}",
        operation_name=operation_name,
        query_time_ms=round(query_time_ms, 2),
        success=True,
    )
    return result
