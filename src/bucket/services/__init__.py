"""Services - business logic with single responsibility."""

from bucket.services.metrics import MetricsEmitter
from bucket.services.db_monitor import DatabaseMetrics, DatabaseMonitor, with_database_monitoring
from bucket.services.file_store import FileRecord, FileRecordNotFoundError, FileStore
from bucket.services.health import HealthServer

__all__ = [
    "MetricsEmitter",
    "DatabaseMetrics",
    "DatabaseMonitor",
    "with_database_monitoring",
    "FileRecord",
    "FileRecordNotFoundError",
    "FileStore",
    "HealthServer",
]
