"""Core framework infrastructure - config, logging, lifecycle, retry."""

from bucket.core.config import ConfigManager
from bucket.core.logging import LogContext, LogValue, ServerLogger, setup_logging
from bucket.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus
from bucket.core.retry import (
    BucketError,
    DatabaseRetryError,
    ErrorClassifier,
    RetryOptions,
    STANDARD_RETRY,
    QUICK_RETRY,
    PATIENT_RETRY,
    RETRY_PRESETS,
    is_retryable_error,
    with_retry,
    with_retry_and_monitoring,
)

__all__ = [
    # Config
    "ConfigManager",
    # Logging
    "LogContext",
    "LogValue",
    "ServerLogger",
    "setup_logging",
    # Lifecycle
    "BaseComponent",
    "HealthCheckResult",
    "HealthStatus",
    # Retry - Errors
    "BucketError",
    "DatabaseRetryError",
    # Retry - Classification
    "ErrorClassifier",
    "is_retryable_error",
    # Retry - Options
    "RetryOptions",
    "STANDARD_RETRY",
    "QUICK_RETRY",
    "PATIENT_RETRY",
    "RETRY_PRESETS",
    # Retry - Executor
    "with_retry",
    "with_retry_and_monitoring",
]
