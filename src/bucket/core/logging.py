"""
Structured logging setup using structlog.

Provides:
- setup_logging() to configure structlog + stdlib logging once at startup
- ServerLogger, a leveled logger taking a message plus a context mapping,
  with debug gating, exception folding and named in-flight timers
- LogContext / LogValue types and coercion so every event stays serializable

Usage:
    from bucket.core.logging import ServerLogger, setup_logging

    setup_logging(level="INFO", json_output=True)
    logger = ServerLogger("bucket.api")

    logger.info("file_uploaded", {"file_id": "abc", "size": 1024})
    logger.start_timer("req_1", "list_files", {"user_id": "u1"})
    ...
    duration_ms = logger.end_timer("req_1")
"""
import logging
import random
import string
import sys
import time
import traceback
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Union

import structlog

from bucket.core.config import ConfigManager

LogValue = Union[str, int, float, bool, None, Mapping[str, "LogValue"]]
LogContext = Mapping[str, LogValue]

# Keys structlog uses for its own event fields
_RESERVED_KEYS = frozenset({"event", "level", "timestamp", "logger"})


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
    cache_loggers: bool = True,
) -> structlog.stdlib.BoundLogger:
    """Configure structured logging for Bucket.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, output JSON formatted logs
        log_file: Optional file path for log output
        cache_loggers: Cache bound loggers on first use (disable in tests)

    Returns:
        Configured logger instance
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handlers: list[logging.Handler] = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    handlers.append(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        handlers.append(file_handler)

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        handlers=handlers,
        force=True,
    )

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(
                colors=sys.stdout.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=cache_loggers,
    )

    return structlog.get_logger("bucket")


def get_logger(name: str = "bucket") -> structlog.stdlib.BoundLogger:
    """Get a logger instance, prefixing the name with 'bucket.'."""
    if not name.startswith("bucket"):
        name = f"bucket.{name}"
    return structlog.get_logger(name)


def coerce_log_value(value: Any) -> LogValue:
    """Coerce an arbitrary value into the LogValue union.

    Nested mappings are coerced recursively; anything that is not a string,
    number, bool, None or mapping is rendered as a string.
    """
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, Mapping):
        return {str(k): coerce_log_value(v) for k, v in value.items()}
    if isinstance(value, Enum):
        return coerce_log_value(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return str(value)


def coerce_context(context: Optional[Mapping[str, Any]]) -> dict[str, LogValue]:
    """Coerce a context mapping, renaming keys that clash with structlog's."""
    if not context:
        return {}
    coerced: dict[str, LogValue] = {}
    for key, value in context.items():
        key = str(key)
        if key in _RESERVED_KEYS:
            key = f"context_{key}"
        coerced[key] = coerce_log_value(value)
    return coerced


def generate_request_id() -> str:
    """Generate a request id like ``req_1718000000000_k3j9x0a2b``."""
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(random.choices(alphabet, k=9))
    return f"req_{int(time.time() * 1000)}_{suffix}"


@dataclass
class _Timer:
    operation: str
    started_at: float
    context: dict[str, LogValue] = field(default_factory=dict)


class ServerLogger:
    """Leveled structured logger with timers.

    Every call emits a single structlog event carrying the message, the level,
    an ISO timestamp (added by the configured processors) and the coerced
    context. ``debug`` is dropped unless debug logging is enabled.

    Args:
        name: Logger name passed to structlog.
        debug_enabled: Emit debug events. When None, resolved from the
            environment (development mode or DEBUG_MODE=true).
        clock: Monotonic clock in seconds used by the timers.
    """

    def __init__(
        self,
        name: str = "bucket",
        debug_enabled: Optional[bool] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        if debug_enabled is None:
            debug_enabled = ConfigManager().debug_enabled
        self._debug_enabled = debug_enabled
        self._clock = clock
        self._log = structlog.get_logger(name)
        self._timers: dict[str, _Timer] = {}

    @property
    def debug_enabled(self) -> bool:
        return self._debug_enabled

    @property
    def active_timers(self) -> list[str]:
        """Ids of timers that have been started but not ended."""
        return list(self._timers)

    @staticmethod
    def _merge(context: Optional[Mapping[str, Any]], fields: Mapping[str, Any]) -> dict[str, LogValue]:
        merged = coerce_context(context)
        merged.update(coerce_context(fields))
        return merged

    def debug(self, message: str, context: Optional[Mapping[str, Any]] = None, **fields: Any) -> None:
        if not self._debug_enabled:
            return
        self._log.debug(message, **self._merge(context, fields))

    def info(self, message: str, context: Optional[Mapping[str, Any]] = None, **fields: Any) -> None:
        self._log.info(message, **self._merge(context, fields))

    def warn(self, message: str, context: Optional[Mapping[str, Any]] = None, **fields: Any) -> None:
        self._log.warning(message, **self._merge(context, fields))

    warning = warn

    def error(
        self,
        message: str,
        error: Optional[BaseException] = None,
        context: Optional[Mapping[str, Any]] = None,
        **fields: Any,
    ) -> None:
        """Log an error, folding the cause's message and stack into the context."""
        merged = self._merge(context, fields)
        if error is not None:
            merged["error"] = str(error)
            merged["error_type"] = type(error).__name__
            merged["stack"] = "".join(traceback.format_exception(error))
        self._log.error(message, **merged)

    # -------------------------------------------------------------------------
    # Timers
    # -------------------------------------------------------------------------

    def start_timer(
        self,
        timer_id: str,
        operation: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Start (or restart) a named timer."""
        started_at = self._clock()
        timer = _Timer(operation=operation, started_at=started_at, context=coerce_context(context))
        self._timers[timer_id] = timer
        self.debug(f"Started {operation}", timer.context, timer_id=timer_id)

    def end_timer(self, timer_id: str) -> Optional[float]:
        """Stop a timer and return its duration in milliseconds.

        Returns None (and logs a warning) when no timer with that id exists.
        """
        timer = self._timers.pop(timer_id, None)
        if timer is None:
            self.warn(f"No timer found for operation: {timer_id}", timer_id=timer_id)
            return None

        duration_ms = (self._clock() - timer.started_at) * 1000.0
        self.info(
            f"Completed {timer.operation}",
            timer.context,
            timer_id=timer_id,
            duration_ms=round(duration_ms, 2),
        )
        return duration_ms

    # -------------------------------------------------------------------------
    # Convenience helpers
    # -------------------------------------------------------------------------

    def log_api_operation(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration_ms: float,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.info(
            f"API {method.upper()} {endpoint}",
            context,
            status=status,
            duration_ms=round(duration_ms, 2),
        )

    def log_file_operation(
        self,
        operation: str,
        file_id: str,
        file_name: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.info(f"File {operation}", context, file_id=file_id, file_name=file_name)

    def log_state_change(
        self,
        component: str,
        operation: str,
        before: Any,
        after: Any,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Debug-level record of a before/after state transition."""
        self.debug(
            f"State change in {component}",
            context,
            operation=operation,
            before=coerce_log_value(before),
            after=coerce_log_value(after),
        )
