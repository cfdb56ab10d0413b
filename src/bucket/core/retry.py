"""
Retry logic with exponential backoff for database operations.

This module provides:
- Error types (BucketError base, terminal DatabaseRetryError)
- Keyword-based classification of transient database errors
- RetryOptions plus pre-configured presets (standard, quick, patient)
- with_retry(), which drives an async operation through tenacity and
  reports every attempt to the database monitor and the logger

Usage:
    from bucket.core.retry import with_retry, QUICK_RETRY

    record = await with_retry(
        lambda: store.get_by_slug(slug),
        "get_file_by_slug",
        QUICK_RETRY,
        monitor=app.db_monitor,
    )
"""

import asyncio
import time
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Mapping, Optional, TypeVar, Union

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from bucket.core.logging import ServerLogger

if TYPE_CHECKING:
    from bucket.core.config import ConfigManager
    from bucket.services.db_monitor import DatabaseMonitor

T = TypeVar("T")

log = ServerLogger("bucket.db.retry")


# =============================================================================
# Errors
# =============================================================================


class BucketError(Exception):
    """Base exception for all Bucket errors."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message


class DatabaseRetryError(BucketError):
    """A database operation gave up: retries exhausted or error not retryable.

    Attributes:
        original_error: The last exception raised by the operation.
        operation_name: Name the caller gave the operation.
        attempt_count: Total attempts made, including the first.
    """

    def __init__(self, operation_name: str, original_error: BaseException, attempt_count: int):
        super().__init__(
            f"Database operation failed after {attempt_count} attempts: {operation_name}",
            cause=original_error,
        )
        self.operation_name = operation_name
        self.original_error = original_error
        self.attempt_count = attempt_count


# =============================================================================
# Error Classification
# =============================================================================

DEFAULT_RETRYABLE_KEYWORDS: tuple[str, ...] = (
    "connection",
    "timeout",
    "network",
    "server_error",
    "temporary",
    "unavailable",
    "busy",
    "locked",
    "deadlock",
)


class ErrorClassifier:
    """Decides whether a failed database call is worth retrying.

    An error is retryable when its lowercased message contains any of the
    configured keywords. Errors with an empty message never match.
    """

    def __init__(self, keywords: Iterable[str] = DEFAULT_RETRYABLE_KEYWORDS) -> None:
        self._keywords = tuple(k.strip().lower() for k in keywords if k and k.strip())

    @classmethod
    def from_config(cls, config: "ConfigManager") -> "ErrorClassifier":
        """Build from ``retry.retryable_keywords``, falling back to the defaults."""
        keywords = config.get_list("retry.retryable_keywords")
        if not keywords:
            return cls()
        return cls(str(k) for k in keywords)

    @property
    def keywords(self) -> tuple[str, ...]:
        return self._keywords

    def is_retryable(self, error: BaseException) -> bool:
        message = str(error).lower()
        if not message:
            return False
        return any(keyword in message for keyword in self._keywords)

    __call__ = is_retryable


default_classifier = ErrorClassifier()


def is_retryable_error(error: BaseException) -> bool:
    """Check an error against the default retryable keyword set."""
    return default_classifier.is_retryable(error)


# =============================================================================
# Retry Options
# =============================================================================

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_MS = 1000.0
DEFAULT_MAX_DELAY_MS = 10000.0
DEFAULT_BACKOFF_FACTOR = 2.0


@dataclass(frozen=True)
class RetryOptions:
    """Retry behavior for one with_retry() call.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1).
        base_delay_ms: Delay before the first retry.
        max_delay_ms: Cap applied to every delay.
        backoff_factor: Multiplier applied per further retry.
        retry_condition: Predicate deciding whether an error is retryable.
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay_ms: float = DEFAULT_BASE_DELAY_MS
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    retry_condition: Callable[[BaseException], bool] = field(
        default=is_retryable_error, compare=False
    )

    def __post_init__(self) -> None:
        if not isinstance(self.max_retries, int) or self.max_retries < 0:
            raise ValueError(f"max_retries must be a non-negative integer, got {self.max_retries!r}")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("retry delays must be non-negative")
        if self.backoff_factor <= 0:
            raise ValueError(f"backoff_factor must be positive, got {self.backoff_factor!r}")

    @classmethod
    def from_dict(cls, config_dict: Mapping[str, Any]) -> "RetryOptions":
        """Create options from a mapping such as the ``[retry]`` config section.

        Unknown keys are ignored; missing keys use the defaults.
        """
        return cls(
            max_retries=int(config_dict.get("max_retries", DEFAULT_MAX_RETRIES)),
            base_delay_ms=float(config_dict.get("base_delay_ms", DEFAULT_BASE_DELAY_MS)),
            max_delay_ms=float(config_dict.get("max_delay_ms", DEFAULT_MAX_DELAY_MS)),
            backoff_factor=float(config_dict.get("backoff_factor", DEFAULT_BACKOFF_FACTOR)),
            retry_condition=config_dict.get("retry_condition", is_retryable_error),
        )

    @classmethod
    def from_config(cls, config: "ConfigManager") -> "RetryOptions":
        """Options from the ``[retry]`` section, classified with its keyword list."""
        section = dict(config.get_section("retry"))
        section["retry_condition"] = ErrorClassifier.from_config(config)
        return cls.from_dict(section)

    def with_overrides(self, **changes: Any) -> "RetryOptions":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for_attempt(self, attempt: int) -> float:
        """Delay in ms to wait after the given (1-indexed) failed attempt."""
        return min(self.base_delay_ms * (self.backoff_factor ** (attempt - 1)), self.max_delay_ms)

    @property
    def max_total_delay_ms(self) -> float:
        """Worst-case time spent sleeping across all retries."""
        return sum(self.delay_for_attempt(n) for n in range(1, self.max_retries + 1))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("retry_condition")
        return data


STANDARD_RETRY = RetryOptions(max_retries=3, base_delay_ms=1000, max_delay_ms=5000, backoff_factor=2)
QUICK_RETRY = RetryOptions(max_retries=2, base_delay_ms=500, max_delay_ms=2000, backoff_factor=2)
PATIENT_RETRY = RetryOptions(max_retries=5, base_delay_ms=2000, max_delay_ms=15000, backoff_factor=1.5)

RETRY_PRESETS: dict[str, RetryOptions] = {
    "standard": STANDARD_RETRY,
    "quick": QUICK_RETRY,
    "patient": PATIENT_RETRY,
}

OptionsLike = Union[RetryOptions, Mapping[str, Any], None]


def resolve_options(options: OptionsLike) -> RetryOptions:
    """Overlay caller-supplied options on the defaults."""
    if options is None:
        return RetryOptions()
    if isinstance(options, RetryOptions):
        return options
    return RetryOptions().with_overrides(**dict(options))


# =============================================================================
# Retry Executor
# =============================================================================


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    operation_name: str,
    options: OptionsLike = None,
    *,
    monitor: Optional["DatabaseMonitor"] = None,
    logger: Optional[ServerLogger] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run a database operation, retrying transient failures with backoff.

    Attempts are strictly sequential. The delay after failed attempt n is
    min(base_delay_ms * backoff_factor ** (n - 1), max_delay_ms).

    Args:
        operation: Zero-argument coroutine function to run.
        operation_name: Name used in logs and in the terminal error.
        options: RetryOptions, or a mapping of RetryOptions field overrides.
        monitor: Database monitor receiving query/error counts.
        logger: Logger for attempt events (module logger by default).
        sleep: Awaitable sleep taking seconds; replaceable in tests.

    Returns:
        The operation's result.

    Raises:
        DatabaseRetryError: When retries are exhausted or the error is not
            retryable. Cancellation propagates unchanged.
    """
    opts = resolve_options(options)
    logger = logger or log
    attempt_number = 0

    def should_retry(error: BaseException) -> bool:
        return isinstance(error, Exception) and opts.retry_condition(error)

    def before_sleep(state: RetryCallState) -> None:
        delay_seconds = state.next_action.sleep if state.next_action else 0.0
        logger.info(
            f"Retrying database operation: {operation_name}",
            operation_name=operation_name,
            attempt_number=state.attempt_number,
            next_attempt_in_ms=round(delay_seconds * 1000.0, 3),
            max_retries=opts.max_retries,
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(opts.max_attempts),
        wait=wait_exponential(
            multiplier=opts.base_delay_ms / 1000.0,
            exp_base=opts.backoff_factor,
            max=opts.max_delay_ms / 1000.0,
        ),
        retry=retry_if_exception(should_retry),
        before_sleep=before_sleep,
        sleep=sleep,
        reraise=True,
    )

    try:
        async for attempt in retrying:
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                started = time.perf_counter()
                try:
                    result = await operation()
                except Exception as exc:
                    logger.warn(
                        f"Database operation failed (attempt {attempt_number}): {operation_name}",
                        operation_name=operation_name,
                        attempt_number=attempt_number,
                        error_message=str(exc),
                        error_type=type(exc).__name__,
                        will_retry=attempt_number <= opts.max_retries and should_retry(exc),
                    )
                    if monitor is not None:
                        monitor.record_error()
                    raise

                query_time_ms = (time.perf_counter() - started) * 1000.0
                if attempt_number > 1:
                    logger.info(
                        f"Database operation succeeded after retry: {operation_name}",
                        operation_name=operation_name,
                        attempt_number=attempt_number,
                        query_time_ms=round(query_time_ms, 2),
                        success=True,
                    )
                if monitor is not None:
                    monitor.record_query(query_time_ms)
                return result
    except Exception as exc:
        raise DatabaseRetryError(operation_name, exc, attempt_number) from exc


async def with_retry_and_monitoring(
    operation: Callable[[], Awaitable[T]],
    operation_name: str,
    options: OptionsLike = None,
    *,
    monitor: Optional["DatabaseMonitor"] = None,
    logger: Optional[ServerLogger] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """with_retry() plus a completion/failure event covering all attempts."""
    logger = logger or log
    started = time.perf_counter()

    try:
        result = await with_retry(
            operation,
            operation_name,
            options,
            monitor=monitor,
            logger=logger,
            sleep=sleep,
        )
    except DatabaseRetryError as e:
        logger.error(
            f"Database operation failed after retries: {operation_name}",
            e.original_error,
            operation_name=operation_name,
            total_time_ms=round((time.perf_counter() - started) * 1000.0, 2),
            attempt_count=e.attempt_count,
            success=False,
        )
        raise

    logger.info(
        f"Database operation completed with retry: {operation_name}",
        operation_name=operation_name,
        total_time_ms=round((time.perf_counter() - started) * 1000.0, 2),
        success=True,
    )
    return result
