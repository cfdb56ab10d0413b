"""
Unit tests for database retry logic.

Tests:
- Keyword-based error classification
- RetryOptions defaults, validation, presets and delay schedule
- with_retry attempt counting, backoff delays, monitor and log reporting
- Cancellation during the operation and during the backoff sleep
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from bucket.core.config import ConfigManager
from bucket.core.retry import (
    DEFAULT_RETRYABLE_KEYWORDS,
    PATIENT_RETRY,
    QUICK_RETRY,
    RETRY_PRESETS,
    STANDARD_RETRY,
    BucketError,
    DatabaseRetryError,
    ErrorClassifier,
    RetryOptions,
    is_retryable_error,
    resolve_options,
    with_retry,
    with_retry_and_monitoring,
)
from bucket.services.db_monitor import DatabaseMonitor


def failing_then(result, *errors):
    """AsyncMock raising each error in turn, then returning result."""
    return AsyncMock(side_effect=[*errors, result])


class TestErrorClassifier:
    """Tests for retryable error classification."""

    @pytest.mark.parametrize("keyword", DEFAULT_RETRYABLE_KEYWORDS)
    def test_each_keyword_is_retryable(self, keyword):
        assert is_retryable_error(RuntimeError(f"query failed: {keyword} problem")) is True

    def test_matching_is_case_insensitive(self):
        assert is_retryable_error(RuntimeError("Connection Refused")) is True
        assert is_retryable_error(OSError("DATABASE IS LOCKED")) is True

    def test_unrelated_message_is_not_retryable(self):
        assert is_retryable_error(ValueError("invalid input")) is False

    def test_empty_message_is_not_retryable(self):
        """Errors with no description fail closed."""
        assert is_retryable_error(RuntimeError()) is False
        assert is_retryable_error(RuntimeError("")) is False

    def test_custom_keywords(self):
        classifier = ErrorClassifier(["throttled", " Quota "])

        assert classifier.keywords == ("throttled", "quota")
        assert classifier(RuntimeError("request throttled")) is True
        assert classifier(RuntimeError("QUOTA exceeded")) is True
        assert classifier(RuntimeError("connection reset")) is False

    def test_blank_keywords_are_dropped(self):
        classifier = ErrorClassifier(["", "  ", "busy"])

        assert classifier.keywords == ("busy",)

    def test_from_config_reads_keyword_list(self, tmp_path):
        config_file = tmp_path / "config.toml"
        config_file.write_text('[retry]\nretryable_keywords = ["throttled"]\n')
        config = ConfigManager(config_file, environ={})

        classifier = ErrorClassifier.from_config(config)

        assert classifier.keywords == ("throttled",)

    def test_from_config_reads_comma_separated_env(self):
        config = ConfigManager(environ={"BUCKET_RETRY_RETRYABLE_KEYWORDS": "throttled, quota"})

        classifier = ErrorClassifier.from_config(config)

        assert classifier.keywords == ("throttled", "quota")

    def test_from_config_falls_back_to_defaults(self):
        classifier = ErrorClassifier.from_config(ConfigManager(environ={}))

        assert classifier.keywords == DEFAULT_RETRYABLE_KEYWORDS


class TestRetryOptions:
    """Tests for RetryOptions."""

    def test_defaults(self):
        options = RetryOptions()

        assert options.max_retries == 3
        assert options.base_delay_ms == 1000
        assert options.max_delay_ms == 10000
        assert options.backoff_factor == 2
        assert options.retry_condition is is_retryable_error
        assert options.max_attempts == 4

    def test_delay_schedule(self):
        options = RetryOptions()

        assert options.delay_for_attempt(1) == 1000
        assert options.delay_for_attempt(2) == 2000
        assert options.delay_for_attempt(3) == 4000
        assert options.delay_for_attempt(4) == 8000
        assert options.delay_for_attempt(5) == 10000

    def test_max_total_delay(self):
        assert STANDARD_RETRY.max_total_delay_ms == 1000 + 2000 + 4000
        assert RetryOptions(max_retries=0).max_total_delay_ms == 0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_retries": -1},
            {"max_retries": 1.5},
            {"base_delay_ms": -1},
            {"max_delay_ms": -10},
            {"backoff_factor": 0},
        ],
    )
    def test_invalid_options_rejected(self, kwargs):
        with pytest.raises(ValueError):
            RetryOptions(**kwargs)

    def test_presets(self):
        assert (STANDARD_RETRY.max_retries, STANDARD_RETRY.base_delay_ms, STANDARD_RETRY.max_delay_ms) == (3, 1000, 5000)
        assert (QUICK_RETRY.max_retries, QUICK_RETRY.base_delay_ms, QUICK_RETRY.max_delay_ms) == (2, 500, 2000)
        assert (PATIENT_RETRY.max_retries, PATIENT_RETRY.base_delay_ms, PATIENT_RETRY.max_delay_ms) == (5, 2000, 15000)
        assert PATIENT_RETRY.backoff_factor == 1.5
        assert RETRY_PRESETS["quick"] is QUICK_RETRY

    def test_from_dict_ignores_unknown_keys(self):
        options = RetryOptions.from_dict({"max_retries": 5, "base_delay_ms": 50, "retryable_keywords": ["x"]})

        assert options.max_retries == 5
        assert options.base_delay_ms == 50
        assert options.max_delay_ms == 10000

    def test_from_config_uses_section_and_keywords(self):
        config = ConfigManager(
            environ={
                "BUCKET_RETRY_MAX_RETRIES": "1",
                "BUCKET_RETRY_BASE_DELAY_MS": "250",
                "BUCKET_RETRY_RETRYABLE_KEYWORDS": "throttled,quota",
            }
        )

        options = RetryOptions.from_config(config)

        assert options.max_retries == 1
        assert options.base_delay_ms == 250
        assert options.retry_condition(RuntimeError("throttled")) is True
        assert options.retry_condition(RuntimeError("connection lost")) is False

    def test_resolve_options(self):
        assert resolve_options(None) == RetryOptions()
        assert resolve_options(QUICK_RETRY) is QUICK_RETRY
        assert resolve_options({"max_retries": 0}).max_retries == 0
        assert resolve_options({"max_retries": 0}).base_delay_ms == 1000

    def test_to_dict_omits_condition(self):
        assert RetryOptions().to_dict() == {
            "max_retries": 3,
            "base_delay_ms": 1000.0,
            "max_delay_ms": 10000.0,
            "backoff_factor": 2.0,
        }


class TestDatabaseRetryError:
    """Tests for the terminal retry error."""

    def test_carries_attempt_details(self):
        cause = RuntimeError("connection lost")
        error = DatabaseRetryError("get_file", cause, 4)

        assert isinstance(error, BucketError)
        assert error.operation_name == "get_file"
        assert error.original_error is cause
        assert error.attempt_count == 4
        assert "after 4 attempts: get_file" in str(error)
        assert "caused by: connection lost" in str(error)


class TestWithRetry:
    """Tests for the with_retry executor."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self, mock_monitor, mock_logger, recorded_sleeps):
        operation = AsyncMock(return_value="ok")

        result = await with_retry(
            operation, "list_files", monitor=mock_monitor, logger=mock_logger, sleep=recorded_sleeps
        )

        assert result == "ok"
        assert operation.await_count == 1
        assert recorded_sleeps.delays == []
        mock_monitor.record_query.assert_called_once()
        mock_monitor.record_error.assert_not_called()
        mock_logger.warn.assert_not_called()

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, mock_monitor, mock_logger, recorded_sleeps):
        operation = failing_then(
            "row",
            RuntimeError("connection timeout"),
            RuntimeError("connection timeout"),
        )
        options = RetryOptions(max_retries=3, base_delay_ms=100, backoff_factor=2)

        result = await with_retry(
            operation, "get_file", options, monitor=mock_monitor, logger=mock_logger, sleep=recorded_sleeps
        )

        assert result == "row"
        assert operation.await_count == 3
        assert recorded_sleeps.delays == pytest.approx([0.1, 0.2])
        assert mock_monitor.record_error.call_count == 2
        mock_monitor.record_query.assert_called_once()

    @pytest.mark.asyncio
    async def test_exhausts_retries(self, mock_monitor, mock_logger, recorded_sleeps):
        errors = [RuntimeError(f"database is busy ({n})") for n in range(3)]
        operation = AsyncMock(side_effect=errors)

        with pytest.raises(DatabaseRetryError) as exc_info:
            await with_retry(
                operation,
                "delete_files",
                {"max_retries": 2, "base_delay_ms": 10},
                monitor=mock_monitor,
                logger=mock_logger,
                sleep=recorded_sleeps,
            )

        error = exc_info.value
        assert operation.await_count == 3
        assert error.attempt_count == 3
        assert error.operation_name == "delete_files"
        assert error.original_error is errors[-1]
        assert error.__cause__ is errors[-1]
        assert len(recorded_sleeps.delays) == 2
        assert mock_monitor.record_error.call_count == 3
        mock_monitor.record_query.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_retryable_error_raises_immediately(self, mock_monitor, mock_logger, recorded_sleeps):
        operation = AsyncMock(side_effect=ValueError("invalid input"))

        with pytest.raises(DatabaseRetryError) as exc_info:
            await with_retry(
                operation, "create_file", monitor=mock_monitor, logger=mock_logger, sleep=recorded_sleeps
            )

        assert exc_info.value.attempt_count == 1
        assert operation.await_count == 1
        assert recorded_sleeps.delays == []
        mock_monitor.record_error.assert_called_once()

    @pytest.mark.asyncio
    async def test_zero_retries_makes_one_attempt(self, mock_logger, recorded_sleeps):
        operation = AsyncMock(side_effect=RuntimeError("connection refused"))

        with pytest.raises(DatabaseRetryError) as exc_info:
            await with_retry(
                operation, "ping", {"max_retries": 0}, logger=mock_logger, sleep=recorded_sleeps
            )

        assert exc_info.value.attempt_count == 1
        assert recorded_sleeps.delays == []

    @pytest.mark.asyncio
    async def test_delays_are_capped(self, mock_logger, recorded_sleeps):
        operation = AsyncMock(side_effect=RuntimeError("network unreachable"))
        options = RetryOptions(max_retries=5, base_delay_ms=1000, max_delay_ms=3000, backoff_factor=2)

        with pytest.raises(DatabaseRetryError):
            await with_retry(operation, "list_files", options, logger=mock_logger, sleep=recorded_sleeps)

        assert recorded_sleeps.delays == pytest.approx([1.0, 2.0, 3.0, 3.0, 3.0])

    @pytest.mark.asyncio
    async def test_custom_retry_condition(self, mock_logger, recorded_sleeps):
        operation = failing_then("ok", ValueError("invalid input"))
        options = RetryOptions(base_delay_ms=5, retry_condition=lambda error: True)

        result = await with_retry(operation, "get_file", options, logger=mock_logger, sleep=recorded_sleeps)

        assert result == "ok"
        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_failure_logging(self, mock_logger, recorded_sleeps):
        operation = AsyncMock(side_effect=RuntimeError("connection reset"))

        with pytest.raises(DatabaseRetryError):
            await with_retry(
                operation,
                "get_file",
                {"max_retries": 1, "base_delay_ms": 100},
                logger=mock_logger,
                sleep=recorded_sleeps,
            )

        warnings = mock_logger.warn.call_args_list
        assert len(warnings) == 2
        assert warnings[0].args[0] == "Database operation failed (attempt 1): get_file"
        assert warnings[0].kwargs["will_retry"] is True
        assert warnings[0].kwargs["error_message"] == "connection reset"
        assert warnings[1].kwargs["will_retry"] is False

        retry_logs = [
            c for c in mock_logger.info.call_args_list
            if c.args[0] == "Retrying database operation: get_file"
        ]
        assert len(retry_logs) == 1
        assert retry_logs[0].kwargs["next_attempt_in_ms"] == pytest.approx(100.0)
        assert retry_logs[0].kwargs["max_retries"] == 1

    @pytest.mark.asyncio
    async def test_success_after_retry_is_logged(self, mock_logger, recorded_sleeps):
        operation = failing_then(1, RuntimeError("temporary failure"))

        await with_retry(operation, "count_files", {"base_delay_ms": 1}, logger=mock_logger, sleep=recorded_sleeps)

        messages = [c.args[0] for c in mock_logger.info.call_args_list]
        assert "Database operation succeeded after retry: count_files" in messages

    @pytest.mark.asyncio
    async def test_reports_to_real_monitor(self, healthy_probe, mock_logger, recorded_sleeps):
        monitor = DatabaseMonitor(healthy_probe, logger=mock_logger)
        operation = failing_then("ok", RuntimeError("deadlock detected"))

        await with_retry(operation, "get_file", {"base_delay_ms": 1}, monitor=monitor, logger=mock_logger, sleep=recorded_sleeps)

        metrics = monitor.get_metrics()
        assert metrics.query_count == 1
        assert metrics.error_count == 1
        assert metrics.slow_query_count == 0

    @pytest.mark.asyncio
    async def test_cancellation_during_operation_propagates(self, mock_monitor, mock_logger, recorded_sleeps):
        operation = AsyncMock(side_effect=asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await with_retry(
                operation, "get_file", monitor=mock_monitor, logger=mock_logger, sleep=recorded_sleeps
            )

        assert operation.await_count == 1
        assert recorded_sleeps.delays == []
        mock_monitor.record_error.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancellation_during_backoff_propagates(self, mock_logger):
        operation = AsyncMock(side_effect=RuntimeError("connection refused"))

        async def cancelled_sleep(seconds: float) -> None:
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await with_retry(operation, "get_file", logger=mock_logger, sleep=cancelled_sleep)

        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_task_cancel_interrupts_real_sleep(self, mock_logger):
        """Cancelling the caller while it waits out a backoff stops the retries."""
        operation = AsyncMock(side_effect=RuntimeError("connection refused"))
        task = asyncio.create_task(
            with_retry(operation, "get_file", {"base_delay_ms": 60000}, logger=mock_logger)
        )
        await asyncio.sleep(0.05)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert operation.await_count == 1


class TestWithRetryAndMonitoring:
    """Tests for with_retry_and_monitoring."""

    @pytest.mark.asyncio
    async def test_success_logs_completion(self, mock_monitor, mock_logger, recorded_sleeps):
        result = await with_retry_and_monitoring(
            AsyncMock(return_value=3), "count_files", monitor=mock_monitor, logger=mock_logger, sleep=recorded_sleeps
        )

        assert result == 3
        completed = [
            c for c in mock_logger.info.call_args_list
            if c.args[0] == "Database operation completed with retry: count_files"
        ]
        assert len(completed) == 1
        assert completed[0].kwargs["success"] is True

    @pytest.mark.asyncio
    async def test_failure_logs_error_and_reraises(self, mock_logger, recorded_sleeps):
        cause = RuntimeError("connection lost")

        with pytest.raises(DatabaseRetryError):
            await with_retry_and_monitoring(
                AsyncMock(side_effect=cause),
                "get_file",
                {"max_retries": 1, "base_delay_ms": 1},
                logger=mock_logger,
                sleep=recorded_sleeps,
            )

        mock_logger.error.assert_called_once()
        call = mock_logger.error.call_args
        assert call.args[0] == "Database operation failed after retries: get_file"
        assert call.args[1] is cause
        assert call.kwargs["attempt_count"] == 2


class TestConcurrentRetries:
    """Tests for many with_retry calls sharing one monitor."""

    @pytest.mark.asyncio
    async def test_gathered_calls_keep_exact_counts(self, healthy_probe, mock_logger):
        monitor = DatabaseMonitor(healthy_probe, logger=mock_logger)
        delays = []

        async def yielding_sleep(seconds):
            delays.append(seconds)
            await asyncio.sleep(0)

        def interleaved(*outcomes):
            """Operation that yields to the loop, then raises or returns the next outcome."""
            mock = AsyncMock(side_effect=list(outcomes))

            async def operation():
                await asyncio.sleep(0)
                return await mock()

            operation.mock = mock
            return operation

        locked_twice = interleaved(
            RuntimeError("database is locked"), RuntimeError("database is locked"), "a"
        )
        clean = interleaved("b")
        reset_once = interleaved(RuntimeError("connection reset"), "c")
        always_timeout = interleaved(*[RuntimeError("query timeout")] * 5)
        bad_sql = interleaved(RuntimeError("syntax error near FROM"))

        results = await asyncio.gather(
            with_retry(locked_twice, "locked_twice", monitor=monitor, logger=mock_logger, sleep=yielding_sleep),
            with_retry(clean, "clean", monitor=monitor, logger=mock_logger, sleep=yielding_sleep),
            with_retry(reset_once, "reset_once", monitor=monitor, logger=mock_logger, sleep=yielding_sleep),
            with_retry(
                always_timeout,
                "always_timeout",
                {"max_retries": 1},
                monitor=monitor,
                logger=mock_logger,
                sleep=yielding_sleep,
            ),
            with_retry(bad_sql, "bad_sql", monitor=monitor, logger=mock_logger, sleep=yielding_sleep),
            return_exceptions=True,
        )

        assert results[:3] == ["a", "b", "c"]
        assert isinstance(results[3], DatabaseRetryError)
        assert results[3].attempt_count == 2
        assert isinstance(results[4], DatabaseRetryError)
        assert results[4].attempt_count == 1

        assert locked_twice.mock.await_count == 3
        assert clean.mock.await_count == 1
        assert reset_once.mock.await_count == 2
        assert always_timeout.mock.await_count == 2
        assert bad_sql.mock.await_count == 1

        snapshot = monitor.get_metrics()
        assert snapshot.query_count == 3
        assert snapshot.error_count == 2 + 1 + 2 + 1
        assert sorted(delays) == [1.0, 1.0, 1.0, 2.0]
