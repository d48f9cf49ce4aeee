"""
Unit tests for the retry executor.
"""

import asyncio

import pytest

from telemd.config.analytics_config import AnalyticsConfig
from telemd.pipeline.retry import RetryOptions, is_retryable_error, with_retry


class RecordingSleep:
    """Async sleep stand-in that records requested delays."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class CodedError(Exception):
    def __init__(self, message, code):
        super().__init__(message)
        self.code = code


def failing_operation(errors, value='ok'):
    """Coroutine factory that raises each error in turn, then returns ``value``."""
    calls = {'count': 0}

    async def operation():
        calls['count'] += 1
        if errors:
            raise errors.pop(0)
        return value

    return operation, calls


class TestRetryOptions:

    def test_delay_grows_until_capped(self):
        options = RetryOptions(max_retries=6, base_delay=1.0, max_delay=5.0, backoff_multiplier=2.0)

        assert [options.delay_for(a) for a in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_from_config_converts_milliseconds(self):
        config = AnalyticsConfig(max_retries=4, retry_base_delay_ms=250,
                                 retry_max_delay_ms=2000, backoff_multiplier=3)

        options = RetryOptions.from_config(config)

        assert options.max_retries == 4
        assert options.base_delay == 0.25
        assert options.max_delay == 2.0
        assert options.backoff_multiplier == 3

    def test_max_retries_must_be_positive(self):
        with pytest.raises(ValueError):
            RetryOptions(max_retries=0)


class TestErrorClassification:

    @pytest.mark.parametrize('error', [
        ConnectionError('reset by peer'),
        TimeoutError(),
        Exception('Network unreachable'),
        Exception('request timed out'),
        Exception('upstream returned 503'),
        Exception('HTTP 429 Too Many Requests'),
        CodedError('socket hang up', 'ECONNRESET'),
    ])
    def test_transient_errors_are_retryable(self, error):
        assert is_retryable_error(error)

    @pytest.mark.parametrize('error', [
        ValueError('invalid payload'),
        KeyError('session_id'),
        Exception('HTTP 400 Bad Request'),
        CodedError('constraint failed', 'SQLITE_CONSTRAINT'),
    ])
    def test_permanent_errors_are_not_retryable(self, error):
        assert not is_retryable_error(error)

    def test_custom_codes(self):
        error = CodedError('deadlock', 'DEADLOCK')

        assert not is_retryable_error(error)
        assert is_retryable_error(error, frozenset({'DEADLOCK'}))


class TestWithRetry:

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self):
        sleep = RecordingSleep()
        operation, calls = failing_operation([], value=42)

        result = await with_retry(operation, RetryOptions(), sleep=sleep)

        assert result.success
        assert result.value == 42
        assert result.attempts == 1
        assert calls['count'] == 1
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_retries_transient_failures_then_succeeds(self):
        sleep = RecordingSleep()
        operation, calls = failing_operation([ConnectionError('down'), TimeoutError('slow')])

        result = await with_retry(operation, RetryOptions(max_retries=3, base_delay=1.0), sleep=sleep)

        assert result.success
        assert result.attempts == 3
        assert calls['count'] == 3
        assert sleep.calls == [1.0, 2.0]
        assert result.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_stops_after_max_retries_without_raising(self):
        sleep = RecordingSleep()
        errors = [ConnectionError(f'down {i}') for i in range(10)]
        operation, calls = failing_operation(errors)

        result = await with_retry(operation, RetryOptions(max_retries=4, base_delay=0.5,
                                                          max_delay=1.5), sleep=sleep)

        assert not result.success
        assert result.value is None
        assert calls['count'] == 4
        assert result.attempts == 4
        # No wait after the last attempt
        assert sleep.calls == [0.5, 1.0, 1.5]
        assert result.error_message == 'down 3'

    @pytest.mark.asyncio
    async def test_delays_strictly_increase_until_cap(self):
        sleep = RecordingSleep()
        operation, _ = failing_operation([ConnectionError() for _ in range(10)])

        await with_retry(operation, RetryOptions(max_retries=6, base_delay=1.0, max_delay=10.0,
                                                 backoff_multiplier=2.0), sleep=sleep)

        assert sleep.calls == [1.0, 2.0, 4.0, 8.0, 10.0]

    @pytest.mark.asyncio
    async def test_non_retryable_error_makes_one_attempt(self):
        sleep = RecordingSleep()
        operation, calls = failing_operation([ValueError('bad event')])

        result = await with_retry(operation, RetryOptions(max_retries=5), sleep=sleep)

        assert not result.success
        assert calls['count'] == 1
        assert result.attempts == 1
        assert sleep.calls == []
        assert isinstance(result.error, ValueError)

    @pytest.mark.asyncio
    async def test_on_retry_receives_failed_attempt_numbers(self):
        seen = []
        operation, _ = failing_operation([ConnectionError(), ConnectionError()])

        await with_retry(operation, RetryOptions(max_retries=3), sleep=RecordingSleep(),
                         on_retry=seen.append)

        assert seen == [1, 2]

    @pytest.mark.asyncio
    async def test_concurrent_calls_are_independent(self):
        sleep = RecordingSleep()
        failing, failing_calls = failing_operation([ConnectionError() for _ in range(5)])
        healthy, healthy_calls = failing_operation([])

        results = await asyncio.gather(
            with_retry(failing, RetryOptions(max_retries=2), sleep=sleep),
            with_retry(healthy, RetryOptions(max_retries=2), sleep=sleep),
        )

        assert [r.success for r in results] == [False, True]
        assert failing_calls['count'] == 2
        assert healthy_calls['count'] == 1

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        async def operation():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await with_retry(operation, RetryOptions(), sleep=RecordingSleep())
