"""
Tests for RetryPolicy.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from b2cli.exceptions import AuthError, RetryExhaustedError, TransportError
from b2cli.models.config import RetryConfig
from b2cli.transport.retry import RetryPolicy, is_transient


def transient(message="service unavailable", **kwargs):
    return TransportError(message, status=503, transient=True, **kwargs)


class TestIsTransient:
    def test_transient_transport_error(self):
        assert is_transient(transient()) is True

    def test_fatal_transport_error(self):
        assert is_transient(TransportError("bad request", status=400)) is False

    def test_other_errors(self):
        assert is_transient(AuthError("nope")) is False
        assert is_transient(ValueError("x")) is False


class TestDelay:
    """Tests for the backoff schedule."""

    def test_exponential_with_jitter(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=64.0)
        for attempt in range(5):
            delay = policy.delay_for(attempt)
            assert 0.5 * 2**attempt <= delay <= 2**attempt

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0)
        assert policy.delay_for(20) <= 10.0

    def test_retry_after_overrides(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=64.0)
        assert policy.delay_for(0, transient(retry_after=12.0)) == 12.0

    def test_retry_after_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0)
        assert policy.delay_for(0, transient(retry_after=600.0)) == 5.0

    def test_from_config(self):
        policy = RetryPolicy.from_config(
            RetryConfig(max_attempts=2, base_delay_seconds=0.25, max_delay_seconds=3)
        )
        assert policy.max_attempts == 2
        assert policy.base_delay == 0.25
        assert policy.max_delay == 3

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestRun:
    """Tests for RetryPolicy.run."""

    @pytest.mark.asyncio
    async def test_success_first_try(self, no_sleep_retry):
        operation = AsyncMock(return_value="ok")
        assert await no_sleep_retry.run(operation) == "ok"
        operation.assert_awaited_once()
        assert no_sleep_retry.delays == []

    @pytest.mark.asyncio
    async def test_transient_then_success(self, no_sleep_retry):
        operation = AsyncMock(side_effect=[transient(), transient(), "ok"])
        on_retry = MagicMock()

        result = await no_sleep_retry.run(operation, on_retry=on_retry)

        assert result == "ok"
        assert operation.await_count == 3
        assert len(no_sleep_retry.delays) == 2
        assert on_retry.call_count == 2

    @pytest.mark.asyncio
    async def test_exhausted(self, no_sleep_retry):
        last = transient("still down")
        operation = AsyncMock(side_effect=[transient(), transient(), last])

        with pytest.raises(RetryExhaustedError) as exc_info:
            await no_sleep_retry.run(operation)

        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error is last
        # no sleep after the final attempt
        assert len(no_sleep_retry.delays) == 2

    @pytest.mark.asyncio
    async def test_fatal_error_not_retried(self, no_sleep_retry):
        fatal = TransportError("bad request", status=400)
        operation = AsyncMock(side_effect=fatal)

        with pytest.raises(TransportError) as exc_info:
            await no_sleep_retry.run(operation)

        assert exc_info.value is fatal
        operation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_custom_classifier(self):
        sleep = AsyncMock()
        policy = RetryPolicy(
            max_attempts=2,
            classifier=lambda e: isinstance(e, KeyError),
            sleep=sleep,
        )
        operation = AsyncMock(side_effect=[KeyError("x"), "ok"])
        assert await policy.run(operation) == "ok"
        sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_logs_warning_before_retry(self, no_sleep_retry):
        operation = AsyncMock(side_effect=[transient(), "ok"])
        with patch("b2cli.transport.retry.logger") as logger:
            await no_sleep_retry.run(operation, description="upload of a.txt")
        message = logger.warning.call_args[0][0]
        assert "upload of a.txt" in message
        assert "attempt 1/3" in message
