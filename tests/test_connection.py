"""Tests for retry helpers."""
import httpx
import pytest

from mcp_stateset.utils.connection import (
    RETRYABLE_EXCEPTIONS,
    call_with_retry,
    with_retry,
)


class TestWithRetry:
    """Tests for retry decorator."""

    @pytest.mark.asyncio
    async def test_async_success_no_retry(self):
        """Successful async function doesn't retry."""
        call_count = 0

        @with_retry(max_attempts=3)
        async def succeeding_func():
            nonlocal call_count
            call_count += 1
            return "success"

        result = await succeeding_func()
        assert result == "success"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_async_retry_then_success(self):
        """Async function retries on failure then succeeds."""
        call_count = 0

        @with_retry(max_attempts=3, min_wait=0.01, max_wait=0.1)
        async def failing_then_succeeding():
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise httpx.ConnectError("Connection refused")
            return "success"

        result = await failing_then_succeeding()
        assert result == "success"
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_async_max_retries_exceeded(self):
        """Async function raises after max retries."""
        call_count = 0

        @with_retry(max_attempts=3, min_wait=0.01, max_wait=0.1)
        async def always_failing():
            nonlocal call_count
            call_count += 1
            raise TimeoutError("Always times out")

        with pytest.raises(TimeoutError):
            await always_failing()
        assert call_count == 3

    def test_sync_success_no_retry(self):
        """Successful sync function doesn't retry."""
        call_count = 0

        @with_retry(max_attempts=3)
        def succeeding_func():
            nonlocal call_count
            call_count += 1
            return "success"

        assert succeeding_func() == "success"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_http_status_error_not_retried(self):
        """HTTP status errors are answers, not transport failures."""
        call_count = 0
        request = httpx.Request("GET", "https://state.example.com/export")

        @with_retry(max_attempts=3, min_wait=0.01, max_wait=0.1)
        async def server_error():
            nonlocal call_count
            call_count += 1
            raise httpx.HTTPStatusError(
                "boom", request=request, response=httpx.Response(500, request=request)
            )

        with pytest.raises(httpx.HTTPStatusError):
            await server_error()
        assert call_count == 1


class TestCallWithRetry:
    """Tests for call-time retry settings."""

    @pytest.mark.asyncio
    async def test_attempts_chosen_per_call(self):
        """Retry settings can be given per call."""
        calls = []

        async def flaky(value):
            calls.append(value)
            if len(calls) < 2:
                raise ConnectionResetError("reset")
            return value * 2

        assert await call_with_retry(flaky, 21, max_attempts=2, min_wait=0.01, max_wait=0.01) == 42
        assert calls == [21, 21]

    @pytest.mark.asyncio
    async def test_single_attempt(self):
        """A single attempt raises immediately."""
        async def failing():
            raise ConnectionRefusedError("no")

        with pytest.raises(ConnectionRefusedError):
            await call_with_retry(failing, max_attempts=1)


class TestRetryableExceptions:
    """Tests for retryable exceptions list."""

    def test_connection_errors_are_retryable(self):
        """Connection errors should be retryable."""
        assert ConnectionRefusedError in RETRYABLE_EXCEPTIONS
        assert ConnectionResetError in RETRYABLE_EXCEPTIONS
        assert TimeoutError in RETRYABLE_EXCEPTIONS

    def test_httpx_transport_errors_are_retryable(self):
        """httpx transport errors should be retryable."""
        assert httpx.TransportError in RETRYABLE_EXCEPTIONS
        assert issubclass(httpx.ReadTimeout, httpx.TransportError)
