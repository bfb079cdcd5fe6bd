#!/usr/bin/env python3
"""Tests for resilience patterns.

Tests cover:
    - Retry with exponential backoff behavior
    - Rate limit waits honoring retry-after hints
    - Retry exhaustion and per-attempt timeouts
    - Wall-clock timeout wrapper
    - Fail-fast concurrent execution
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from murmur.exceptions import (
    AuthenticationError,
    InvalidConfigurationError,
    NetworkError,
    ProviderError,
    RateLimitError,
    ServerError,
)
from murmur.exceptions import TimeoutError as RequestTimeoutError
from murmur.resilience import (
    jittered_backoff,
    retry_async,
    retry_delay_for,
    run_concurrent_tasks,
    with_timeout,
)


# ============================================
# Backoff Tests
# ============================================

class TestBackoff:
    """Test delay computation."""

    def test_retry_delay_doubles(self):
        assert [retry_delay_for(a, 1.0) for a in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_jittered_backoff_is_capped(self):
        with patch("murmur.resilience.random.uniform", return_value=0.5):
            assert jittered_backoff(2) == 4.5
            assert jittered_backoff(10, cap=60.0) == 60.5

    def test_negative_exponent_clamps(self):
        with patch("murmur.resilience.random.uniform", return_value=0.0):
            assert jittered_backoff(-3) == 1.0


# ============================================
# Retry Tests
# ============================================

class TestRetryAsync:
    """Test retry_async behavior."""

    @pytest.mark.asyncio
    async def test_success_first_try(self):
        func = AsyncMock(return_value="ok")
        result = await retry_async(func, "arg", max_attempts=3, kw="v")
        assert result == "ok"
        func.assert_awaited_once_with("arg", kw="v")

    @pytest.mark.asyncio
    async def test_retries_then_succeeds_with_growing_delays(self):
        func = AsyncMock(side_effect=[NetworkError("a"), ServerError("b"), "ok"])

        with patch("murmur.resilience.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = await retry_async(func, max_attempts=3, retry_delay=0.5)

        assert result == "ok"
        assert func.await_count == 3
        delays = [c.args[0] for c in sleep.await_args_list]
        assert delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        func = AsyncMock(side_effect=AuthenticationError("denied"))

        with pytest.raises(AuthenticationError):
            await retry_async(func, max_attempts=3, retry_delay=0)

        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_exhaustion_raises_retries_exhausted(self):
        func = AsyncMock(side_effect=NetworkError("down"))

        with patch("murmur.resilience.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(ProviderError) as exc_info:
                await retry_async(func, max_attempts=2)

        assert exc_info.value.code == "RETRIES_EXHAUSTED"
        assert isinstance(exc_info.value.cause, NetworkError)
        assert func.await_count == 2

    @pytest.mark.asyncio
    async def test_rate_limit_uses_retry_after(self):
        func = AsyncMock(side_effect=[RateLimitError(retry_after=7), "ok"])

        with patch("murmur.resilience.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await retry_async(func, max_attempts=2, retry_delay=1.0)

        sleep.assert_awaited_once_with(7.0)

    @pytest.mark.asyncio
    async def test_rate_limit_uses_backoff_callback(self):
        func = AsyncMock(side_effect=[RateLimitError(), "ok"])
        backoff = MagicMock(return_value=3.25)

        with patch("murmur.resilience.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await retry_async(func, max_attempts=2, rate_limit_backoff=backoff)

        backoff.assert_called_once_with(1)
        sleep.assert_awaited_once_with(3.25)

    @pytest.mark.asyncio
    async def test_before_attempt_and_on_retry(self):
        func = AsyncMock(side_effect=[NetworkError("a"), "ok"])
        before = AsyncMock()
        on_retry = MagicMock()

        with patch("murmur.resilience.asyncio.sleep", new_callable=AsyncMock):
            await retry_async(
                func, max_attempts=2, before_attempt=before, on_retry=on_retry
            )

        assert before.await_count == 2
        on_retry.assert_called_once()
        assert on_retry.call_args.args[1] == 1

    @pytest.mark.asyncio
    async def test_attempt_timeout_raises_timeout_error(self):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(RequestTimeoutError) as exc_info:
            await retry_async(slow, max_attempts=1, timeout=0.01)

        assert exc_info.value.timeout_seconds == 0.01

    @pytest.mark.asyncio
    async def test_invalid_attempts(self):
        with pytest.raises(InvalidConfigurationError):
            await retry_async(AsyncMock(), max_attempts=0)


# ============================================
# Timeout Tests
# ============================================

class TestWithTimeout:
    """Test with_timeout wrapper."""

    @pytest.mark.asyncio
    async def test_returns_value(self):
        async def quick():
            return 42

        assert await with_timeout(quick(), 1.0) == 42

    @pytest.mark.asyncio
    async def test_expires(self):
        with pytest.raises(RequestTimeoutError) as exc_info:
            await with_timeout(asyncio.sleep(1), 0.01, message="Workflow timed out")

        assert "Workflow timed out" in exc_info.value.message


# ============================================
# Concurrent Execution Tests
# ============================================

class TestRunConcurrentTasks:
    """Test fail-fast concurrent execution."""

    @pytest.mark.asyncio
    async def test_results_keyed_by_name(self):
        async def one():
            await asyncio.sleep(0.01)
            return 1

        async def two():
            return 2

        results = await run_concurrent_tasks({"one": one, "two": two})
        assert results == {"one": 1, "two": 2}
        assert list(results) == ["one", "two"]

    @pytest.mark.asyncio
    async def test_first_failure_propagates_and_cancels(self):
        cancelled = asyncio.Event()

        async def fails():
            raise ServerError("boom")

        async def slow():
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with pytest.raises(ServerError):
            await run_concurrent_tasks({"slow": slow, "fails": fails})

        assert cancelled.is_set()
