"""Resilience patterns for provider calls and recipe execution.

This module provides the retry and timeout machinery every provider
adapter threads its requests through:
    - Retry with exponential backoff, each attempt bounded by a timeout
    - Jittered, capped backoff for rate-limit waits
    - Wall-clock timeout wrapper raising the library's TimeoutError
    - Fail-fast concurrent execution of named tasks

Example:
    # Retry a provider call, 3 attempts, 1s base delay, 30s per attempt
    response = await retry_async(
        client.send,
        payload,
        max_attempts=3,
        retry_delay=1.0,
        timeout=30.0,
    )

    # Run named coroutines concurrently, aborting all on the first failure
    results = await run_concurrent_tasks({
        "summary": summarize,
        "keywords": extract_keywords,
    })
"""
import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .exceptions import (
    InvalidConfigurationError,
    NetworkError,
    ProviderError,
    RateLimitError,
)
from .exceptions import TimeoutError as RequestTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound of the exponential part of a rate-limit backoff
MAX_BACKOFF_SECONDS = 60.0


# ============================================
# Backoff
# ============================================

# Exceptions retried by the provider retry loop
DEFAULT_RETRYABLE_EXCEPTIONS = (
    NetworkError,
    RateLimitError,
)


def jittered_backoff(
    exponent: int,
    cap: float = MAX_BACKOFF_SECONDS,
    jitter_max: float = 2.0,
) -> float:
    """Compute min(2^exponent, cap) plus uniform jitter in [0, jitter_max].

    Args:
        exponent: Power of two for the base delay (negative values clamp to 0)
        cap: Maximum base delay in seconds
        jitter_max: Maximum random jitter added on top, in seconds

    Returns:
        Delay in seconds
    """
    base = min(2.0 ** max(exponent, 0), cap)
    return base + random.uniform(0, jitter_max)


def retry_delay_for(attempt: int, retry_delay: float) -> float:
    """Delay before the retry that follows a failed `attempt` (1-based)."""
    return retry_delay * (2 ** (attempt - 1))


# ============================================
# Retry with Timeout
# ============================================


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args,
    max_attempts: int = 3,
    retry_delay: float = 1.0,
    timeout: Optional[float] = 30.0,
    retryable_exceptions: tuple = DEFAULT_RETRYABLE_EXCEPTIONS,
    rate_limit_backoff: Optional[Callable[[int], float]] = None,
    before_attempt: Optional[Callable[[], Awaitable[Any]]] = None,
    on_retry: Optional[Callable[[Exception, int], None]] = None,
    **kwargs,
) -> T:
    """Call an async function, retrying transient failures.

    Each attempt is wrapped in `asyncio.wait_for`; an expired attempt becomes
    a TimeoutError, which is retryable like any other NetworkError. Between
    attempts the wait is `retry_delay * 2^(attempt-1)`, except for rate limit
    errors, which wait for the server's retry-after hint or the jittered
    rate-limit backoff.

    Args:
        func: Async function to call
        *args: Arguments to pass to func
        max_attempts: Total attempts including the first
        retry_delay: Base delay in seconds
        timeout: Per-attempt timeout in seconds (None disables)
        retryable_exceptions: Exceptions to retry on
        rate_limit_backoff: Callable(attempt) -> seconds for rate limit waits
        before_attempt: Awaited before each attempt, outside the timeout
            (used to take a rate limit slot)
        on_retry: Optional callback called before each retry with (exception, attempt)
        **kwargs: Keyword arguments to pass to func

    Returns:
        Result from func

    Raises:
        TimeoutError: If the last attempt timed out
        ProviderError: With code RETRIES_EXHAUSTED when retries ran out on
            any other retryable error
        Any non-retryable exception from func, immediately
    """
    if max_attempts < 1:
        raise InvalidConfigurationError("max_attempts must be at least 1")

    last_exception: Optional[Exception] = None

    for attempt in range(1, max_attempts + 1):
        if before_attempt is not None:
            await before_attempt()

        try:
            if timeout:
                try:
                    return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
                except asyncio.TimeoutError as e:
                    raise RequestTimeoutError(
                        f"Request timed out after {timeout}s",
                        timeout_seconds=timeout,
                        cause=e,
                    ) from e
            return await func(*args, **kwargs)

        except retryable_exceptions as e:
            last_exception = e

            if attempt >= max_attempts:
                break

            if isinstance(e, RateLimitError):
                if e.retry_after:
                    delay = float(e.retry_after)
                elif rate_limit_backoff is not None:
                    delay = rate_limit_backoff(attempt)
                else:
                    delay = retry_delay_for(attempt, retry_delay)
            else:
                delay = retry_delay_for(attempt, retry_delay)

            if on_retry:
                on_retry(e, attempt)

            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed: {e}. "
                f"Retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)

    logger.error(f"All {max_attempts} attempts failed. Last error: {last_exception}")

    if isinstance(last_exception, RequestTimeoutError):
        raise last_exception

    raise ProviderError(
        f"Request failed after {max_attempts} attempts: {last_exception}",
        code="RETRIES_EXHAUSTED",
        cause=last_exception,
        details={"attempts": max_attempts},
    ) from last_exception


# ============================================
# Timeouts
# ============================================


async def with_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: Optional[float],
    message: str = "Operation timed out",
) -> T:
    """Await with a wall-clock bound.

    Args:
        awaitable: Coroutine or future to await
        timeout_seconds: Maximum duration in seconds (None waits forever)
        message: Message for the raised error

    Raises:
        TimeoutError: If the bound expires
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        raise RequestTimeoutError(
            f"{message} after {timeout_seconds}s",
            timeout_seconds=timeout_seconds,
            cause=e,
        ) from e


# ============================================
# Concurrent Processing
# ============================================


async def run_concurrent_tasks(
    tasks_dict: dict[str, Callable[[], Awaitable[T]]],
) -> dict[str, T]:
    """Run named tasks concurrently, failing fast.

    Uses asyncio.TaskGroup: the first failure cancels the siblings and is
    re-raised unwrapped from the ExceptionGroup.

    Args:
        tasks_dict: Dict mapping task names to async callables

    Returns:
        Dict mapping task names to results, in the input order

    Example:
        results = await run_concurrent_tasks({
            "summary": summarize,
            "keywords": extract_keywords,
        })
    """
    task_handles: dict[str, asyncio.Task] = {}

    try:
        async with asyncio.TaskGroup() as tg:
            task_handles = {
                name: tg.create_task(func())
                for name, func in tasks_dict.items()
            }
    except ExceptionGroup as eg:
        first = eg.exceptions[0]
        failed = [
            name for name, task in task_handles.items()
            if task.done() and not task.cancelled() and task.exception() is not None
        ]
        logger.error(f"Concurrent tasks failed: {failed}")
        raise first from None

    return {name: task.result() for name, task in task_handles.items()}


# ============================================
# Exports
# ============================================

__all__ = [
    "DEFAULT_RETRYABLE_EXCEPTIONS",
    "MAX_BACKOFF_SECONDS",
    "jittered_backoff",
    "retry_delay_for",
    "retry_async",
    "with_timeout",
    "run_concurrent_tasks",
]
