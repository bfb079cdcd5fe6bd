"""
Per-endpoint rate limiting for provider clients.

Each provider client owns one EndpointRateLimiter. For every logical
endpoint ("messages", "chat/completions", "embeddings", ...) it keeps a
fixed-window request counter; when the local count reaches the limit,
the next call waits until the window has passed. When a response carries
rate limit headers, the server-declared remaining/reset values take
precedence over the local estimate.

All bookkeeping happens under one asyncio.Lock, so concurrent callers
sharing a client queue through the same counter instead of racing it.

Example:
    limiter = EndpointRateLimiter({"messages": EndpointLimit(30, 10.0)})

    await limiter.acquire("messages")
    raw = await client.messages.with_raw_response.create(...)
    limiter.update_from_headers("messages", raw.headers)
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional

from ..exceptions import InvalidConfigurationError
from ..resilience import jittered_backoff

logger = logging.getLogger(__name__)

# Header names, OpenAI-style first, then Anthropic-style
REMAINING_HEADERS = (
    "x-ratelimit-remaining-requests",
    "anthropic-ratelimit-requests-remaining",
)
LIMIT_HEADERS = (
    "x-ratelimit-limit-requests",
    "anthropic-ratelimit-requests-limit",
)
RESET_HEADERS = (
    "x-ratelimit-reset-requests",
    "anthropic-ratelimit-requests-reset",
)

# Plain numeric reset values above this are Unix timestamps, below it seconds
_EPOCH_THRESHOLD = 1_000_000_000

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION = re.compile(r"(?:\d+(?:\.\d+)?(?:ms|h|m|s))+")


@dataclass(frozen=True)
class EndpointLimit:
    """Local request budget for one endpoint.

    Attributes:
        limit: Requests allowed per window
        window: Window length in seconds
    """

    limit: int
    window: float

    def __post_init__(self):
        if self.limit < 1:
            raise InvalidConfigurationError("limit must be positive")
        if self.window <= 0:
            raise InvalidConfigurationError("window must be positive")


@dataclass
class _EndpointCounter:
    """Internal counter for one endpoint.

    Attributes:
        count: Requests issued in the current local window
        window_started: Clock reading at the first request of the window
        server_remaining: Remaining requests declared by the server
        server_limit: Limit declared by the server
        server_reset_at: Clock reading when the server budget resets
    """

    count: int = 0
    window_started: Optional[float] = None
    server_remaining: Optional[int] = None
    server_limit: Optional[int] = None
    server_reset_at: Optional[float] = None

    def clear_server_info(self) -> None:
        self.server_remaining = None
        self.server_limit = None
        self.server_reset_at = None


def parse_reset_seconds(value: str, now_epoch: Optional[float] = None) -> float:
    """Convert a reset header value into seconds from now.

    Accepts plain seconds ("12", "0.5"), Unix timestamps ("1718000000"),
    Go-style durations ("1s", "6m0s", "20ms", "1h2m3.5s") and ISO-8601
    timestamps ("2024-06-10T12:00:00Z").

    Raises:
        ValueError: If the value matches none of these forms
    """
    text = value.strip()
    if not text:
        raise ValueError("empty reset value")

    now_epoch = time.time() if now_epoch is None else now_epoch

    try:
        number = float(text)
    except ValueError:
        pass
    else:
        if number > _EPOCH_THRESHOLD:
            return max(number - now_epoch, 0.0)
        return max(number, 0.0)

    if _DURATION.fullmatch(text):
        total = 0.0
        for amount, unit in _DURATION_PART.findall(text):
            amount_f = float(amount)
            if unit == "ms":
                total += amount_f / 1000
            elif unit == "s":
                total += amount_f
            elif unit == "m":
                total += amount_f * 60
            else:
                total += amount_f * 3600
        return total

    stamp = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return max(stamp.timestamp() - now_epoch, 0.0)


def _first_header(headers: Mapping[str, Any], names: tuple[str, ...]) -> Optional[str]:
    for name in names:
        value = headers.get(name)
        if value is not None:
            return str(value)
    return None


class EndpointRateLimiter:
    """Fixed-window limiter keyed by endpoint, with server header overrides.

    Attributes:
        limits: Local budgets per endpoint
        default_limit: Budget for endpoints not listed in limits
        jitter_max: Upper bound of random jitter (seconds) added to
            server-declared waits
    """

    def __init__(
        self,
        limits: Optional[Mapping[str, EndpointLimit]] = None,
        default_limit: EndpointLimit = EndpointLimit(30, 10.0),
        jitter_max: float = 3.0,
        backoff_jitter_max: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.limits = dict(limits or {})
        self.default_limit = default_limit
        self.jitter_max = jitter_max
        self.backoff_jitter_max = backoff_jitter_max
        self._clock = clock
        self._sleep = sleep
        self._counters: dict[str, _EndpointCounter] = {}
        self._lock = asyncio.Lock()

    def limit_for(self, endpoint: str) -> EndpointLimit:
        return self.limits.get(endpoint, self.default_limit)

    async def _wait(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self._sleep is not None:
            await self._sleep(seconds)
        else:
            await asyncio.sleep(seconds)

    async def acquire(self, endpoint: str) -> None:
        """Reserve one request slot, waiting if the budget is spent."""
        async with self._lock:
            budget = self.limit_for(endpoint)
            counter = self._counters.setdefault(endpoint, _EndpointCounter())
            now = self._clock()

            if counter.window_started is not None and now - counter.window_started >= budget.window:
                counter.count = 0
                counter.window_started = None

            if counter.server_reset_at is not None and now >= counter.server_reset_at:
                counter.clear_server_info()

            # A server budget only counts when it comes with a reset time
            server_budget = (
                counter.server_remaining
                if counter.server_reset_at is not None
                else None
            )

            if server_budget is not None and server_budget <= 0:
                wait = counter.server_reset_at - now + random.uniform(0, self.jitter_max)
                logger.warning(
                    f"Server rate limit reached for '{endpoint}', waiting {wait:.1f}s"
                )
                await self._wait(wait)
                now = self._clock()
                counter.clear_server_info()
                counter.count = 0
                counter.window_started = None
                server_budget = None

            if (
                server_budget is None
                and counter.count >= budget.limit
                and counter.window_started is not None
            ):
                wait = counter.window_started + budget.window - now
                logger.warning(
                    f"Local rate limit {budget.limit}/{budget.window:g}s reached for "
                    f"'{endpoint}', waiting {max(wait, 0):.1f}s"
                )
                await self._wait(wait)
                now = self._clock()
                counter.count = 0
                counter.window_started = None

            if counter.window_started is None:
                counter.window_started = now
            counter.count += 1
            if counter.server_remaining is not None:
                counter.server_remaining -= 1

            logger.debug(f"Rate limit '{endpoint}': {counter.count}/{budget.limit}")

    def update_from_headers(self, endpoint: str, headers: Optional[Mapping[str, Any]]) -> None:
        """Record server-declared budget from response headers.

        Values that fail to parse are ignored with a warning. A remaining
        count is only kept together with a reset time from the same
        response; without one the local window stays in charge.
        """
        if not headers:
            return

        counter = self._counters.setdefault(endpoint, _EndpointCounter())
        now = self._clock()

        server_remaining = None
        remaining = _first_header(headers, REMAINING_HEADERS)
        if remaining is not None:
            try:
                server_remaining = int(remaining)
            except ValueError:
                logger.warning(
                    f"Ignoring unparseable rate limit header remaining={remaining!r} "
                    f"for '{endpoint}'"
                )

        limit = _first_header(headers, LIMIT_HEADERS)
        if limit is not None:
            try:
                counter.server_limit = int(limit)
            except ValueError:
                logger.warning(
                    f"Ignoring unparseable rate limit header limit={limit!r} for '{endpoint}'"
                )

        server_reset_at = None
        reset = _first_header(headers, RESET_HEADERS)
        if reset is not None:
            try:
                server_reset_at = now + parse_reset_seconds(reset)
            except ValueError:
                logger.warning(
                    f"Ignoring unparseable rate limit header reset={reset!r} for '{endpoint}'"
                )

        if server_remaining is not None and server_reset_at is None:
            logger.debug(
                f"No usable reset for '{endpoint}', keeping local window "
                f"(server remaining={server_remaining})"
            )
            server_remaining = None

        counter.server_remaining = server_remaining
        counter.server_reset_at = server_reset_at if server_remaining is not None else None

    def backoff_delay(self, attempt: int) -> float:
        """Jittered exponential wait after a rate limit rejection."""
        return jittered_backoff(attempt, jitter_max=self.backoff_jitter_max)

    def get_status(self, endpoint: str) -> dict[str, Any]:
        """Snapshot of an endpoint's counters for diagnostics."""
        budget = self.limit_for(endpoint)
        counter = self._counters.get(endpoint, _EndpointCounter())
        return {
            "endpoint": endpoint,
            "count": counter.count,
            "limit": budget.limit,
            "window_seconds": budget.window,
            "server_remaining": counter.server_remaining,
            "server_limit": counter.server_limit,
        }

    def reset(self, endpoint: Optional[str] = None) -> None:
        if endpoint is None:
            self._counters.clear()
        else:
            self._counters.pop(endpoint, None)
