"""
Base LLM Provider Implementation.

Provides the machinery shared by every provider adapter:
    - Per-endpoint rate limiting (EndpointRateLimiter)
    - Retry with exponential backoff, each attempt under a timeout
    - Stream opening under the retry policy, stream reads under the timeout
    - HTTP status to error taxonomy mapping
    - Generation parameter assembly
    - Word-split streaming for providers without native streaming
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, ClassVar, Mapping, Optional, TypeVar

from ..domain.entities import (
    FunctionDefinition,
    Message,
    NormalizedResponse,
    StreamChunk,
)
from ..domain.ports import ILLMProvider
from ..exceptions import (
    AuthenticationError,
    InvalidConfigurationError,
    MurmurError,
    ProviderError,
    RateLimitError,
    ServerError,
)
from ..resilience import retry_async, with_timeout
from .rate_limit import EndpointLimit, EndpointRateLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")

_WORD_CHUNK = re.compile(r"\s*\S+\s*")


def split_into_chunks(text: str) -> list[str]:
    """Split text on whitespace, keeping separators so chunks rejoin exactly."""
    return _WORD_CHUNK.findall(text)


@dataclass
class LLMProviderConfig:
    """Configuration for LLM providers.

    Attributes:
        api_key: API key for the provider
        model: Model name to use
        embedding_model: Model for embeddings (if different)
        base_url: Optional custom base URL
        timeout: Per-attempt request timeout in seconds
        max_retries: Total attempts per request
        retry_delay: Base delay between attempts in seconds
        temperature: Default temperature
        max_tokens: Default max tokens
        top_p: Nucleus sampling cutoff
        top_k: Top-k sampling (ignored by providers without it)
        stop_sequences: Sequences that end generation
        rate_limits: Per-endpoint overrides of the provider's local budgets
        extra: Provider-specific options
    """

    api_key: str
    model: str
    embedding_model: Optional[str] = None
    base_url: Optional[str] = None
    timeout: float = 30.0
    max_retries: int = 3
    retry_delay: float = 1.0
    temperature: Optional[float] = 0.7
    max_tokens: int = 1024
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    stop_sequences: Optional[list[str]] = None
    rate_limits: dict[str, EndpointLimit] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        missing = [name for name in ("api_key", "model") if not getattr(self, name)]
        if missing:
            raise InvalidConfigurationError(
                f"Missing provider configuration: {', '.join(missing)}",
                missing_keys=missing,
            )
        if self.timeout <= 0:
            raise InvalidConfigurationError("timeout must be positive")
        if self.max_retries < 1:
            raise InvalidConfigurationError("max_retries must be at least 1")
        if self.retry_delay < 0:
            raise InvalidConfigurationError("retry_delay must not be negative")
        if self.max_tokens < 1:
            raise InvalidConfigurationError("max_tokens must be positive")


class BaseLLMProvider(ILLMProvider, ABC):
    """Base class for LLM provider implementations.

    Subclasses implement `_chat_once` (one wire call, already normalized)
    and may override `stream_chat_completion` when the SDK streams natively.
    """

    PROVIDER_NAME: ClassVar[str] = "base"
    CHAT_ENDPOINT: ClassVar[str] = "chat"
    DEFAULT_RATE_LIMITS: ClassVar[dict[str, EndpointLimit]] = {}

    def __init__(
        self,
        config: LLMProviderConfig,
        rate_limiter: Optional[EndpointRateLimiter] = None,
    ):
        """Initialize the provider.

        Args:
            config: Provider configuration
            rate_limiter: Shared limiter; a private one is created if omitted
        """
        self.config = config
        self.rate_limiter = rate_limiter or EndpointRateLimiter(
            {**self.DEFAULT_RATE_LIMITS, **config.rate_limits}
        )

    @property
    def provider_name(self) -> str:
        return self.PROVIDER_NAME

    @property
    def model_name(self) -> str:
        """Return the model name."""
        return self.config.model

    @property
    def supports_native_streaming(self) -> bool:
        return False

    @property
    def supports_native_functions(self) -> bool:
        return False

    # ----------------------------------------
    # Public contract
    # ----------------------------------------

    async def chat_completion(
        self,
        messages: list[Message],
        stream: bool = False,
        override_params: Optional[dict[str, Any]] = None,
        functions: Optional[list[FunctionDefinition]] = None,
        function_call: Optional[str] = None,
    ) -> NormalizedResponse:
        """Generate a completion, rate limited and retried.

        With stream=True the streamed chunks are collected into one response.
        """
        if stream:
            parts = []
            finish_reason = None
            async for chunk in self.stream_chat_completion(messages, override_params):
                parts.append(chunk.content)
                finish_reason = chunk.finish_reason or finish_reason
            return NormalizedResponse.from_text(
                "".join(parts), finish_reason=finish_reason or "stop", model=self.model_name
            )

        params = self._generation_params(override_params)
        return await self._with_retry(
            self.CHAT_ENDPOINT,
            self._chat_once,
            list(messages),
            params,
            list(functions or []),
            function_call,
        )

    async def stream_chat_completion(
        self,
        messages: list[Message],
        override_params: Optional[dict[str, Any]] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Yield the full response split into whitespace-delimited chunks.

        Providers with native streaming override this.
        """
        response = await self.chat_completion(messages, override_params=override_params)
        chunks = split_into_chunks(response.text)
        choice = response.first
        finish_reason = choice.finish_reason if choice else "stop"
        for index, piece in enumerate(chunks):
            is_last = index == len(chunks) - 1
            yield StreamChunk(piece, finish_reason if is_last else None)

    async def embeddings(self, input: str | list[str]) -> dict[str, Any]:
        raise InvalidConfigurationError(
            f"Provider '{self.provider_name}' does not provide embeddings"
        )

    @abstractmethod
    async def _chat_once(
        self,
        messages: list[Message],
        params: dict[str, Any],
        functions: list[FunctionDefinition],
        function_call: Optional[str],
    ) -> NormalizedResponse:
        """Perform one wire call and normalize the result."""
        pass

    # ----------------------------------------
    # Shared helpers
    # ----------------------------------------

    async def _with_retry(
        self,
        endpoint: str,
        func: Callable[..., Awaitable[T]],
        *args,
    ) -> T:
        """Run func under the endpoint's rate limit with the retry policy."""

        async def take_slot() -> None:
            await self.rate_limiter.acquire(endpoint)

        return await retry_async(
            func,
            *args,
            max_attempts=self.config.max_retries,
            retry_delay=self.config.retry_delay,
            timeout=self.config.timeout,
            rate_limit_backoff=self.rate_limiter.backoff_delay,
            before_attempt=take_slot,
        )

    async def _open_stream(self, open_func: Callable[..., Awaitable[T]], *args) -> T:
        """Open a streaming response under the same policy as a plain call.

        Rate limit slot, per-attempt timeout and retries all apply; only the
        opening request is retried, never a stream that already yielded.
        """
        return await self._with_retry(self.CHAT_ENDPOINT, open_func, *args)

    async def _read_stream(self, stream: Any) -> AsyncIterator[Any]:
        """Iterate a stream, bounding the wait for every item by the timeout.

        Raises:
            TimeoutError: When the stream stalls longer than config.timeout
        """
        iterator = stream.__aiter__()
        while True:
            try:
                item = await with_timeout(
                    anext(iterator), self.config.timeout, "Stream stalled"
                )
            except StopAsyncIteration:
                return
            yield item

    def _generation_params(self, override_params: Optional[dict[str, Any]]) -> dict[str, Any]:
        """Config defaults overlaid with per-call overrides; None values dropped.

        Keys are provider-neutral: temperature, max_tokens, top_p, top_k,
        stop_sequences. Unknown override keys are passed through verbatim.
        """
        params: dict[str, Any] = {
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "top_p": self.config.top_p,
            "top_k": self.config.top_k,
            "stop_sequences": self.config.stop_sequences,
        }
        params.update(override_params or {})
        return {k: v for k, v in params.items() if v is not None}

    def _map_status_error(
        self,
        status_code: int,
        message: str,
        body: Any = None,
        headers: Optional[Mapping[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> MurmurError:
        """Translate an HTTP failure into the error taxonomy."""
        body_text = body if isinstance(body, str) or body is None else json.dumps(body, default=str)
        provider = self.provider_name

        if status_code == 401:
            return AuthenticationError(
                f"{provider} rejected the API key: {message}",
                status_code=401,
                provider=provider,
                cause=cause,
            )
        if status_code == 403:
            return AuthenticationError(
                f"Insufficient permissions: {message}",
                status_code=403,
                provider=provider,
                cause=cause,
            )
        if status_code == 429:
            retry_after = None
            if headers is not None and headers.get("retry-after") is not None:
                try:
                    retry_after = float(headers.get("retry-after"))
                except (TypeError, ValueError):
                    logger.warning(
                        f"Ignoring unparseable retry-after header: {headers.get('retry-after')!r}"
                    )
            if headers is not None:
                self.rate_limiter.update_from_headers(self.CHAT_ENDPOINT, headers)
            return RateLimitError(
                f"{provider} rate limit exceeded: {message}",
                retry_after=retry_after,
                provider=provider,
                response_body=body_text,
                cause=cause,
            )
        if status_code >= 500:
            return ServerError(
                f"{provider} server error: {message}",
                status_code=status_code,
                response_body=body_text,
                cause=cause,
            )
        return ProviderError(
            f"{provider} API error: {message}",
            status_code=status_code,
            provider=provider,
            response_body=body_text,
            cause=cause,
        )

    def _warn_role_mapping(self, role: str) -> None:
        logger.warning(
            f"{role.capitalize()} role not directly supported by {self.provider_name}, "
            f"mapping to user"
        )

    async def close(self) -> None:
        """Release SDK resources. Subclasses with clients override."""

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
