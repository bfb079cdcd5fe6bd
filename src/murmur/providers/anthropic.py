"""
Anthropic Claude Provider.

Implements the ILLMProvider interface for Anthropic's Messages API.
Supports native streaming and tool use; has no embeddings endpoint.
"""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack
from typing import Any, AsyncIterator, Optional

from ..domain.entities import (
    Choice,
    ChoiceMessage,
    FunctionCallRequest,
    FunctionDefinition,
    Message,
    MessageRole,
    NormalizedResponse,
    StreamChunk,
    Usage,
)
from ..exceptions import MurmurError, NetworkError
from ..exceptions import TimeoutError as RequestTimeoutError
from ..resilience import with_timeout
from .base import BaseLLMProvider, LLMProviderConfig
from .rate_limit import EndpointLimit, EndpointRateLimiter

logger = logging.getLogger(__name__)

# Lazy import to avoid requiring anthropic if not used
try:
    import anthropic
    from anthropic import AsyncAnthropic

    ANTHROPIC_AVAILABLE = True
except ImportError:
    ANTHROPIC_AVAILABLE = False
    anthropic = None
    AsyncAnthropic = None


# Anthropic stop_reason -> normalized finish_reason
STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "function_call",
}


class AnthropicProvider(BaseLLMProvider):
    """Anthropic Claude provider implementation.

    The first system message becomes the `system` parameter. Later system
    messages and function/tool results are sent as user turns, and
    consecutive turns of the same role are merged, since the Messages API
    requires alternating roles.

    Usage:
        config = LLMProviderConfig(
            api_key="sk-ant-...",
            model="claude-3-5-haiku-latest",
        )
        provider = AnthropicProvider(config)
        response = await provider.chat_completion(messages)
    """

    PROVIDER_NAME = "anthropic"
    CHAT_ENDPOINT = "messages"
    DEFAULT_RATE_LIMITS = {
        "messages": EndpointLimit(30, 10.0),
        "completions": EndpointLimit(30, 10.0),
    }

    def __init__(
        self,
        config: LLMProviderConfig,
        rate_limiter: Optional[EndpointRateLimiter] = None,
    ):
        """Initialize the Anthropic provider.

        Raises:
            ImportError: If anthropic package is not installed
        """
        if not ANTHROPIC_AVAILABLE:
            raise ImportError(
                "anthropic package is required for AnthropicProvider. "
                "Install with: pip install anthropic"
            )

        super().__init__(config, rate_limiter)

        # Retries are handled by BaseLLMProvider
        self.client = AsyncAnthropic(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=0,
        )

    @property
    def supports_native_streaming(self) -> bool:
        return True

    @property
    def supports_native_functions(self) -> bool:
        return True

    # ----------------------------------------
    # Request formatting
    # ----------------------------------------

    def _format_messages_for_api(
        self, messages: list[Message]
    ) -> tuple[Optional[str], list[dict[str, Any]]]:
        """Convert messages to Anthropic format.

        Returns:
            Tuple of (system_prompt, messages_list)
        """
        system: Optional[str] = None
        api_messages: list[dict[str, Any]] = []

        for msg in messages:
            if msg.role == MessageRole.SYSTEM and system is None:
                system = msg.content
                continue

            if msg.role == MessageRole.ASSISTANT:
                role = "assistant"
            elif msg.role == MessageRole.USER:
                role = "user"
            else:
                self._warn_role_mapping(msg.role.value)
                role = "user"

            if api_messages and api_messages[-1]["role"] == role:
                api_messages[-1]["content"] += f"\n\n{msg.content}"
            else:
                api_messages.append({"role": role, "content": msg.content})

        return system, api_messages

    @staticmethod
    def _format_params(params: dict[str, Any]) -> dict[str, Any]:
        # Anthropic's parameter names match the neutral ones
        return dict(params)

    @staticmethod
    def _tool_choice(function_call: Optional[str]) -> Optional[dict[str, Any]]:
        if function_call is None:
            return None
        if function_call in ("auto", "none", "any"):
            return {"type": function_call}
        return {"type": "tool", "name": function_call}

    # ----------------------------------------
    # Response normalization
    # ----------------------------------------

    def _normalize(self, message: Any) -> NormalizedResponse:
        texts = []
        call = None
        for block in message.content or []:
            block_type = getattr(block, "type", None)
            if block_type == "text":
                texts.append(block.text)
            elif block_type == "tool_use" and call is None:
                call = FunctionCallRequest(
                    name=block.name,
                    arguments=dict(block.input or {}),
                    id=block.id,
                )

        usage = message.usage
        return NormalizedResponse(
            choices=(
                Choice(
                    message=ChoiceMessage(
                        role=MessageRole.ASSISTANT,
                        content="".join(texts),
                        function_call=call,
                    ),
                    finish_reason=STOP_REASONS.get(message.stop_reason, message.stop_reason),
                ),
            ),
            usage=(
                Usage.of(usage.input_tokens, usage.output_tokens)
                if usage is not None
                else Usage()
            ),
            id=getattr(message, "id", None),
            model=getattr(message, "model", None) or self.model_name,
        )

    def _translate_error(self, e: Exception) -> MurmurError:
        if isinstance(e, anthropic.APIStatusError):
            return self._map_status_error(
                e.status_code,
                e.message,
                body=e.body,
                headers=e.response.headers if e.response is not None else None,
                cause=e,
            )
        if isinstance(e, anthropic.APITimeoutError):
            return RequestTimeoutError(
                f"Anthropic request timed out: {e}",
                timeout_seconds=self.config.timeout,
                cause=e,
            )
        return NetworkError(f"Anthropic connection error: {e}", cause=e)

    def _request_kwargs(
        self,
        messages: list[Message],
        params: dict[str, Any],
    ) -> dict[str, Any]:
        system, api_messages = self._format_messages_for_api(messages)
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "messages": api_messages,
            **self._format_params(params),
        }
        kwargs.setdefault("max_tokens", self.config.max_tokens)
        if system:
            kwargs["system"] = system
        return kwargs

    # ----------------------------------------
    # Wire calls
    # ----------------------------------------

    async def _chat_once(
        self,
        messages: list[Message],
        params: dict[str, Any],
        functions: list[FunctionDefinition],
        function_call: Optional[str],
    ) -> NormalizedResponse:
        kwargs = self._request_kwargs(messages, params)
        if functions:
            kwargs["tools"] = [f.to_anthropic_format() for f in functions]
            choice = self._tool_choice(function_call)
            if choice is not None:
                kwargs["tool_choice"] = choice

        try:
            raw = await self.client.messages.with_raw_response.create(**kwargs)
        except (anthropic.APIStatusError, anthropic.APIConnectionError) as e:
            logger.error(f"Anthropic API error: {e}")
            raise self._translate_error(e) from e

        self.rate_limiter.update_from_headers(self.CHAT_ENDPOINT, raw.headers)
        return self._normalize(raw.parse())

    async def stream_chat_completion(
        self,
        messages: list[Message],
        override_params: Optional[dict[str, Any]] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Forward text deltas as they arrive from the wire.

        Entering the SDK stream helper sends the request, so that step is
        rate limited and retried like a plain call; each delta read is
        bounded by the configured timeout.
        """
        kwargs = self._request_kwargs(messages, self._generation_params(override_params))

        async with AsyncExitStack() as stack:

            async def open_once() -> Any:
                try:
                    return await stack.enter_async_context(self.client.messages.stream(**kwargs))
                except (anthropic.APIStatusError, anthropic.APIConnectionError) as e:
                    logger.error(f"Anthropic streaming error: {e}")
                    raise self._translate_error(e) from e

            stream = await self._open_stream(open_once)

            try:
                async for text in self._read_stream(stream.text_stream):
                    if text:
                        yield StreamChunk(text)
                final = await with_timeout(
                    stream.get_final_message(), self.config.timeout, "Stream stalled"
                )
            except (anthropic.APIStatusError, anthropic.APIConnectionError) as e:
                logger.error(f"Anthropic streaming error: {e}")
                raise self._translate_error(e) from e

            yield StreamChunk("", STOP_REASONS.get(final.stop_reason, final.stop_reason))

    async def close(self) -> None:
        await self.client.close()
