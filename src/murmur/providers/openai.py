"""
OpenAI Chat Completions Provider.

Implements the ILLMProvider interface for OpenAI's chat models.
Supports native streaming, native function calling (as tools), and
embeddings.
"""

from __future__ import annotations

import json
import logging
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
from .base import BaseLLMProvider, LLMProviderConfig
from .rate_limit import EndpointLimit, EndpointRateLimiter

logger = logging.getLogger(__name__)

# Lazy import to avoid requiring openai if not used
try:
    import openai
    from openai import AsyncOpenAI

    OPENAI_AVAILABLE = True
except ImportError:
    OPENAI_AVAILABLE = False
    openai = None
    AsyncOpenAI = None


class OpenAIProvider(BaseLLMProvider):
    """OpenAI provider implementation.

    Usage:
        config = LLMProviderConfig(api_key="sk-...", model="gpt-4o-mini")
        provider = OpenAIProvider(config)

        response = await provider.chat_completion([Message.user("Hi")])
        print(response.text)
    """

    PROVIDER_NAME = "openai"
    CHAT_ENDPOINT = "chat/completions"
    EMBEDDINGS_ENDPOINT = "embeddings"
    DEFAULT_RATE_LIMITS = {
        "chat/completions": EndpointLimit(3, 60.0),
        "embeddings": EndpointLimit(3, 60.0),
    }

    DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"

    # Neutral parameter name -> Chat Completions parameter name
    PARAM_NAMES = {
        "temperature": "temperature",
        "max_tokens": "max_tokens",
        "top_p": "top_p",
        "stop_sequences": "stop",
    }

    def __init__(
        self,
        config: LLMProviderConfig,
        rate_limiter: Optional[EndpointRateLimiter] = None,
    ):
        """Initialize the OpenAI provider.

        Raises:
            ImportError: If openai package is not installed
        """
        if not OPENAI_AVAILABLE:
            raise ImportError(
                "openai package is required for OpenAIProvider. "
                "Install with: pip install openai"
            )

        super().__init__(config, rate_limiter)

        self.embedding_model = config.embedding_model or self.DEFAULT_EMBEDDING_MODEL

        # Retries are handled by BaseLLMProvider
        self.client = AsyncOpenAI(
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

    def _format_messages_for_api(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to OpenAI format.

        Function/tool results without a tool_call_id cannot be sent with
        their own role, so they travel as user messages.
        """
        api_messages = []
        for msg in messages:
            role = msg.role.value
            if msg.role in (MessageRole.FUNCTION, MessageRole.TOOL):
                self._warn_role_mapping(role)
                role = MessageRole.USER.value
            api_messages.append({"role": role, "content": msg.content})
        return api_messages

    def _format_params(self, params: dict[str, Any]) -> dict[str, Any]:
        kwargs = {}
        for key, value in params.items():
            if key == "top_k":
                continue
            kwargs[self.PARAM_NAMES.get(key, key)] = value
        return kwargs

    @staticmethod
    def _tool_choice(function_call: Optional[str]) -> Any:
        if function_call in (None, "auto", "none", "required"):
            return function_call
        return {"type": "function", "function": {"name": function_call}}

    # ----------------------------------------
    # Response normalization
    # ----------------------------------------

    @staticmethod
    def _decode_arguments(raw: Optional[str]) -> dict[str, Any]:
        if not raw:
            return {}
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Function arguments are not valid JSON: {raw[:200]}")
            return {"raw": raw}
        return decoded if isinstance(decoded, dict) else {"value": decoded}

    def _normalize(self, completion: Any) -> NormalizedResponse:
        choices = []
        for index, choice in enumerate(completion.choices or []):
            message = choice.message
            call = None
            tool_calls = getattr(message, "tool_calls", None)
            legacy_call = getattr(message, "function_call", None)
            if tool_calls:
                first = tool_calls[0]
                call = FunctionCallRequest(
                    name=first.function.name,
                    arguments=self._decode_arguments(first.function.arguments),
                    id=first.id,
                )
            elif legacy_call:
                call = FunctionCallRequest(
                    name=legacy_call.name,
                    arguments=self._decode_arguments(legacy_call.arguments),
                )
            finish_reason = choice.finish_reason
            if finish_reason == "tool_calls":
                finish_reason = "function_call"
            choices.append(
                Choice(
                    message=ChoiceMessage(
                        role=MessageRole.ASSISTANT,
                        content=message.content or "",
                        function_call=call,
                    ),
                    finish_reason=finish_reason,
                    index=getattr(choice, "index", index),
                )
            )

        usage = completion.usage
        return NormalizedResponse(
            choices=tuple(choices),
            usage=(
                Usage.of(usage.prompt_tokens, usage.completion_tokens)
                if usage is not None
                else Usage()
            ),
            id=getattr(completion, "id", None),
            model=getattr(completion, "model", None) or self.model_name,
        )

    def _translate_error(self, e: Exception) -> MurmurError:
        if isinstance(e, openai.APIStatusError):
            return self._map_status_error(
                e.status_code,
                e.message,
                body=e.body,
                headers=e.response.headers if e.response is not None else None,
                cause=e,
            )
        if isinstance(e, openai.APITimeoutError):
            return RequestTimeoutError(
                f"OpenAI request timed out: {e}",
                timeout_seconds=self.config.timeout,
                cause=e,
            )
        return NetworkError(f"OpenAI connection error: {e}", cause=e)

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
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "messages": self._format_messages_for_api(messages),
            **self._format_params(params),
        }
        if functions:
            kwargs["tools"] = [f.to_openai_format() for f in functions]
            choice = self._tool_choice(function_call)
            if choice is not None:
                kwargs["tool_choice"] = choice

        try:
            raw = await self.client.chat.completions.with_raw_response.create(**kwargs)
        except (openai.APIStatusError, openai.APIConnectionError) as e:
            logger.error(f"OpenAI API error: {e}")
            raise self._translate_error(e) from e

        self.rate_limiter.update_from_headers(self.CHAT_ENDPOINT, raw.headers)
        return self._normalize(raw.parse())

    async def stream_chat_completion(
        self,
        messages: list[Message],
        override_params: Optional[dict[str, Any]] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Forward chunks as they arrive from the wire.

        Opening the stream is rate limited and retried like a plain call;
        each chunk read is bounded by the configured timeout.
        """
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "messages": self._format_messages_for_api(messages),
            "stream": True,
            **self._format_params(self._generation_params(override_params)),
        }

        async def open_once() -> Any:
            try:
                return await self.client.chat.completions.create(**kwargs)
            except (openai.APIStatusError, openai.APIConnectionError) as e:
                logger.error(f"OpenAI streaming error: {e}")
                raise self._translate_error(e) from e

        stream = await self._open_stream(open_once)

        try:
            async for chunk in self._read_stream(stream):
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                content = choice.delta.content if choice.delta else None
                if content or choice.finish_reason:
                    yield StreamChunk(content or "", choice.finish_reason)
        except (openai.APIStatusError, openai.APIConnectionError) as e:
            logger.error(f"OpenAI streaming error: {e}")
            raise self._translate_error(e) from e

    async def embeddings(self, input: str | list[str]) -> dict[str, Any]:
        """Generate embeddings with the configured embedding model."""

        async def embed_once() -> dict[str, Any]:
            try:
                response = await self.client.embeddings.create(
                    model=self.embedding_model,
                    input=input,
                )
            except (openai.APIStatusError, openai.APIConnectionError) as e:
                logger.error(f"OpenAI embedding error: {e}")
                raise self._translate_error(e) from e

            usage = getattr(response, "usage", None)
            return {
                "data": [
                    {"embedding": list(item.embedding), "index": item.index}
                    for item in response.data
                ],
                "model": getattr(response, "model", None) or self.embedding_model,
                "usage": {
                    "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
                    "total_tokens": getattr(usage, "total_tokens", 0) or 0,
                },
            }

        return await self._with_retry(self.EMBEDDINGS_ENDPOINT, embed_once)

    async def close(self) -> None:
        await self.client.close()
