"""
Google Gemini Provider.

Implements the ILLMProvider interface with the google-genai SDK.
Gemini responses are delivered whole and split into paced chunks for
streaming; function calling and embeddings are native.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..domain.entities import (
    Choice,
    ChoiceMessage,
    FunctionCallRequest,
    FunctionDefinition,
    Message,
    MessageRole,
    NormalizedResponse,
    Usage,
)
from ..exceptions import InvalidConfigurationError, MurmurError, NetworkError
from ..exceptions import TimeoutError as RequestTimeoutError
from .base import BaseLLMProvider, LLMProviderConfig
from .rate_limit import EndpointLimit, EndpointRateLimiter

logger = logging.getLogger(__name__)

# Lazy import to avoid requiring google-genai if not used
try:
    from google import genai
    from google.genai import errors as genai_errors
    from google.genai import types

    GENAI_AVAILABLE = True
except ImportError:
    GENAI_AVAILABLE = False
    genai = None
    genai_errors = None
    types = None


# Gemini finish reason name -> normalized finish_reason
FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
}

MODEL_PREFIX = "gemini-"


class GoogleProvider(BaseLLMProvider):
    """Gemini provider implementation.

    Usage:
        config = LLMProviderConfig(api_key="...", model="gemini-2.0-flash")
        provider = GoogleProvider(config)
        response = await provider.chat_completion(messages)
    """

    PROVIDER_NAME = "google"
    CHAT_ENDPOINT = "generateContent"
    EMBEDDINGS_ENDPOINT = "embeddings"
    DEFAULT_RATE_LIMITS = {
        "generateContent": EndpointLimit(3, 60.0),
        "embeddings": EndpointLimit(3, 60.0),
    }

    DEFAULT_EMBEDDING_MODEL = "text-embedding-004"

    def __init__(
        self,
        config: LLMProviderConfig,
        rate_limiter: Optional[EndpointRateLimiter] = None,
    ):
        """Initialize the Gemini provider.

        Raises:
            ImportError: If google-genai is not installed
            InvalidConfigurationError: If the model is not a Gemini model
        """
        if not GENAI_AVAILABLE:
            raise ImportError(
                "google-genai package is required for GoogleProvider. "
                "Install with: pip install google-genai"
            )
        if not config.model.startswith(MODEL_PREFIX):
            raise InvalidConfigurationError(
                f"Invalid model name for Google provider: {config.model} "
                f"(expected a '{MODEL_PREFIX}*' model)"
            )

        super().__init__(config, rate_limiter)

        self.embedding_model = config.embedding_model or self.DEFAULT_EMBEDDING_MODEL

        http_options = None
        if config.base_url:
            http_options = types.HttpOptions(base_url=config.base_url)
        self.client = genai.Client(api_key=config.api_key, http_options=http_options)

    @property
    def supports_native_functions(self) -> bool:
        return True

    # ----------------------------------------
    # Request formatting
    # ----------------------------------------

    def _format_contents(self, messages: list[Message]) -> tuple[Optional[str], list[Any]]:
        """Split messages into a system instruction and Gemini contents."""
        system_parts = []
        contents = []
        for msg in messages:
            if msg.role == MessageRole.SYSTEM:
                system_parts.append(msg.content)
                continue
            if msg.role == MessageRole.ASSISTANT:
                role = "model"
            else:
                if msg.role != MessageRole.USER:
                    self._warn_role_mapping(msg.role.value)
                role = "user"
            contents.append(
                types.Content(role=role, parts=[types.Part.from_text(text=msg.content)])
            )
        system = "\n\n".join(system_parts) if system_parts else None
        return system, contents

    def _build_config(
        self,
        system: Optional[str],
        params: dict[str, Any],
        functions: list[FunctionDefinition],
        function_call: Optional[str],
    ) -> Any:
        options: dict[str, Any] = {}
        if system:
            options["system_instruction"] = system
        if "temperature" in params:
            options["temperature"] = params["temperature"]
        if "max_tokens" in params:
            options["max_output_tokens"] = params["max_tokens"]
        if "top_p" in params:
            options["top_p"] = params["top_p"]
        if "top_k" in params:
            options["top_k"] = params["top_k"]
        if "stop_sequences" in params:
            options["stop_sequences"] = params["stop_sequences"]

        if functions:
            options["tools"] = [
                types.Tool(
                    function_declarations=[
                        types.FunctionDeclaration(**f.to_google_format()) for f in functions
                    ]
                )
            ]
            options["automatic_function_calling"] = types.AutomaticFunctionCallingConfig(
                disable=True
            )
            if function_call == "none":
                mode_config = types.FunctionCallingConfig(mode="NONE")
            elif function_call in (None, "auto"):
                mode_config = types.FunctionCallingConfig(mode="AUTO")
            else:
                mode_config = types.FunctionCallingConfig(
                    mode="ANY", allowed_function_names=[function_call]
                )
            options["tool_config"] = types.ToolConfig(function_calling_config=mode_config)

        return types.GenerateContentConfig(**options)

    # ----------------------------------------
    # Response normalization
    # ----------------------------------------

    def _normalize(self, response: Any) -> NormalizedResponse:
        choices = []
        for index, candidate in enumerate(response.candidates or []):
            texts = []
            call = None
            parts = candidate.content.parts if candidate.content and candidate.content.parts else []
            for part in parts:
                if getattr(part, "text", None):
                    texts.append(part.text)
                function_call = getattr(part, "function_call", None)
                if function_call is not None and call is None:
                    call = FunctionCallRequest(
                        name=function_call.name,
                        arguments=dict(function_call.args or {}),
                        id=getattr(function_call, "id", None),
                    )

            reason = candidate.finish_reason
            reason_name = getattr(reason, "name", reason)
            finish_reason = "function_call" if call else FINISH_REASONS.get(
                reason_name, str(reason_name).lower() if reason_name else None
            )
            choices.append(
                Choice(
                    message=ChoiceMessage(
                        role=MessageRole.ASSISTANT,
                        content="".join(texts),
                        function_call=call,
                    ),
                    finish_reason=finish_reason,
                    index=index,
                )
            )

        metadata = getattr(response, "usage_metadata", None)
        usage = (
            Usage.of(metadata.prompt_token_count, metadata.candidates_token_count)
            if metadata is not None
            else Usage()
        )
        return NormalizedResponse(
            choices=tuple(choices),
            usage=usage,
            id=getattr(response, "response_id", None),
            model=self.model_name,
        )

    def _translate_error(self, e: Exception) -> MurmurError:
        if isinstance(e, genai_errors.APIError):
            response = getattr(e, "response", None)
            return self._map_status_error(
                e.code or 0,
                e.message or str(e),
                body=getattr(e, "details", None),
                headers=getattr(response, "headers", None),
                cause=e,
            )
        if isinstance(e, httpx.TimeoutException):
            return RequestTimeoutError(
                f"Gemini request timed out: {e}",
                timeout_seconds=self.config.timeout,
                cause=e,
            )
        return NetworkError(f"Gemini connection error: {e}", cause=e)

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
        system, contents = self._format_contents(messages)
        config = self._build_config(system, params, functions, function_call)

        try:
            response = await self.client.aio.models.generate_content(
                model=self.config.model,
                contents=contents,
                config=config,
            )
        except (genai_errors.APIError, httpx.TransportError) as e:
            logger.error(f"Gemini API error: {e}")
            raise self._translate_error(e) from e

        return self._normalize(response)

    async def embeddings(self, input: str | list[str]) -> dict[str, Any]:
        """Generate embeddings with the configured embedding model."""

        async def embed_once() -> dict[str, Any]:
            try:
                response = await self.client.aio.models.embed_content(
                    model=self.embedding_model,
                    contents=input,
                )
            except (genai_errors.APIError, httpx.TransportError) as e:
                logger.error(f"Gemini embedding error: {e}")
                raise self._translate_error(e) from e

            return {
                "data": [
                    {"embedding": list(item.values or []), "index": index}
                    for index, item in enumerate(response.embeddings or [])
                ],
                "model": self.embedding_model,
                "usage": {"prompt_tokens": 0, "total_tokens": 0},
            }

        return await self._with_retry(self.EMBEDDINGS_ENDPOINT, embed_once)

    async def close(self) -> None:
        aclose = getattr(self.client.aio, "aclose", None)
        if aclose is not None:
            await aclose()
