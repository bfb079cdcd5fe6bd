"""Tests for the OpenAI provider.

Tests cover:
    - Request formatting (roles, parameters, tools)
    - Response normalization (text, tool calls, usage)
    - Native streaming, with retried opening and bounded chunk reads
    - Embeddings
    - SDK error translation into the error taxonomy
"""
import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from murmur.domain import FunctionDefinition, Message
from murmur.exceptions import (
    AuthenticationError,
    InvalidConfigurationError,
    ProviderError,
    RateLimitError,
)
from murmur.exceptions import TimeoutError as RequestTimeoutError
from murmur.providers import EndpointLimit, EndpointRateLimiter, LLMProviderConfig
from murmur.providers.openai import OpenAIProvider

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def make_completion(content="Hello!", tool_calls=None, finish_reason="stop"):
    message = SimpleNamespace(content=content, tool_calls=tool_calls, function_call=None)
    return SimpleNamespace(
        id="chatcmpl-1",
        model="gpt-4o-mini",
        choices=[SimpleNamespace(index=0, message=message, finish_reason=finish_reason)],
        usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5),
    )


def raw_response(completion, headers=None):
    raw = MagicMock()
    raw.headers = headers or {}
    raw.parse.return_value = completion
    return raw


@pytest.fixture
def config():
    return LLMProviderConfig(api_key="test-key", model="gpt-4o-mini", max_retries=1, temperature=0.2)


@pytest.fixture
def provider(config):
    with patch("murmur.providers.openai.AsyncOpenAI") as client_cls:
        client_cls.return_value = MagicMock()
        instance = OpenAIProvider(
            config,
            rate_limiter=EndpointRateLimiter(default_limit=EndpointLimit(100, 1.0)),
        )
    return instance


def streaming_provider(**config):
    with patch("murmur.providers.openai.AsyncOpenAI") as client_cls:
        client_cls.return_value = MagicMock()
        return OpenAIProvider(
            LLMProviderConfig(api_key="test-key", model="gpt-4o-mini", **config),
            rate_limiter=EndpointRateLimiter(default_limit=EndpointLimit(100, 1.0)),
        )


# ============================================
# Configuration Tests
# ============================================

class TestConfiguration:
    """Test construction."""

    def test_client_built_without_sdk_retries(self, config):
        with patch("murmur.providers.openai.AsyncOpenAI") as client_cls:
            OpenAIProvider(config)

        kwargs = client_cls.call_args.kwargs
        assert kwargs["api_key"] == "test-key"
        assert kwargs["max_retries"] == 0

    def test_capabilities(self, provider):
        assert provider.provider_name == "openai"
        assert provider.model_name == "gpt-4o-mini"
        assert provider.supports_native_streaming
        assert provider.supports_native_functions

    def test_default_rate_limits(self, config):
        with patch("murmur.providers.openai.AsyncOpenAI"):
            instance = OpenAIProvider(config)
        assert instance.rate_limiter.limit_for("chat/completions") == EndpointLimit(3, 60.0)

    def test_missing_api_key(self):
        with pytest.raises(InvalidConfigurationError) as exc_info:
            LLMProviderConfig(api_key="", model="gpt-4o-mini")
        assert exc_info.value.details["missing_keys"] == ["api_key"]


# ============================================
# Chat Completion Tests
# ============================================

class TestChatCompletion:
    """Test chat completions."""

    @pytest.mark.asyncio
    async def test_text_response(self, provider):
        create = AsyncMock(return_value=raw_response(make_completion()))
        provider.client.chat.completions.with_raw_response.create = create

        response = await provider.chat_completion(
            [Message.system("Be brief"), Message.user("Hi")],
            override_params={"max_tokens": 50, "stop_sequences": ["END"]},
        )

        assert response.text == "Hello!"
        assert response.first.finish_reason == "stop"
        assert response.usage.total_tokens == 15
        assert response.model == "gpt-4o-mini"

        kwargs = create.call_args.kwargs
        assert kwargs["messages"] == [
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": "Hi"},
        ]
        assert kwargs["temperature"] == 0.2
        assert kwargs["max_tokens"] == 50
        assert kwargs["stop"] == ["END"]
        assert "tools" not in kwargs

    @pytest.mark.asyncio
    async def test_tool_call_normalized(self, provider):
        tool_call = SimpleNamespace(
            id="call_1",
            function=SimpleNamespace(name="add", arguments='{"x": 1, "y": 2}'),
        )
        create = AsyncMock(
            return_value=raw_response(
                make_completion(content=None, tool_calls=[tool_call], finish_reason="tool_calls")
            )
        )
        provider.client.chat.completions.with_raw_response.create = create

        response = await provider.chat_completion(
            [Message.user("add 1 and 2")],
            functions=[FunctionDefinition("add", "Add numbers")],
            function_call="auto",
        )

        assert response.function_call.name == "add"
        assert response.function_call.arguments == {"x": 1, "y": 2}
        assert response.function_call.id == "call_1"
        assert response.first.finish_reason == "function_call"
        assert response.text == ""

        kwargs = create.call_args.kwargs
        assert kwargs["tools"][0]["function"]["name"] == "add"
        assert kwargs["tool_choice"] == "auto"

    @pytest.mark.asyncio
    async def test_forced_function(self, provider):
        create = AsyncMock(return_value=raw_response(make_completion()))
        provider.client.chat.completions.with_raw_response.create = create

        await provider.chat_completion(
            [Message.user("x")],
            functions=[FunctionDefinition("add", "Add")],
            function_call="add",
        )

        assert create.call_args.kwargs["tool_choice"] == {
            "type": "function",
            "function": {"name": "add"},
        }

    @pytest.mark.asyncio
    async def test_headers_update_rate_limiter(self, provider):
        provider.client.chat.completions.with_raw_response.create = AsyncMock(
            return_value=raw_response(
                make_completion(),
                headers={
                    "x-ratelimit-remaining-requests": "42",
                    "x-ratelimit-reset-requests": "1s",
                },
            )
        )

        await provider.chat_completion([Message.user("Hi")])

        assert provider.rate_limiter.get_status("chat/completions")["server_remaining"] == 42

    @pytest.mark.asyncio
    async def test_function_role_sent_as_user(self, provider):
        create = AsyncMock(return_value=raw_response(make_completion()))
        provider.client.chat.completions.with_raw_response.create = create

        await provider.chat_completion([Message("function", "result: 3")])

        assert create.call_args.kwargs["messages"][0]["role"] == "user"


# ============================================
# Streaming Tests
# ============================================

class TestStreaming:
    """Test native streaming."""

    @pytest.mark.asyncio
    async def test_stream_yields_deltas(self, provider):
        def chunk(content, finish_reason=None):
            return SimpleNamespace(
                choices=[
                    SimpleNamespace(
                        delta=SimpleNamespace(content=content), finish_reason=finish_reason
                    )
                ]
            )

        async def fake_stream():
            yield chunk("Hel")
            yield SimpleNamespace(choices=[])
            yield chunk("lo")
            yield chunk(None, "stop")

        create = AsyncMock(return_value=fake_stream())
        provider.client.chat.completions.create = create

        chunks = [c async for c in provider.stream_chat_completion([Message.user("Hi")])]

        assert [c.content for c in chunks] == ["Hel", "lo", ""]
        assert chunks[-1].finish_reason == "stop"
        assert create.call_args.kwargs["stream"] is True

    @pytest.mark.asyncio
    async def test_stream_flag_collects_chunks(self, provider):
        async def fake_stream():
            yield SimpleNamespace(
                choices=[SimpleNamespace(delta=SimpleNamespace(content="All"), finish_reason="stop")]
            )

        provider.client.chat.completions.create = AsyncMock(return_value=fake_stream())

        response = await provider.chat_completion([Message.user("Hi")], stream=True)

        assert response.text == "All"
        assert response.first.finish_reason == "stop"

    @pytest.mark.asyncio
    async def test_stream_open_is_retried(self):
        provider = streaming_provider(max_retries=2, retry_delay=0)

        async def fake_stream():
            yield SimpleNamespace(
                choices=[SimpleNamespace(delta=SimpleNamespace(content="ok"), finish_reason="stop")]
            )

        create = AsyncMock(side_effect=[openai.APIConnectionError(request=REQUEST), fake_stream()])
        provider.client.chat.completions.create = create

        chunks = [c async for c in provider.stream_chat_completion([Message.user("Hi")])]

        assert [c.content for c in chunks] == ["ok"]
        assert create.await_count == 2
        assert provider.rate_limiter.get_status("chat/completions")["count"] == 2

    @pytest.mark.asyncio
    async def test_stream_open_failure_exhausts_retries(self):
        provider = streaming_provider(max_retries=2, retry_delay=0)
        provider.client.chat.completions.create = AsyncMock(
            side_effect=openai.APIConnectionError(request=REQUEST)
        )

        with pytest.raises(ProviderError) as exc_info:
            async for _ in provider.stream_chat_completion([Message.user("Hi")]):
                pass

        assert exc_info.value.code == "RETRIES_EXHAUSTED"
        assert provider.client.chat.completions.create.await_count == 2

    @pytest.mark.asyncio
    async def test_stalled_stream_times_out(self):
        provider = streaming_provider(timeout=0.05)

        async def stalled_stream():
            yield SimpleNamespace(
                choices=[SimpleNamespace(delta=SimpleNamespace(content="Hel"), finish_reason=None)]
            )
            await asyncio.sleep(10)
            yield SimpleNamespace(choices=[])

        provider.client.chat.completions.create = AsyncMock(return_value=stalled_stream())

        received = []
        with pytest.raises(RequestTimeoutError):
            async for chunk in provider.stream_chat_completion([Message.user("Hi")]):
                received.append(chunk.content)

        assert received == ["Hel"]


# ============================================
# Embedding Tests
# ============================================

class TestEmbeddings:
    """Test embeddings."""

    @pytest.mark.asyncio
    async def test_embeddings_shape(self, provider):
        provider.client.embeddings.create = AsyncMock(
            return_value=SimpleNamespace(
                data=[SimpleNamespace(embedding=[0.1, 0.2], index=0)],
                model="text-embedding-3-small",
                usage=SimpleNamespace(prompt_tokens=3, total_tokens=3),
            )
        )

        result = await provider.embeddings("hello")

        assert result["data"] == [{"embedding": [0.1, 0.2], "index": 0}]
        assert result["usage"] == {"prompt_tokens": 3, "total_tokens": 3}
        provider.client.embeddings.create.assert_awaited_once_with(
            model="text-embedding-3-small", input="hello"
        )


# ============================================
# Error Translation Tests
# ============================================

class TestErrors:
    """Test SDK errors mapped into the taxonomy."""

    def _status_error(self, cls, status, headers=None):
        response = httpx.Response(status, headers=headers or {}, request=REQUEST)
        return cls("failure", response=response, body={"error": {"message": "failure"}})

    @pytest.mark.asyncio
    async def test_401_is_authentication_error(self, provider):
        provider.client.chat.completions.with_raw_response.create = AsyncMock(
            side_effect=self._status_error(openai.AuthenticationError, 401)
        )

        with pytest.raises(AuthenticationError) as exc_info:
            await provider.chat_completion([Message.user("Hi")])

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_429_retried_then_exhausted(self, provider):
        provider.client.chat.completions.with_raw_response.create = AsyncMock(
            side_effect=self._status_error(
                openai.RateLimitError, 429, headers={"retry-after": "2"}
            )
        )

        with pytest.raises(ProviderError) as exc_info:
            await provider.chat_completion([Message.user("Hi")])

        assert exc_info.value.code == "RETRIES_EXHAUSTED"
        assert isinstance(exc_info.value.cause, RateLimitError)
        assert exc_info.value.cause.retry_after == 2.0

    def test_500_is_server_error(self, provider):
        error = provider._translate_error(self._status_error(openai.InternalServerError, 503))
        assert error.code == "SERVER_ERROR"
        assert error.recoverable

    def test_400_is_provider_error(self, provider):
        error = provider._translate_error(self._status_error(openai.BadRequestError, 400))
        assert type(error) is ProviderError
        assert error.status_code == 400

    @pytest.mark.asyncio
    async def test_timeout(self, provider):
        provider.client.chat.completions.with_raw_response.create = AsyncMock(
            side_effect=openai.APITimeoutError(request=REQUEST)
        )

        with pytest.raises(RequestTimeoutError):
            await provider.chat_completion([Message.user("Hi")])

    def test_connection_error(self, provider):
        error = provider._translate_error(openai.APIConnectionError(request=REQUEST))
        assert error.code == "NETWORK_ERROR"
        assert error.recoverable
