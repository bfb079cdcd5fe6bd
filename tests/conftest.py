"""Shared fixtures for the murmur test suite."""

from typing import Any, Callable, Optional

import pytest

from murmur.domain import ILLMProvider, Message, NormalizedResponse, StreamChunk
from murmur.memory import InMemoryKeyValueStore
from murmur.providers import split_into_chunks


class ScriptedProvider(ILLMProvider):
    """Provider double that answers from a script.

    Each entry of `responses` is a string, a NormalizedResponse or an
    exception to raise. A `responder` callable, when given, is called with
    the message list instead.
    """

    def __init__(
        self,
        responses: Optional[list[Any]] = None,
        responder: Optional[Callable[[list[Message]], Any]] = None,
        native_streaming: bool = False,
        native_functions: bool = False,
        model: str = "scripted-model",
    ):
        self.responses = list(responses or [])
        self.responder = responder
        self.native_streaming = native_streaming
        self.native_functions = native_functions
        self.model = model
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    @property
    def provider_name(self) -> str:
        return "scripted"

    @property
    def model_name(self) -> str:
        return self.model

    @property
    def supports_native_streaming(self) -> bool:
        return self.native_streaming

    @property
    def supports_native_functions(self) -> bool:
        return self.native_functions

    def _next(self, messages: list[Message]) -> NormalizedResponse:
        if self.responder is not None:
            result = self.responder(messages)
        else:
            result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        if isinstance(result, str):
            return NormalizedResponse.from_text(result, model=self.model)
        return result

    async def chat_completion(
        self,
        messages,
        stream=False,
        override_params=None,
        functions=None,
        function_call=None,
    ):
        self.calls.append(
            {
                "messages": list(messages),
                "override_params": override_params,
                "functions": functions,
            }
        )
        return self._next(messages)

    async def stream_chat_completion(self, messages, override_params=None):
        self.calls.append(
            {"messages": list(messages), "override_params": override_params, "stream": True}
        )
        text = self._next(messages).text
        for piece in split_into_chunks(text):
            yield StreamChunk(piece)
        yield StreamChunk("", finish_reason="stop")

    async def close(self):
        self.closed = True


@pytest.fixture
def store():
    """Fresh in-memory key-value store."""
    return InMemoryKeyValueStore()


@pytest.fixture
def scripted_provider():
    """Factory for ScriptedProvider instances."""
    return ScriptedProvider
