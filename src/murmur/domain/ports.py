"""
Port interfaces (abstract base classes) for murmur.

These define the contracts that adapters must implement.
Following the Ports & Adapters (Hexagonal) architecture pattern.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional

if TYPE_CHECKING:
    from .entities import (
        FunctionDefinition,
        Message,
        NormalizedResponse,
        StreamChunk,
    )


# ============================================
# LLM Provider Interface
# ============================================


class ILLMProvider(ABC):
    """Interface for LLM providers (OpenAI, Anthropic, Gemini).

    Implementations handle the specifics of each provider API while
    returning the same NormalizedResponse shape to every agent.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider identifier (e.g., 'openai')."""
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model identifier (e.g., 'gpt-4o')."""
        pass

    @property
    @abstractmethod
    def supports_native_streaming(self) -> bool:
        """Return True if chunks come from the wire as they are produced."""
        pass

    @property
    @abstractmethod
    def supports_native_functions(self) -> bool:
        """Return True if the provider has structured function calling."""
        pass

    @abstractmethod
    async def chat_completion(
        self,
        messages: list[Message],
        stream: bool = False,
        override_params: Optional[dict[str, Any]] = None,
        functions: Optional[list[FunctionDefinition]] = None,
        function_call: Optional[str] = None,
    ) -> NormalizedResponse:
        """Generate a completion for the conversation.

        Args:
            messages: Conversation so far, system messages included
            stream: Accepted for signature compatibility; use
                stream_chat_completion for incremental delivery
            override_params: Per-call generation parameters
                (temperature, max_tokens, top_p, ...)
            functions: Functions the model may call
            function_call: "auto", "none", or a function name to force

        Returns:
            The normalized response
        """
        pass

    @abstractmethod
    def stream_chat_completion(
        self,
        messages: list[Message],
        override_params: Optional[dict[str, Any]] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Yield the completion incrementally."""
        pass

    async def embeddings(self, input: str | list[str]) -> dict[str, Any]:
        """Generate embeddings.

        Returns:
            Mapping with `data` (list of `{embedding, index}`), `model`, `usage`
        """
        raise NotImplementedError(f"{self.provider_name} does not provide embeddings")

    async def close(self) -> None:
        """Release underlying HTTP resources."""


# ============================================
# Key-Value Store Interface
# ============================================


class IKeyValueStore(ABC):
    """Interface for the string persistence backend used by histories."""

    @abstractmethod
    async def get_string(self, key: str) -> Optional[str]:
        """Return the stored value, or None if absent."""
        pass

    @abstractmethod
    async def set_string(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""
        pass

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete a value; removing an absent key is not an error."""
        pass
