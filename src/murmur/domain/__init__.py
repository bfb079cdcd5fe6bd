"""Domain entities and port interfaces for murmur."""

from .entities import (
    AgentProgress,
    AgentResult,
    AgentStatus,
    ChainResult,
    Choice,
    ChoiceMessage,
    FunctionCallRequest,
    FunctionDefinition,
    Message,
    MessageRole,
    NormalizedResponse,
    StreamChunk,
    ToolCall,
    Usage,
)
from .ports import IKeyValueStore, ILLMProvider

__all__ = [
    # Entities
    "AgentProgress",
    "AgentResult",
    "AgentStatus",
    "ChainResult",
    "Choice",
    "ChoiceMessage",
    "FunctionCallRequest",
    "FunctionDefinition",
    "Message",
    "MessageRole",
    "NormalizedResponse",
    "StreamChunk",
    "ToolCall",
    "Usage",
    # Ports
    "IKeyValueStore",
    "ILLMProvider",
]
