"""murmur: multi-provider LLM agent orchestration.

Agents bind a provider, state, history, tools and an optional output
schema; chains and the workflow orchestrator compose them.

Example:
    from murmur import Agent, AgentConfig, MurmurConfig

    config = MurmurConfig.from_env()
    agent = Agent(config.create_provider(), AgentConfig(role="Be concise"))
    result = await agent.execute("What is a token bucket?")
"""

from .agent import Agent, AgentChain, AgentConfig, WorkflowOrchestrator
from .cache import CacheEntry, CacheManager, CacheStats
from .config import MurmurConfig, configure_logging
from .domain import (
    AgentProgress,
    AgentResult,
    AgentStatus,
    ChainResult,
    FunctionCallRequest,
    FunctionDefinition,
    IKeyValueStore,
    ILLMProvider,
    Message,
    MessageRole,
    NormalizedResponse,
    StreamChunk,
    ToolCall,
    Usage,
)
from .exceptions import (
    AgentExecutionError,
    AuthenticationError,
    CacheError,
    ChainExecutionError,
    FunctionCallFormatError,
    InvalidConfigurationError,
    InvalidInputError,
    MurmurError,
    NetworkError,
    ProviderError,
    RateLimitError,
    ResourceExhaustedError,
    ServerError,
    StateError,
    TokenLimitExceededError,
    ToolExecutionError,
    TypeMismatchError,
    UnknownFunctionError,
    ValidationError,
    WorkflowError,
    WorkflowStepLimitError,
)
from .memory import FileKeyValueStore, HistoryRegistry, InMemoryKeyValueStore, MessageHistory
from .providers import (
    BaseLLMProvider,
    EndpointLimit,
    EndpointRateLimiter,
    LLMProvider,
    LLMProviderConfig,
    create_provider,
)
from .schema import (
    BoolField,
    FloatField,
    IntField,
    ListField,
    MapField,
    OutputSchema,
    SchemaField,
    StringField,
    ValidationResult,
)
from .state import ImmutableState
from .tools import Tool, ToolRegistry, parse_function_call

__version__ = "0.1.0"

__all__ = [
    # Agents
    "Agent",
    "AgentChain",
    "AgentConfig",
    "WorkflowOrchestrator",
    # Cache
    "CacheEntry",
    "CacheManager",
    "CacheStats",
    # Configuration
    "MurmurConfig",
    "configure_logging",
    # Domain
    "AgentProgress",
    "AgentResult",
    "AgentStatus",
    "ChainResult",
    "FunctionCallRequest",
    "FunctionDefinition",
    "IKeyValueStore",
    "ILLMProvider",
    "Message",
    "MessageRole",
    "NormalizedResponse",
    "StreamChunk",
    "ToolCall",
    "Usage",
    # Errors
    "AgentExecutionError",
    "AuthenticationError",
    "CacheError",
    "ChainExecutionError",
    "FunctionCallFormatError",
    "InvalidConfigurationError",
    "InvalidInputError",
    "MurmurError",
    "NetworkError",
    "ProviderError",
    "RateLimitError",
    "ResourceExhaustedError",
    "ServerError",
    "StateError",
    "TokenLimitExceededError",
    "ToolExecutionError",
    "TypeMismatchError",
    "UnknownFunctionError",
    "ValidationError",
    "WorkflowError",
    "WorkflowStepLimitError",
    # Memory
    "FileKeyValueStore",
    "HistoryRegistry",
    "InMemoryKeyValueStore",
    "MessageHistory",
    # Providers
    "BaseLLMProvider",
    "EndpointLimit",
    "EndpointRateLimiter",
    "LLMProvider",
    "LLMProviderConfig",
    "create_provider",
    # Schema
    "BoolField",
    "FloatField",
    "IntField",
    "ListField",
    "MapField",
    "OutputSchema",
    "SchemaField",
    "StringField",
    "ValidationResult",
    # State
    "ImmutableState",
    # Tools
    "Tool",
    "ToolRegistry",
    "parse_function_call",
]
