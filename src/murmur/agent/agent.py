"""
Agent.

An Agent binds one provider to a role, a state snapshot, an optional
message history, a tool registry, an optional output schema and an
optional response cache, and turns one input into one AgentResult:

1. Validate the input against the length and token budgets
2. Build messages: system (role, state context, tools, schema), history, user
3. Call the provider (cached when enabled), or stream it
4. Route the response: function call, schema validation or plain text
5. Persist the turn to the history

Each stage is reported to progress callbacks as an AgentProgress.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Optional

from ..cache.manager import CacheManager
from ..domain.entities import (
    AgentProgress,
    AgentResult,
    AgentStatus,
    FunctionCallRequest,
    Message,
    NormalizedResponse,
)
from ..domain.ports import ILLMProvider
from ..exceptions import (
    AgentExecutionError,
    InvalidConfigurationError,
    InvalidInputError,
    MurmurError,
    StateError,
    TokenLimitExceededError,
)
from ..memory.history import HistoryRegistry, MessageHistory, estimate_tokens
from ..schema.output_schema import OutputSchema
from ..state.immutable_state import ImmutableState
from ..tools.function_call import PREFIX, contains_function_call, parse_function_call
from ..tools.registry import FunctionHandler, Tool, ToolRegistry

if TYPE_CHECKING:
    from ..config import MurmurConfig

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[AgentProgress], Any]


@dataclass
class AgentConfig:
    """Configuration for one agent.

    Attributes:
        name: Agent name used in logs, progress metadata and cache tags
        role: System instructions
        max_input_length: Maximum input length in characters
        max_input_tokens: Maximum estimated input tokens
        stream: Default streaming mode for execute()
        stream_chunk_delay: Pause between chunks, in seconds, for providers
            that do not stream natively
        include_history: Send prior history messages with each call
        enable_cache: Reuse cached responses for identical prompts
        cache_ttl: Response cache TTL in seconds
        override_params: Forwarded verbatim to the provider
    """

    name: str = "agent"
    role: str = ""
    max_input_length: int = 32000
    max_input_tokens: int = 4000
    stream: bool = False
    stream_chunk_delay: float = 0.05
    include_history: bool = True
    enable_cache: bool = False
    cache_ttl: float = 3600.0
    override_params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.name:
            raise InvalidConfigurationError("Agent name is required", missing_keys=["name"])
        if self.max_input_length < 1:
            raise InvalidConfigurationError("max_input_length must be positive")
        if self.max_input_tokens < 1:
            raise InvalidConfigurationError("max_input_tokens must be positive")
        if self.stream_chunk_delay < 0:
            raise InvalidConfigurationError("stream_chunk_delay must not be negative")
        if self.cache_ttl < 0:
            raise InvalidConfigurationError("cache_ttl must not be negative")


class Agent:
    """Role-scoped prompt executor.

    Usage:
        agent = Agent(provider, AgentConfig(name="summarizer", role="Summarize the input"))
        result = await agent.execute("Long text ...")
        print(result.output)

        # Streaming
        async for chunk in agent.execute_stream("Tell me a story"):
            print(chunk, end="")
    """

    def __init__(
        self,
        provider: ILLMProvider,
        config: Optional[AgentConfig] = None,
        state: Optional[ImmutableState] = None,
        history: Optional[MessageHistory] = None,
        schema: Optional[OutputSchema] = None,
        tools: Optional[ToolRegistry] = None,
        cache: Optional[CacheManager] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        """Initialize the agent.

        Args:
            provider: Provider used for every call
            config: Agent configuration
            state: Initial state snapshot
            history: Message history to read from and persist to
            schema: Output schema; responses are validated against it
            tools: Tool registry for function calls
            cache: Response cache (used when config.enable_cache is set)
            on_progress: Progress callback
        """
        if provider is None:
            raise InvalidConfigurationError("Agent requires a provider", missing_keys=["provider"])

        self.provider = provider
        self.config = config or AgentConfig()
        self.state = state or ImmutableState()
        self.history = history
        self.schema = schema
        self.tools = tools or ToolRegistry()
        self.cache = cache
        self._callbacks: list[ProgressCallback] = [on_progress] if on_progress else []
        self._disposed = False

        if self.config.enable_cache and self.cache is None:
            logger.warning(f"Agent {self.name}: caching enabled but no CacheManager bound")

    @classmethod
    def from_config(
        cls,
        config: MurmurConfig,
        name: str = "assistant",
        role: str = "",
        history_registry: Optional[HistoryRegistry] = None,
        cache: Optional[CacheManager] = None,
        **kwargs,
    ) -> Agent:
        """Build an agent from the library-wide configuration.

        A history is bound when config.thread_id is set, a cache when
        config.enable_cache is set.
        """
        history = None
        if config.thread_id:
            registry = history_registry or HistoryRegistry(
                max_messages=config.max_messages,
                max_tokens=config.history_max_tokens,
            )
            history = registry.get_or_create(config.thread_id)

        if config.enable_cache and cache is None:
            cache = CacheManager(default_ttl=config.cache_timeout)

        agent_config = AgentConfig(
            name=name,
            role=role,
            stream=config.stream,
            enable_cache=config.enable_cache,
            cache_ttl=config.cache_timeout,
        )
        return cls(
            config.create_provider(),
            agent_config,
            history=history,
            cache=cache,
            **kwargs,
        )

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    # ============================================
    # Lifecycle
    # ============================================

    def _ensure_active(self) -> None:
        if self._disposed:
            raise StateError(
                f"Agent {self.name} has been disposed",
                details={"agent": self.name},
            )

    def on_progress(self, callback: ProgressCallback) -> None:
        """Register an additional progress callback."""
        self._ensure_active()
        self._callbacks.append(callback)

    def add_tool(self, tool: Tool) -> None:
        self._ensure_active()
        self.tools.register(tool)

    def add_function(self, name: str, handler: FunctionHandler) -> None:
        self._ensure_active()
        self.tools.register_function(name, handler)

    def update_state(
        self,
        data: Optional[dict[str, Any]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ImmutableState:
        """Replace the current state with an updated snapshot."""
        self._ensure_active()
        self.state = self.state.copy_with(data, metadata)
        return self.state

    def handoff(self, next_agent: Agent) -> Agent:
        """Copy this agent's state into next_agent.

        Only state travels; tools, functions and history stay with each agent.
        """
        self._ensure_active()
        next_agent._ensure_active()
        next_agent.state = next_agent.state.merge(self.state)
        logger.debug(f"Handed off state from {self.name} to {next_agent.name}")
        return next_agent

    def dispose(self) -> None:
        """Release the agent. Any later use raises StateError."""
        if self._disposed:
            return
        self._disposed = True
        self._callbacks.clear()
        logger.info(f"Agent {self.name} disposed")

    # ============================================
    # Execution
    # ============================================

    async def execute(
        self,
        input: str,
        stream: Optional[bool] = None,
        history: Optional[MessageHistory] = None,
        *,
        position: tuple[int, int] = (1, 1),
        on_progress: Optional[ProgressCallback] = None,
    ) -> AgentResult:
        """Run one turn.

        Args:
            input: User input
            stream: Override config.stream for this call
            history: Use this history instead of the bound one for this call
            position: (current index, total count) reported in progress
            on_progress: Extra callback for this call only

        Returns:
            AgentResult; when streaming, `stream` yields text chunks and the
            turn is persisted once the stream is exhausted

        Raises:
            StateError: The agent has been disposed
            InvalidInputError: Empty or over-long input
            TokenLimitExceededError: Input over the token budget
            UnknownFunctionError: The model called an unregistered function
            ValidationError: Output failed the bound schema
            MurmurError: Any provider or tool failure, unchanged
            AgentExecutionError: Wrapping anything else
        """
        self._ensure_active()
        use_stream = self.config.stream if stream is None else stream
        history = history if history is not None else self.history
        callbacks = [*self._callbacks, on_progress] if on_progress else list(self._callbacks)

        def emit(status: AgentStatus, **metadata) -> None:
            self._emit(callbacks, status, position, metadata)

        try:
            emit(AgentStatus.INITIALIZING)
            self._validate_input(input)

            emit(AgentStatus.PROCESSING)
            messages = await self._build_messages(input, history)

            if use_stream:
                return AgentResult(
                    output="",
                    state_variables=dict(self.state.data),
                    metadata={"agent": self.name, "streaming": True},
                    stream=self._stream(messages, input, history, emit),
                )

            response = await self._complete(messages)

            emit(AgentStatus.POST_PROCESSING)
            result = await self._route(response)

            await self._persist_turn(history, input, result.output)
            emit(AgentStatus.COMPLETED)
            return result

        except MurmurError as e:
            logger.error(f"Agent {self.name} failed: {e}")
            emit(AgentStatus.ERROR, error=str(e))
            raise
        except Exception as e:
            logger.exception(f"Agent {self.name} failed unexpectedly")
            emit(AgentStatus.ERROR, error=str(e))
            raise AgentExecutionError(
                f"Failed to execute agent {self.name}: {e}",
                details={"agent": self.name, "state": dict(self.state.data)},
                cause=e,
            ) from e

    async def execute_stream(
        self,
        input: str,
        history: Optional[MessageHistory] = None,
    ) -> AsyncIterator[str]:
        """Yield the response to input chunk by chunk."""
        result = await self.execute(input, stream=True, history=history)
        async for chunk in result.stream:
            yield chunk

    # ----------------------------------------
    # Steps
    # ----------------------------------------

    def _validate_input(self, input: str) -> None:
        if input is None or not input.strip():
            raise InvalidInputError("Input cannot be empty", field="input")
        if len(input) > self.config.max_input_length:
            raise InvalidInputError(
                f"Input exceeds maximum length of {self.config.max_input_length} characters",
                field="input",
                details={"length": len(input)},
            )
        tokens = estimate_tokens(input)
        if tokens > self.config.max_input_tokens:
            raise TokenLimitExceededError(
                f"Input of ~{tokens} tokens exceeds the limit of {self.config.max_input_tokens}",
                limit=self.config.max_input_tokens,
                actual=tokens,
            )
        logger.debug(f"Agent {self.name}: validated input ({tokens} tokens)")

    def _system_prompt(self) -> str:
        sections = []
        if self.config.role:
            sections.append(self.config.role)

        if not self.state.is_empty():
            context = "\n".join(f"- {key}: {value}" for key, value in self.state.data.items())
            sections.append(f"Context:\n{context}")

        tools = self.tools.get_function_definitions()
        if tools:
            listing = "\n".join(f"- {t.name}: {t.description}" for t in tools)
            sections.append(f"Available functions:\n{listing}")
            if not self.provider.supports_native_functions:
                sections.append(
                    "To call a function, reply with a single line of the form:\n"
                    f"{PREFIX} name(key: value, other_key: \"text value\")"
                )

        if self.schema is not None:
            sections.append(self.schema.describe())

        return "\n\n".join(sections)

    async def _build_messages(
        self,
        input: str,
        history: Optional[MessageHistory],
    ) -> list[Message]:
        messages = []
        system_prompt = self._system_prompt()
        if system_prompt:
            messages.append(Message.system(system_prompt))

        if history is not None and self.config.include_history:
            await history.load()
            messages.extend(history.get_messages())

        messages.append(Message.user(input))
        logger.debug(f"Agent {self.name}: prepared {len(messages)} messages")
        return messages

    def _call_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if self.config.override_params:
            options["override_params"] = dict(self.config.override_params)
        if len(self.tools) and self.provider.supports_native_functions:
            options["functions"] = self.tools.get_function_definitions()
        return options

    def _cache_key(self, messages: list[Message], options: dict[str, Any]) -> str:
        payload = {
            "provider": self.provider.provider_name,
            "model": self.provider.model_name,
            "messages": [[m.role.value, m.content] for m in messages],
            "params": options.get("override_params", {}),
            "functions": [f.name for f in options.get("functions", [])],
        }
        digest = hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode("utf-8"))
        return f"response:{digest.hexdigest()}"

    async def _complete(self, messages: list[Message]) -> NormalizedResponse:
        options = self._call_options()
        use_cache = self.config.enable_cache and self.cache is not None

        if use_cache:
            key = self._cache_key(messages, options)
            cached = await self.cache.get(key)
            if cached is not None:
                logger.debug(f"Agent {self.name}: response cache hit")
                return NormalizedResponse.from_dict(cached)

        response = await self.provider.chat_completion(messages, **options)

        if use_cache:
            await self.cache.set(
                key,
                response.to_dict(),
                ttl=self.config.cache_ttl,
                tags=[self.name],
            )
        return response

    def _detect_function_call(self, response: NormalizedResponse) -> Optional[FunctionCallRequest]:
        if response.function_call is not None:
            return response.function_call
        text = response.text
        # Schema-bound agents without functions expect JSON, not calls
        if contains_function_call(text) and (len(self.tools) or self.schema is None):
            return parse_function_call(text)
        return None

    async def _route(self, response: NormalizedResponse) -> AgentResult:
        metadata: dict[str, Any] = {
            "agent": self.name,
            "model": response.model or self.provider.model_name,
            "usage": {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            },
        }
        if response.first is not None:
            metadata["finish_reason"] = response.first.finish_reason

        call = self._detect_function_call(response)
        if call is not None:
            logger.info(f"Agent {self.name}: dispatching function {call.name}")
            tool_call = await self.tools.execute(call.name, call.arguments)
            result = tool_call.result
            output = result if isinstance(result, str) else json.dumps(result, default=str)
            metadata["function_call"] = {"name": call.name, "arguments": call.arguments}
            return AgentResult(
                output=output,
                state_variables=dict(self.state.data),
                metadata=metadata,
                tool_calls=(tool_call,),
            )

        if self.schema is not None:
            data = self.schema.parse(response.text)
            metadata["data"] = data
            return AgentResult(
                output=json.dumps(data),
                state_variables=dict(self.state.data),
                metadata=metadata,
            )

        return AgentResult(
            output=response.text,
            state_variables=dict(self.state.data),
            metadata=metadata,
        )

    async def _stream(
        self,
        messages: list[Message],
        input: str,
        history: Optional[MessageHistory],
        emit: Callable[..., None],
    ) -> AsyncIterator[str]:
        """Forward provider chunks, pacing them for non-native streams."""
        delay = 0.0 if self.provider.supports_native_streaming else self.config.stream_chunk_delay
        override_params = dict(self.config.override_params) or None
        parts: list[str] = []

        try:
            async for chunk in self.provider.stream_chat_completion(messages, override_params):
                if not chunk.content:
                    continue
                if parts and delay:
                    await asyncio.sleep(delay)
                parts.append(chunk.content)
                yield chunk.content

            emit(AgentStatus.POST_PROCESSING)
            await self._persist_turn(history, input, "".join(parts))
            emit(AgentStatus.COMPLETED)

        except MurmurError as e:
            logger.error(f"Agent {self.name} stream failed: {e}")
            emit(AgentStatus.ERROR, error=str(e))
            raise
        except Exception as e:
            logger.exception(f"Agent {self.name} stream failed unexpectedly")
            emit(AgentStatus.ERROR, error=str(e))
            raise AgentExecutionError(
                f"Streaming failed for agent {self.name}: {e}",
                details={"agent": self.name},
                cause=e,
            ) from e

    async def _persist_turn(
        self,
        history: Optional[MessageHistory],
        input: str,
        output: str,
    ) -> None:
        if history is None:
            return
        await history.add_message(Message.user(input))
        await history.add_message(Message.assistant(output))

    def _emit(
        self,
        callbacks: list[ProgressCallback],
        status: AgentStatus,
        position: tuple[int, int],
        metadata: dict[str, Any],
    ) -> None:
        current, total = position
        progress = AgentProgress(
            status=status,
            current_index=current,
            total_count=total,
            metadata={"agent": self.name, **metadata},
        )
        for callback in callbacks:
            try:
                callback(progress)
            except Exception as e:
                logger.warning(f"Progress callback failed for agent {self.name}: {e}")

    def __repr__(self) -> str:
        return (
            f"Agent(name={self.name!r}, provider={self.provider.provider_name!r}, "
            f"model={self.provider.model_name!r})"
        )


__all__ = [
    "Agent",
    "AgentConfig",
    "ProgressCallback",
]
