"""
Domain entities for murmur.

These are pure value objects with no infrastructure dependencies.
Every provider adapter converts its native response into these shapes
immediately after the wire call, so agents, chains and the orchestrator
only ever see one typed representation.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Optional

# ============================================
# Message Types
# ============================================


class MessageRole(str, Enum):
    """Role of a message in a conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    FUNCTION = "function"
    TOOL = "tool"


@dataclass(frozen=True)
class Message:
    """A single message in a conversation.

    Immutable; two messages are equal when role, content and timestamp match.

    Attributes:
        role: Message role
        content: Message text content
        timestamp: Creation time (naive UTC)
    """

    role: MessageRole
    content: str
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if not isinstance(self.role, MessageRole):
            object.__setattr__(self, "role", MessageRole(self.role))

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role=MessageRole.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role=MessageRole.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> Message:
        return cls(role=MessageRole.ASSISTANT, content=content)

    def to_json(self) -> dict[str, Any]:
        """Convert to the persisted `{role, content, timestamp}` shape."""
        return {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Message:
        """Rebuild a message from `to_json` output.

        Raises:
            ValueError: If the role is unknown or the timestamp is malformed
            KeyError: If role or content is missing
        """
        timestamp = data.get("timestamp")
        return cls(
            role=MessageRole(data["role"]),
            content=data["content"],
            timestamp=(
                datetime.fromisoformat(timestamp) if timestamp else datetime.utcnow()
            ),
        )


# ============================================
# Function Calling
# ============================================


@dataclass(frozen=True)
class FunctionDefinition:
    """Definition of a callable function exposed to the model.

    Attributes:
        name: Function name (unique within an agent)
        description: Human-readable description
        parameters: JSON Schema for parameters
    """

    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_openai_format(self) -> dict[str, Any]:
        """Convert to OpenAI tool calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_anthropic_format(self) -> dict[str, Any]:
        """Convert to Anthropic tool use format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }

    def to_google_format(self) -> dict[str, Any]:
        """Convert to a Gemini function declaration."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters_json_schema": self.parameters,
        }


@dataclass(frozen=True)
class FunctionCallRequest:
    """A function call signalled by the model.

    Attributes:
        name: Function being called
        arguments: Decoded argument map
        id: Provider correlation id, when the provider issues one
    """

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None


@dataclass
class ToolCall:
    """A tool or function call made during an agent turn.

    Attributes:
        name: Tool name being called
        arguments: Arguments passed to the tool
        id: Unique tool call identifier
        result: Result from execution (set after execution)
        error: Error message if execution failed
        executed_at: When the tool was executed
    """

    name: str
    arguments: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    result: Optional[Any] = None
    error: Optional[str] = None
    executed_at: Optional[datetime] = None

    @property
    def is_executed(self) -> bool:
        """Check if this tool call has been executed."""
        return self.executed_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "arguments": self.arguments,
            "result": self.result,
            "error": self.error,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
        }


# ============================================
# Normalized Provider Responses
# ============================================


@dataclass(frozen=True)
class Usage:
    """Token accounting for one completion."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(cls, prompt_tokens: Optional[int], completion_tokens: Optional[int]) -> Usage:
        prompt = prompt_tokens or 0
        completion = completion_tokens or 0
        return cls(prompt, completion, prompt + completion)


@dataclass(frozen=True)
class ChoiceMessage:
    """The message part of a completion choice."""

    role: MessageRole = MessageRole.ASSISTANT
    content: str = ""
    function_call: Optional[FunctionCallRequest] = None


@dataclass(frozen=True)
class Choice:
    """One completion alternative."""

    message: ChoiceMessage
    finish_reason: Optional[str] = None
    index: int = 0


@dataclass(frozen=True)
class NormalizedResponse:
    """Provider-independent chat completion result.

    Attributes:
        choices: Completion alternatives (at least one on success)
        usage: Token accounting
        id: Provider response id
        model: Model that produced the response
    """

    choices: tuple[Choice, ...]
    usage: Usage = field(default_factory=Usage)
    id: Optional[str] = None
    model: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.choices, tuple):
            object.__setattr__(self, "choices", tuple(self.choices))

    @classmethod
    def from_text(
        cls,
        text: str,
        finish_reason: Optional[str] = "stop",
        usage: Optional[Usage] = None,
        model: Optional[str] = None,
        id: Optional[str] = None,
    ) -> NormalizedResponse:
        """Build a single-choice assistant text response."""
        return cls(
            choices=(Choice(message=ChoiceMessage(content=text), finish_reason=finish_reason),),
            usage=usage or Usage(),
            model=model,
            id=id,
        )

    @property
    def first(self) -> Optional[Choice]:
        return self.choices[0] if self.choices else None

    @property
    def text(self) -> str:
        """Content of the first choice, or empty string."""
        choice = self.first
        return choice.message.content if choice else ""

    @property
    def function_call(self) -> Optional[FunctionCallRequest]:
        choice = self.first
        return choice.message.function_call if choice else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the `{choices, usage}` wire-neutral mapping."""
        choices = []
        for choice in self.choices:
            message: dict[str, Any] = {
                "role": choice.message.role.value,
                "content": choice.message.content,
            }
            if choice.message.function_call is not None:
                message["function_call"] = {
                    "name": choice.message.function_call.name,
                    "arguments": choice.message.function_call.arguments,
                }
            choices.append(
                {
                    "index": choice.index,
                    "message": message,
                    "finish_reason": choice.finish_reason,
                }
            )
        result: dict[str, Any] = {"choices": choices, "usage": asdict(self.usage)}
        if self.id is not None:
            result["id"] = self.id
        if self.model is not None:
            result["model"] = self.model
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NormalizedResponse:
        """Rebuild from `to_dict` output (used by the response cache)."""
        choices = []
        for raw in data.get("choices", []):
            message = raw.get("message", {})
            call = message.get("function_call")
            choices.append(
                Choice(
                    message=ChoiceMessage(
                        role=MessageRole(message.get("role", "assistant")),
                        content=message.get("content") or "",
                        function_call=(
                            FunctionCallRequest(call["name"], call.get("arguments", {}))
                            if call
                            else None
                        ),
                    ),
                    finish_reason=raw.get("finish_reason"),
                    index=raw.get("index", 0),
                )
            )
        return cls(
            choices=tuple(choices),
            usage=Usage(**data.get("usage", {})),
            id=data.get("id"),
            model=data.get("model"),
        )


@dataclass(frozen=True)
class StreamChunk:
    """One incremental piece of a streamed completion."""

    content: str
    finish_reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "choices": [
                {"delta": {"content": self.content}, "finish_reason": self.finish_reason}
            ]
        }


# ============================================
# Agent Execution Results
# ============================================


class AgentStatus(str, Enum):
    """Lifecycle stage of a single execute() call."""

    INITIALIZING = "initializing"
    PROCESSING = "processing"
    POST_PROCESSING = "post_processing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class AgentProgress:
    """Progress snapshot emitted to progress callbacks.

    Attributes:
        status: Current lifecycle stage
        current_index: 1-based position of the running agent (0 before start)
        total_count: Number of agents in the run
        timestamp: When the snapshot was taken
        metadata: Extra context (agent name, error message, ...)
    """

    status: AgentStatus
    current_index: int = 0
    total_count: int = 1
    timestamp: datetime = field(default_factory=datetime.utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def progress(self) -> float:
        """Fraction of agents finished, 0.0 to 1.0."""
        if self.total_count <= 0:
            return 0.0
        return min(self.current_index / self.total_count, 1.0)


@dataclass(frozen=True)
class AgentResult:
    """Outcome of one agent execution.

    For streaming executions `output` is empty and `stream` yields the text
    chunks; the turn is written to history once the stream is exhausted.
    """

    output: str
    state_variables: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    tool_calls: tuple[ToolCall, ...] = ()
    stream: Optional[AsyncIterator[str]] = None

    @property
    def is_streaming(self) -> bool:
        return self.stream is not None

    async def collect(self) -> str:
        """Drain the stream (if any) and return the full text."""
        if self.stream is None:
            return self.output
        parts = [chunk async for chunk in self.stream]
        return "".join(parts)


@dataclass(frozen=True)
class ChainResult:
    """Outcome of a pipeline run."""

    results: tuple[AgentResult, ...]
    final_output: str
    progress: tuple[AgentProgress, ...] = ()
