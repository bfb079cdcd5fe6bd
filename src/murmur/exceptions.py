"""Exception hierarchy for murmur.

Every error raised by the library inherits from MurmurError, so callers can
catch the whole family with a single except clause while still branching on
the specific kind when they need to.

Design Principles:
    - Exceptions preserve context (original error, timestamp, details)
    - Exceptions are categorized by recoverability
    - Errors a user can act on carry human-readable recovery steps

Exception Hierarchy:
    MurmurError (base)
    ├── InvalidConfigurationError (setup-time, never retried)
    ├── ValidationError (aggregated input/output shape errors)
    │   ├── InvalidInputError
    │   └── FunctionCallFormatError
    ├── AuthenticationError (credentials rejected, never retried)
    ├── ProviderError (provider returned an unexpected failure)
    │   └── RateLimitError (retryable via backoff)
    ├── NetworkError (retryable)
    │   ├── TimeoutError
    │   └── ServerError (HTTP 5xx)
    ├── ResourceExhaustedError (payload over budget)
    │   ├── TokenLimitExceededError
    │   └── WorkflowStepLimitError
    ├── StateError (used after dispose, illegal state access)
    │   ├── TypeMismatchError
    │   └── StateSynchronizationError
    ├── UnknownFunctionError
    ├── ToolExecutionError
    ├── AgentExecutionError
    ├── ChainExecutionError
    ├── CoordinationError
    ├── WorkflowError
    └── CacheError
"""
from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Optional

# ============================================
# Base Exception
# ============================================


class MurmurError(Exception):
    """Base exception for all murmur errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "RATE_LIMIT_EXCEEDED")
        details: Structured diagnostics for the failure
        timestamp: When the error occurred
        cause: The original exception that caused this error
        recoverable: Whether retrying might succeed
        recovery_steps: Suggestions the caller can act on
    """

    default_recovery_steps: tuple[str, ...] = ()

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
        recoverable: bool = False,
        recovery_steps: Optional[list[str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__.upper()
        self.details = details or {}
        self.timestamp = datetime.utcnow()
        self.cause = cause
        self.recoverable = recoverable
        self.recovery_steps = (
            list(recovery_steps)
            if recovery_steps is not None
            else list(self.default_recovery_steps)
        )

        if cause:
            self.__cause__ = cause

    def __str__(self) -> str:
        parts = [f"[{self.code}]", self.message]
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            parts.append(f"({detail_str})")
        return " ".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"details={self.details!r}, "
            f"recoverable={self.recoverable})"
        )

    def with_recovery_steps(self, steps: list[str]) -> "MurmurError":
        """Attach recovery steps and return self for chaining."""
        self.recovery_steps = list(steps)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "recoverable": self.recoverable,
            "recovery_steps": self.recovery_steps,
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================
# Configuration Errors (Unrecoverable)
# ============================================


class InvalidConfigurationError(MurmurError):
    """Raised when configuration is missing or invalid.

    These errors require fixing configuration before retry.
    """

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list[str]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if missing_keys:
            details["missing_keys"] = missing_keys
        kwargs.setdefault("code", "INVALID_CONFIGURATION")
        super().__init__(
            message,
            details=details,
            recoverable=False,
            **kwargs,
        )


# ============================================
# Validation Errors
# ============================================


class ValidationError(MurmurError):
    """Raised when input or output violates an expected shape.

    Attributes:
        errors: Every individual problem found, in discovery order
        field: The offending field, when there is exactly one
    """

    def __init__(
        self,
        message: str,
        errors: Optional[list[str]] = None,
        field: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if errors:
            details["errors"] = list(errors)
        kwargs.setdefault("code", "VALIDATION_ERROR")
        super().__init__(
            message,
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.errors = list(errors) if errors else [message]
        self.field = field


class InvalidInputError(ValidationError):
    """Raised when agent input is empty or too long."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("code", "INVALID_INPUT")
        super().__init__(message, **kwargs)


class FunctionCallErrorKind(str, enum.Enum):
    """Ways a textual function call can be malformed."""

    MISSING_PREFIX = "missing_prefix"
    MISSING_NAME = "missing_name"
    MISSING_OPEN_PAREN = "missing_open_paren"
    MISSING_CLOSE_PAREN = "missing_close_paren"
    MISSING_KEY = "missing_key"
    MISSING_COLON = "missing_colon"
    MISSING_VALUE = "missing_value"
    UNTERMINATED_STRING = "unterminated_string"
    DUPLICATE_KEY = "duplicate_key"
    UNEXPECTED_TOKEN = "unexpected_token"


class FunctionCallFormatError(ValidationError):
    """Raised when a `function: name(key: value, ...)` call is malformed.

    Attributes:
        kind: Which grammar rule was violated
        position: Character offset in the parsed text
    """

    def __init__(
        self,
        message: str,
        kind: FunctionCallErrorKind,
        position: int = 0,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["kind"] = kind.value
        details["position"] = position
        super().__init__(
            message,
            code="INVALID_FUNCTION_CALL_FORMAT",
            details=details,
            **kwargs,
        )
        self.kind = kind
        self.position = position


# ============================================
# Authentication Errors
# ============================================


class AuthenticationError(MurmurError):
    """Raised when a provider rejects credentials (HTTP 401/403)."""

    default_recovery_steps = (
        "Verify your API key is correct",
        "Check if your API key has expired",
        "Ensure the key has permission to use the requested model",
    )

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        provider: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if status_code:
            details["status_code"] = status_code
        if provider:
            details["provider"] = provider
        kwargs.setdefault("code", "AUTHENTICATION_ERROR")
        super().__init__(
            message,
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.status_code = status_code


# ============================================
# Provider Errors
# ============================================


class ProviderError(MurmurError):
    """Raised when a provider call fails for a reason we do not classify.

    Attributes:
        status_code: HTTP status code (0 when not an HTTP failure)
        provider: Provider name
        response_body: Raw response body (truncated in details)
    """

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        provider: Optional[str] = None,
        response_body: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if status_code:
            details["status_code"] = status_code
        if provider:
            details["provider"] = provider
        if response_body:
            details["response_body"] = (
                response_body[:500] if len(response_body) > 500 else response_body
            )
        kwargs.setdefault("code", f"PROVIDER_ERROR_{status_code}" if status_code else "PROVIDER_ERROR")
        kwargs.setdefault("recoverable", False)
        super().__init__(message, details=details, **kwargs)
        self.status_code = status_code
        self.provider = provider
        self.response_body = response_body


class RateLimitError(ProviderError):
    """Raised when a provider rate limit is exceeded (HTTP 429).

    Attributes:
        retry_after: Seconds to wait before retrying, if the server said so
    """

    default_recovery_steps = (
        "Wait for a few minutes before retrying",
        "Check your API quota and limits",
        "Consider upgrading your plan if limits are too restrictive",
    )

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[float] = None,
        **kwargs,
    ):
        kwargs.setdefault("status_code", 429)
        details = kwargs.pop("details", {})
        if retry_after:
            details["retry_after_seconds"] = retry_after
        super().__init__(
            message,
            code="RATE_LIMIT_EXCEEDED",
            details=details,
            recoverable=True,
            **kwargs,
        )
        self.retry_after = retry_after


# ============================================
# Network Errors (Recoverable)
# ============================================


class NetworkError(MurmurError):
    """Base class for transient transport failures.

    These errors are retried up to the configured budget.
    """

    default_recovery_steps = (
        "Check your internet connection",
        "Verify the API endpoint is accessible",
        "Try again after a few moments",
    )

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("recoverable", True)
        kwargs.setdefault("code", "NETWORK_ERROR")
        super().__init__(message, **kwargs)


class TimeoutError(NetworkError):
    """Raised when a provider call or a workflow exceeds its time budget."""

    def __init__(
        self,
        message: str = "Request timed out",
        timeout_seconds: Optional[float] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if timeout_seconds:
            details["timeout_seconds"] = timeout_seconds
        super().__init__(
            message,
            code="TIMEOUT",
            details=details,
            **kwargs,
        )
        self.timeout_seconds = timeout_seconds


class ServerError(NetworkError):
    """Raised when a provider returns a 5xx response."""

    def __init__(
        self,
        message: str = "Server error",
        status_code: int = 500,
        response_body: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["status_code"] = status_code
        if response_body:
            details["response_body"] = response_body[:500]
        super().__init__(
            message,
            code="SERVER_ERROR",
            details=details,
            **kwargs,
        )
        self.status_code = status_code
        self.response_body = response_body


# ============================================
# Resource Errors
# ============================================


class ResourceExhaustedError(MurmurError):
    """Raised when a payload exceeds a configured budget.

    Fatal for the operation; the caller must reduce the payload.
    """

    def __init__(
        self,
        message: str,
        limit: Optional[int] = None,
        actual: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if limit is not None:
            details["limit"] = limit
        if actual is not None:
            details["actual"] = actual
        kwargs.setdefault("code", "RESOURCE_EXHAUSTED")
        super().__init__(message, details=details, recoverable=False, **kwargs)
        self.limit = limit
        self.actual = actual


class TokenLimitExceededError(ResourceExhaustedError):
    """Raised when input exceeds the token budget."""

    default_recovery_steps = (
        "Reduce the size of your input",
        "Split your request into smaller chunks",
        "Consider using a model with higher token limits",
    )

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("code", "TOKEN_LIMIT_EXCEEDED")
        super().__init__(message, **kwargs)


class WorkflowStepLimitError(ResourceExhaustedError):
    """Raised when a recipe runs more steps than allowed."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("code", "WORKFLOW_STEP_LIMIT")
        super().__init__(message, **kwargs)


# ============================================
# State Errors
# ============================================


class StateError(MurmurError):
    """Raised on use-after-dispose or illegal state access."""

    default_recovery_steps = (
        "Reinitialize the state",
        "Check for concurrent modifications",
        "Verify state consistency",
    )

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("code", "STATE_ERROR")
        super().__init__(message, **kwargs)


class TypeMismatchError(StateError):
    """Raised when a stored value has a different type than requested."""

    def __init__(
        self,
        key: str,
        expected: type,
        actual: type,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details.update(
            {"key": key, "expected": expected.__name__, "actual": actual.__name__}
        )
        super().__init__(
            f"Type mismatch for '{key}': expected {expected.__name__} "
            f"but got {actual.__name__}",
            code="TYPE_MISMATCH",
            details=details,
            **kwargs,
        )
        self.key = key
        self.expected = expected
        self.actual = actual


class StateSynchronizationError(StateError):
    """Raised when a state key cannot be synchronized with its remote copy."""

    def __init__(self, message: str, key: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if key is not None:
            details["key"] = key
        kwargs.setdefault("code", "STATE_SYNC_FAILED")
        kwargs.setdefault("recoverable", True)
        super().__init__(message, details=details, **kwargs)
        self.key = key


# ============================================
# Dispatch Errors
# ============================================


class UnknownFunctionError(MurmurError):
    """Raised when the model calls a function no handler is registered for."""

    def __init__(
        self,
        name: str,
        available: Optional[list[str]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["function"] = name
        details["available_functions"] = sorted(available or [])
        super().__init__(
            f"Unknown function: {name}",
            code="UNKNOWN_FUNCTION",
            details=details,
            **kwargs,
        )
        self.name = name


class ToolExecutionError(MurmurError):
    """Raised when a registered tool or function handler fails."""

    def __init__(
        self,
        message: str,
        tool_name: Optional[str] = None,
        arguments: Optional[dict[str, Any]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if tool_name:
            details["tool"] = tool_name
        if arguments is not None:
            details["arguments"] = arguments
        kwargs.setdefault("code", "TOOL_EXECUTION_FAILED")
        super().__init__(message, details=details, **kwargs)
        self.tool_name = tool_name


# ============================================
# Execution Errors
# ============================================


class AgentExecutionError(MurmurError):
    """Raised when an agent fails for a reason outside the taxonomy."""

    def __init__(self, message: str = "Failed to execute agent", **kwargs):
        kwargs.setdefault("code", "AGENT_EXECUTION_FAILED")
        super().__init__(message, **kwargs)


class ChainExecutionError(MurmurError):
    """Raised when a pipeline step fails; the rest of the chain is skipped.

    Attributes:
        step_index: 1-based index of the failing agent
        agent_name: Name of the failing agent
        progress: Progress events emitted up to and including the failure
        results: Results of the steps that completed
    """

    def __init__(
        self,
        message: str,
        step_index: int,
        agent_name: Optional[str] = None,
        progress: Optional[list] = None,
        results: Optional[list] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["step_index"] = step_index
        if agent_name:
            details["agent"] = agent_name
        kwargs.setdefault("code", "CHAIN_EXECUTION_FAILED")
        super().__init__(message, details=details, **kwargs)
        self.step_index = step_index
        self.agent_name = agent_name
        self.progress = list(progress or [])
        self.results = list(results or [])


class WorkflowError(MurmurError):
    """Raised when a recipe is malformed or a recipe step fails."""

    def __init__(self, message: str, step: Optional[dict[str, Any]] = None, **kwargs):
        details = kwargs.pop("details", {})
        if step is not None:
            details["step"] = step.get("name") or step.get("type", "agent")
        kwargs.setdefault("code", "WORKFLOW_ERROR")
        super().__init__(message, details=details, **kwargs)


class CoordinationError(MurmurError):
    """Raised when a multi-agent coordination pattern cannot proceed."""

    def __init__(self, message: str, pattern: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if pattern:
            details["pattern"] = pattern
        kwargs.setdefault("code", "COORDINATION_ERROR")
        super().__init__(message, details=details, **kwargs)
        self.pattern = pattern


class CacheError(MurmurError):
    """Raised when the cache cannot be initialized or written."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("code", "CACHE_ERROR")
        super().__init__(message, **kwargs)


# ============================================
# Error Aggregation
# ============================================


class ErrorCollector:
    """Collect multiple error messages and raise them together.

    Used where every problem should be reported in one round trip instead
    of failing on the first one.

    Example:
        collector = ErrorCollector()
        for name, field in fields.items():
            if name not in data:
                collector.add(f"Missing required field: {name}")

        if collector.has_errors():
            raise collector.to_exception("Output validation failed")
    """

    def __init__(self, max_errors: int = 100):
        self.errors: list[str] = []
        self.max_errors = max_errors

    def add(self, error: str) -> None:
        """Add an error message."""
        if len(self.errors) < self.max_errors:
            self.errors.append(error)

    def has_errors(self) -> bool:
        """Check if any errors were collected."""
        return len(self.errors) > 0

    def count(self) -> int:
        """Get number of errors collected."""
        return len(self.errors)

    def joined(self, separator: str = ", ") -> str:
        """All messages joined into one line."""
        return separator.join(self.errors)

    def to_exception(self, message: Optional[str] = None) -> ValidationError:
        """Convert collected errors to a single ValidationError."""
        if not self.errors:
            raise ValueError("No errors to convert")

        return ValidationError(
            message or self.joined(),
            errors=list(self.errors),
        )

    def clear(self) -> None:
        """Clear all collected errors."""
        self.errors.clear()


# ============================================
# Exports
# ============================================

__all__ = [
    # Base
    "MurmurError",
    # Configuration
    "InvalidConfigurationError",
    # Validation
    "ValidationError",
    "InvalidInputError",
    "FunctionCallErrorKind",
    "FunctionCallFormatError",
    # Authentication
    "AuthenticationError",
    # Provider
    "ProviderError",
    "RateLimitError",
    # Network
    "NetworkError",
    "TimeoutError",
    "ServerError",
    # Resources
    "ResourceExhaustedError",
    "TokenLimitExceededError",
    "WorkflowStepLimitError",
    # State
    "StateError",
    "TypeMismatchError",
    "StateSynchronizationError",
    # Dispatch
    "UnknownFunctionError",
    "ToolExecutionError",
    # Execution
    "AgentExecutionError",
    "ChainExecutionError",
    "WorkflowError",
    "CoordinationError",
    "CacheError",
    # Utilities
    "ErrorCollector",
]
