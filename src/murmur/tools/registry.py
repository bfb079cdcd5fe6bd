"""
Tool Registry.

Holds the tools and plain function handlers an agent can dispatch model
function calls to. Native function calling (tool_calls / tool_use blocks)
and the textual `function: name(...)` convention both end up here, so
dispatch behaves the same for every provider.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from ..domain.entities import FunctionDefinition, ToolCall
from ..exceptions import MurmurError, ToolExecutionError, UnknownFunctionError, ValidationError
from ..schema.fields import SchemaField
from ..schema.output_schema import OutputSchema

logger = logging.getLogger(__name__)

ToolExecutor = Callable[[dict[str, Any]], Awaitable[Any]]
FunctionHandler = Callable[..., Union[Any, Awaitable[Any]]]


@dataclass
class Tool:
    """A capability the model can invoke.

    Attributes:
        name: Unique name within a registry
        description: Shown to the model
        executor: Async callable receiving the validated argument map
        parameters: Argument name to SchemaField
        tags: Free-form grouping labels
        strict: Reject arguments not declared in parameters
    """

    name: str
    description: str
    executor: ToolExecutor
    parameters: dict[str, SchemaField] = field(default_factory=dict)
    tags: frozenset[str] = frozenset()
    strict: bool = True

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValidationError("Tool name must not be empty", field="name")
        self.tags = frozenset(self.tags)
        self._schema = (
            OutputSchema(self.parameters, strict=self.strict, name=f"{self.name}_arguments")
            if self.parameters
            else None
        )

    def validate_arguments(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Validate and convert arguments against the parameter fields.

        Raises:
            ValidationError: Listing every invalid argument
        """
        if self._schema is None:
            if self.strict and arguments:
                unknown = ", ".join(f"Unknown field: {key}" for key in arguments)
                raise ValidationError(unknown, errors=unknown.split(", "))
            return dict(arguments)
        return self._schema.validate_or_raise(arguments)

    def to_function_definition(self) -> FunctionDefinition:
        if self._schema is None:
            parameters = {"type": "object", "properties": {}}
        else:
            parameters = self._schema.to_json_schema()
        return FunctionDefinition(
            name=self.name,
            description=self.description,
            parameters=parameters,
        )


class ToolRegistry:
    """Registry of tools and function handlers.

    Usage:
        registry = ToolRegistry()
        registry.register(Tool("lookup", "Find a device", lookup, {...}))
        registry.register_function("add", lambda x, y: x + y)

        # Export definitions for native function calling
        definitions = registry.get_function_definitions()

        # Dispatch a model call
        call = await registry.execute("add", {"x": 1, "y": 2})
    """

    def __init__(self):
        self._tools: dict[str, Tool] = {}
        self._functions: dict[str, FunctionHandler] = {}

    # ----------------------------------------
    # Registration
    # ----------------------------------------

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Raises:
            ValidationError: If the name is already taken
        """
        self._ensure_free(tool.name)
        self._tools[tool.name] = tool
        logger.info(f"Registered tool: {tool.name}")

    def register_function(self, name: str, handler: FunctionHandler) -> None:
        """Register a plain handler called with the arguments as keywords.

        Handlers may be sync or async.
        """
        if not name or not name.strip():
            raise ValidationError("Function name must not be empty", field="name")
        self._ensure_free(name)
        self._functions[name] = handler
        logger.info(f"Registered function: {name}")

    def unregister(self, name: str) -> bool:
        """Remove a tool or function. Returns True if something was removed."""
        removed = self._tools.pop(name, None) or self._functions.pop(name, None)
        if removed is not None:
            logger.info(f"Unregistered: {name}")
        return removed is not None

    def _ensure_free(self, name: str) -> None:
        if name in self._tools or name in self._functions:
            raise ValidationError(f"Duplicate tool or function name: {name}", field=name)

    # ----------------------------------------
    # Lookup
    # ----------------------------------------

    def __contains__(self, name: str) -> bool:
        return name in self._tools or name in self._functions

    def __len__(self) -> int:
        return len(self._tools) + len(self._functions)

    @property
    def names(self) -> list[str]:
        return [*self._tools, *self._functions]

    def get_tool(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def get_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def get_by_tag(self, tag: str) -> list[Tool]:
        """Get tools carrying a tag."""
        return [tool for tool in self._tools.values() if tag in tool.tags]

    def get_function_definitions(self) -> list[FunctionDefinition]:
        """Definitions for every tool, for native function calling.

        Plain function handlers have no declared parameters, so they are
        exported with an open object schema.
        """
        definitions = [tool.to_function_definition() for tool in self._tools.values()]
        for name in self._functions:
            definitions.append(
                FunctionDefinition(
                    name=name,
                    description=f"Call the {name} function",
                    parameters={"type": "object", "properties": {}, "additionalProperties": True},
                )
            )
        return definitions

    # ----------------------------------------
    # Execution
    # ----------------------------------------

    async def execute(self, name: str, arguments: Optional[dict[str, Any]] = None) -> ToolCall:
        """Dispatch a call to the matching tool or function.

        Returns:
            ToolCall with result and executed_at populated

        Raises:
            UnknownFunctionError: No tool or function has this name
            ValidationError: Tool arguments fail validation
            ToolExecutionError: The handler raised
        """
        arguments = dict(arguments or {})
        tool = self._tools.get(name)
        handler = self._functions.get(name)

        if tool is None and handler is None:
            raise UnknownFunctionError(name, available=self.names)

        call = ToolCall(name=name, arguments=arguments)
        logger.debug(f"Executing tool: {name}")

        try:
            if tool is not None:
                validated = tool.validate_arguments(arguments)
                result = await tool.executor(validated)
            else:
                result = handler(**arguments)
                if inspect.isawaitable(result):
                    result = await result
        except MurmurError:
            raise
        except Exception as e:
            logger.exception(f"Tool {name} failed")
            raise ToolExecutionError(
                f"Tool '{name}' failed: {e}",
                tool_name=name,
                arguments=arguments,
                cause=e,
            ) from e

        call.result = result
        call.executed_at = datetime.utcnow()
        return call


__all__ = [
    "FunctionHandler",
    "Tool",
    "ToolExecutor",
    "ToolRegistry",
]
