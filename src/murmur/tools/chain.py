"""
Tool chains.

A ToolChain runs tools one after another. Every tool receives the chain
arguments it declares; a tool that declares an "input" parameter also
receives the previous tool's output there (the chain's own "input" argument
for the first tool), and one that declares "metadata" receives the chain
metadata. The whole run is bounded by the chain timeout, and the final
output can be checked against an OutputSchema.

Usage:
    chain = ToolChain(
        "lookup_and_summarize",
        "Find a device and summarize it",
        [lookup_tool, summarize_tool],
        output_schema=OutputSchema({"summary": StringField()}),
    )
    result = await chain.execute({"serial": "SN1"})
    print(result.data["summary"])
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

from ..domain.entities import ToolCall
from ..exceptions import (
    InvalidConfigurationError,
    MurmurError,
    ToolExecutionError,
    ValidationError,
)
from ..resilience import with_timeout
from ..schema.fields import SchemaField
from ..schema.output_schema import OutputSchema, extract_json
from .registry import Tool

logger = logging.getLogger(__name__)

DEFAULT_CHAIN_TIMEOUT = 60.0

INPUT_PARAMETER = "input"
METADATA_PARAMETER = "metadata"


@dataclass(frozen=True)
class ToolChainResult:
    """Outcome of a tool chain run.

    Attributes:
        output: Output of the last tool
        calls: One executed ToolCall per tool, in order
        data: Validated output when the chain has an output schema
        duration: Wall-clock seconds for the whole run
    """

    output: Any
    calls: tuple[ToolCall, ...]
    data: Optional[dict[str, Any]] = None
    duration: float = 0.0


class ToolChain:
    """Sequence of tools run as one unit."""

    def __init__(
        self,
        name: str,
        description: str,
        tools: Sequence[Tool],
        output_schema: Optional[OutputSchema] = None,
        timeout: float = DEFAULT_CHAIN_TIMEOUT,
        tags: Sequence[str] = (),
        metadata: Optional[Mapping[str, Any]] = None,
    ):
        """Initialize the chain.

        Args:
            name: Chain name, also used when exported as a tool
            description: Shown to the model when exported as a tool
            tools: Tools in execution order
            output_schema: Validates the last tool's output
            timeout: Seconds allowed for the whole run
            tags: Free-form grouping labels
            metadata: Handed to tools that declare a "metadata" parameter

        Raises:
            InvalidConfigurationError: Empty chain or non-positive timeout
        """
        if not tools:
            raise InvalidConfigurationError("Tool chain must have at least one tool")
        if timeout <= 0:
            raise InvalidConfigurationError("Tool chain timeout must be positive")

        self.name = name
        self.description = description
        self.tools = list(tools)
        self.output_schema = output_schema
        self.timeout = timeout
        self.tags = frozenset(tags)
        self.metadata = dict(metadata or {})

    def __len__(self) -> int:
        return len(self.tools)

    async def execute(self, arguments: Optional[Mapping[str, Any]] = None) -> ToolChainResult:
        """Run every tool in order.

        Raises:
            TimeoutError: The run took longer than the chain timeout
            ValidationError: A tool's arguments or the final output are invalid
            ToolExecutionError: A tool raised outside the error taxonomy
            MurmurError: Any taxonomy error raised by a tool, unchanged
        """
        arguments = dict(arguments or {})
        started = time.monotonic()

        calls, output = await with_timeout(
            self._run(arguments),
            self.timeout,
            f"Tool chain '{self.name}' timed out",
        )

        data = self._validate_output(output) if self.output_schema is not None else None
        duration = time.monotonic() - started
        logger.info(
            f"Tool chain '{self.name}' completed {len(calls)} tools in {duration:.2f}s"
        )
        return ToolChainResult(output=output, calls=tuple(calls), data=data, duration=duration)

    async def _run(self, arguments: dict[str, Any]) -> tuple[list[ToolCall], Any]:
        calls: list[ToolCall] = []
        output: Any = arguments.get(INPUT_PARAMETER, "")
        total = len(self.tools)

        for index, tool in enumerate(self.tools, start=1):
            tool_args = self._prepare_arguments(tool, arguments, output)
            logger.info(f"Tool chain '{self.name}' step {index}/{total}: {tool.name}")

            try:
                validated = tool.validate_arguments(tool_args)
            except ValidationError as e:
                raise ValidationError(
                    f"Tool parameter validation failed for '{tool.name}'",
                    errors=e.errors,
                    details={"chain": self.name, "tool": tool.name, "step": index},
                    cause=e,
                ) from e

            call = ToolCall(name=tool.name, arguments=tool_args)
            step_started = time.monotonic()
            try:
                output = await tool.executor(validated)
            except MurmurError as e:
                logger.error(f"Tool chain '{self.name}' failed at {tool.name}: {e}")
                raise
            except Exception as e:
                logger.exception(f"Tool chain '{self.name}' failed at {tool.name}")
                raise ToolExecutionError(
                    f"Tool chain '{self.name}' failed at step {index} ({tool.name}): {e}",
                    tool_name=tool.name,
                    arguments=tool_args,
                    details={"chain": self.name, "step": index},
                    cause=e,
                ) from e

            call.result = output
            call.executed_at = datetime.utcnow()
            calls.append(call)
            logger.debug(
                f"Tool {tool.name} finished in {time.monotonic() - step_started:.2f}s"
            )

        return calls, output

    def _prepare_arguments(
        self,
        tool: Tool,
        arguments: Mapping[str, Any],
        previous_output: Any,
    ) -> dict[str, Any]:
        if tool.parameters:
            tool_args = {k: v for k, v in arguments.items() if k in tool.parameters}
        elif tool.strict:
            tool_args = {}
        else:
            tool_args = dict(arguments)

        if INPUT_PARAMETER in tool.parameters:
            tool_args[INPUT_PARAMETER] = previous_output
        if METADATA_PARAMETER in tool.parameters:
            tool_args[METADATA_PARAMETER] = dict(self.metadata)
        return tool_args

    def _validate_output(self, output: Any) -> dict[str, Any]:
        try:
            payload = extract_json(output) if isinstance(output, str) else output
        except ValidationError as e:
            raise ValidationError(
                "Chain output validation failed",
                errors=e.errors,
                details={"chain": self.name},
                cause=e,
            ) from e

        result = self.output_schema.validate_and_convert(payload)
        if not result.is_success:
            raise ValidationError(
                "Chain output validation failed",
                errors=list(result.errors),
                details={"chain": self.name},
            )
        return result.value

    # ----------------------------------------
    # Export
    # ----------------------------------------

    def to_tool(self) -> Tool:
        """Wrap the chain as a single Tool for a registry or an agent.

        The tool declares every parameter its tools declare, except the
        ones the chain fills in itself; the first tool's "input" is kept.
        It returns the validated data when there is an output schema.
        """
        parameters: dict[str, SchemaField] = {}
        first = self.tools[0]
        if INPUT_PARAMETER in first.parameters:
            parameters[INPUT_PARAMETER] = first.parameters[INPUT_PARAMETER]
        for tool in self.tools:
            for name, schema_field in tool.parameters.items():
                if name in (INPUT_PARAMETER, METADATA_PARAMETER):
                    continue
                parameters.setdefault(name, schema_field)

        async def run(arguments: dict[str, Any]) -> Any:
            result = await self.execute(arguments)
            return result.data if result.data is not None else result.output

        return Tool(
            name=self.name,
            description=self.description,
            executor=run,
            parameters=parameters,
            tags=self.tags,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "tools": [tool.name for tool in self.tools],
            "timeout": self.timeout,
            "tags": sorted(self.tags),
            "metadata": dict(self.metadata),
        }
        if self.output_schema is not None:
            payload["output_schema"] = self.output_schema.to_json_schema()
        return payload

    def __repr__(self) -> str:
        return f"ToolChain(name: {self.name}, tools: {len(self.tools)})"


__all__ = [
    "DEFAULT_CHAIN_TIMEOUT",
    "ToolChain",
    "ToolChainResult",
]
