"""Tools and function dispatch."""

from .chain import ToolChain, ToolChainResult
from .function_call import contains_function_call, find_function_call, parse_function_call
from .registry import Tool, ToolRegistry

__all__ = [
    "Tool",
    "ToolChain",
    "ToolChainResult",
    "ToolRegistry",
    "contains_function_call",
    "find_function_call",
    "parse_function_call",
]
