"""
Textual function-call parser.

Providers without native function calling are asked to answer with a line
of the form

    function: name(key: value, other: "quoted, text")

This module turns such a line into a FunctionCallRequest, the same value
native tool calls produce, so the agent dispatches both the same way.

Grammar:
    call   := "function:" name "(" [arg ("," arg)*] ")"
    arg    := key ":" value
    name   := word characters
    key    := word characters
    value  := quoted string | raw text up to the next "," or ")"

Raw values are coerced: true/false to bool, integers to int, decimals to
float, null to None; anything else stays a string. Quoted values are always
strings. The parser is strict: malformed input raises FunctionCallFormatError
naming the violated rule and its character position.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

from ..domain.entities import FunctionCallRequest
from ..exceptions import FunctionCallErrorKind, FunctionCallFormatError

logger = logging.getLogger(__name__)

PREFIX = "function:"

_INT = re.compile(r"[-+]?\d+")
_FLOAT = re.compile(r"[-+]?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][-+]?\d+)?")
_ESCAPES = {"n": "\n", "t": "\t", "\\": "\\", '"': '"', "'": "'"}


def find_function_call(text: str) -> Optional[int]:
    """Offset of the call prefix in text, or None when there is no call."""
    index = text.find(PREFIX)
    return index if index >= 0 else None


def contains_function_call(text: str) -> bool:
    return find_function_call(text) is not None


def coerce_value(raw: str) -> Any:
    """Coerce an unquoted argument value."""
    if raw == "true":
        return True
    if raw == "false":
        return False
    if raw == "null":
        return None
    if _INT.fullmatch(raw):
        return int(raw)
    if _FLOAT.fullmatch(raw):
        return float(raw)
    return raw


class _Parser:
    """Recursive-descent parser over one call."""

    def __init__(self, text: str, start: int):
        self.text = text
        self.pos = start

    def fail(self, kind: FunctionCallErrorKind, message: str) -> FunctionCallFormatError:
        return FunctionCallFormatError(
            f"Invalid function call format: {message} at position {self.pos}",
            kind=kind,
            position=self.pos,
        )

    def at_end(self) -> bool:
        return self.pos >= len(self.text)

    def peek(self) -> str:
        return "" if self.at_end() else self.text[self.pos]

    def skip_spaces(self) -> None:
        while not self.at_end() and self.text[self.pos] in " \t\r\n":
            self.pos += 1

    def word(self) -> str:
        start = self.pos
        while not self.at_end() and (self.text[self.pos].isalnum() or self.text[self.pos] == "_"):
            self.pos += 1
        return self.text[start:self.pos]

    # ----------------------------------------
    # Grammar rules
    # ----------------------------------------

    def call(self) -> FunctionCallRequest:
        self.pos += len(PREFIX)
        self.skip_spaces()

        name = self.word()
        if not name:
            raise self.fail(FunctionCallErrorKind.MISSING_NAME, "expected a function name")

        self.skip_spaces()
        if self.peek() != "(":
            raise self.fail(FunctionCallErrorKind.MISSING_OPEN_PAREN, f"expected '(' after '{name}'")
        self.pos += 1

        arguments = self.arguments()
        return FunctionCallRequest(name=name, arguments=arguments)

    def arguments(self) -> dict[str, Any]:
        arguments: dict[str, Any] = {}

        self.skip_spaces()
        if self.peek() == ")":
            self.pos += 1
            return arguments

        while True:
            self.skip_spaces()
            if self.at_end():
                raise self.fail(FunctionCallErrorKind.MISSING_CLOSE_PAREN, "expected ')'")

            key_pos = self.pos
            key = self.word()
            if not key:
                raise self.fail(FunctionCallErrorKind.MISSING_KEY, "expected an argument name")
            if key in arguments:
                self.pos = key_pos
                raise self.fail(FunctionCallErrorKind.DUPLICATE_KEY, f"argument '{key}' given twice")

            self.skip_spaces()
            if self.peek() != ":":
                raise self.fail(FunctionCallErrorKind.MISSING_COLON, f"expected ':' after '{key}'")
            self.pos += 1
            self.skip_spaces()

            arguments[key] = self.value()

            self.skip_spaces()
            token = self.peek()
            if token == ",":
                self.pos += 1
                continue
            if token == ")":
                self.pos += 1
                return arguments
            if not token:
                raise self.fail(FunctionCallErrorKind.MISSING_CLOSE_PAREN, "expected ')'")
            raise self.fail(FunctionCallErrorKind.UNEXPECTED_TOKEN, f"unexpected {token!r}")

    def value(self) -> Any:
        if self.peek() in ('"', "'"):
            return self.quoted()

        start = self.pos
        while not self.at_end() and self.text[self.pos] not in ",)":
            self.pos += 1
        raw = self.text[start:self.pos].strip()
        if not raw:
            self.pos = start
            raise self.fail(FunctionCallErrorKind.MISSING_VALUE, "expected a value")
        return coerce_value(raw)

    def quoted(self) -> str:
        quote = self.text[self.pos]
        start = self.pos
        self.pos += 1
        chars = []
        while not self.at_end():
            char = self.text[self.pos]
            if char == "\\" and self.pos + 1 < len(self.text):
                escaped = self.text[self.pos + 1]
                chars.append(_ESCAPES.get(escaped, escaped))
                self.pos += 2
                continue
            if char == quote:
                self.pos += 1
                return "".join(chars)
            chars.append(char)
            self.pos += 1
        self.pos = start
        raise self.fail(FunctionCallErrorKind.UNTERMINATED_STRING, "unterminated string")


def parse_function_call(text: str) -> FunctionCallRequest:
    """Parse the first `function: name(...)` call found in text.

    Text before the prefix and after the closing parenthesis is ignored.

    Raises:
        FunctionCallFormatError: If there is no call or it is malformed
    """
    start = find_function_call(text)
    if start is None:
        raise FunctionCallFormatError(
            "Invalid function call format: no 'function:' prefix found",
            kind=FunctionCallErrorKind.MISSING_PREFIX,
            position=0,
        )
    call = _Parser(text, start).call()
    logger.debug(f"Parsed text function call: {call.name}({', '.join(call.arguments)})")
    return call


__all__ = [
    "PREFIX",
    "coerce_value",
    "contains_function_call",
    "find_function_call",
    "parse_function_call",
]
