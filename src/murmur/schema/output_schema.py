"""
Output schema validation for structured agent responses.

Each OutputSchema compiles its fields into a pydantic model and validates a
decoded JSON object in two passes:

1. Structure: every missing required field and (in strict mode) every
   unknown key is collected; if any were found the call fails with all of
   them at once, without converting anything.
2. Values: one model_validate call type-checks, converts and validates
   every present field; each per-field failure is reported together.

Either every field converts or the whole call fails; there is no partial
result.
"""

from __future__ import annotations

import json
import logging
import re
from functools import cached_property
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, create_model
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import ErrorCollector, InvalidConfigurationError, ValidationError
from .fields import SchemaField, ValidationResult, describe_error

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"```(?:[A-Za-z0-9_-]+)?\s*\n?(.*?)```", re.DOTALL)


def extract_json(text: str) -> Any:
    """Decode JSON from model output.

    Accepts bare JSON, JSON wrapped in a fenced code block (with or without
    a language tag), or JSON surrounded by prose, in which case the outermost
    object or array is used.

    Raises:
        ValidationError: If no JSON document can be decoded
    """
    candidate = text.strip()

    fenced = _FENCE_PATTERN.search(candidate)
    if fenced:
        candidate = fenced.group(1).strip()

    try:
        return json.loads(candidate)
    except json.JSONDecodeError as first_error:
        for opener, closer in (("{", "}"), ("[", "]")):
            start = candidate.find(opener)
            end = candidate.rfind(closer)
            if start != -1 and end > start:
                try:
                    return json.loads(candidate[start:end + 1])
                except json.JSONDecodeError:
                    continue
        raise ValidationError(
            f"Response is not valid JSON: {first_error.msg}",
            errors=[f"Invalid JSON: {first_error.msg} at position {first_error.pos}"],
            cause=first_error,
        ) from first_error


class OutputSchema:
    """Named, typed field set for structured output.

    Attributes:
        fields: Field name to SchemaField
        strict: Reject top-level keys not declared in fields
        name: Title of the generated pydantic model and JSON schema
    """

    def __init__(
        self,
        fields: Mapping[str, SchemaField],
        strict: bool = True,
        name: str = "Output",
    ):
        if not fields:
            raise InvalidConfigurationError("OutputSchema requires at least one field")
        self.fields = dict(fields)
        self.strict = strict
        self.name = name

    @cached_property
    def model(self) -> type[BaseModel]:
        """pydantic model with one aliased attribute per field.

        Attributes are positional (f0, f1, ...) and carry the declared name
        as alias, so field names never collide with BaseModel members.
        """
        definitions = {
            f"f{index}": schema_field.field_definition(alias=field_name)
            for index, (field_name, schema_field) in enumerate(self.fields.items())
        }
        return create_model(
            self.name,
            __config__=ConfigDict(extra="forbid" if self.strict else "ignore"),
            **definitions,
        )

    def validate_and_convert(self, data: Any) -> ValidationResult[dict[str, Any]]:
        """Validate a decoded JSON object; never raises."""
        if not isinstance(data, dict):
            return ValidationResult.failure(
                f"Expected a JSON object, got {type(data).__name__}"
            )

        collector = ErrorCollector()

        # Pass 1: structure
        for name, schema_field in self.fields.items():
            if schema_field.required and name not in data:
                collector.add(f"Missing required field: {name}")

        if self.strict:
            for key in data:
                if key not in self.fields:
                    collector.add(f"Unknown field: {key}")

        if collector.has_errors():
            return ValidationResult.failure(*collector.errors)

        # Pass 2: values
        try:
            instance = self.model.model_validate(data)
        except PydanticValidationError as e:
            for message in self._field_errors(e):
                collector.add(message)
            return ValidationResult.failure(*collector.errors)

        converted = instance.model_dump(by_alias=True, exclude_unset=True)
        for name, schema_field in self.fields.items():
            if name not in converted and schema_field.default is not None:
                converted[name] = schema_field.default

        return ValidationResult.success(converted)

    def _field_errors(self, exc: PydanticValidationError) -> list[str]:
        messages: list[str] = []
        for error in exc.errors():
            name, *path = error["loc"]
            schema_field = self.fields.get(name)
            if path:
                nested = ".".join(str(part) for part in path)
                message = f"{name}: [{nested}] {describe_error(error)}"
            else:
                expected = type(schema_field).__name__ if schema_field else None
                message = f"{name}: {describe_error(error, expected)}"
            if message not in messages:
                messages.append(message)
        return messages

    def validate_or_raise(self, data: Any) -> dict[str, Any]:
        """Like validate_and_convert but raising on failure.

        Raises:
            ValidationError: With every collected message in `errors`
        """
        result = self.validate_and_convert(data)
        if not result.is_success:
            logger.debug(f"Output validation failed: {result.error}")
            raise ValidationError(result.error, errors=list(result.errors))
        return result.value

    def validate_field(self, name: str, value: Any) -> ValidationResult:
        """Validate a single named field."""
        schema_field = self.fields.get(name)
        if schema_field is None:
            return ValidationResult.failure(f"Unknown field: {name}")
        return schema_field.validate_and_convert(value)

    def parse(self, text: str) -> dict[str, Any]:
        """Decode model output text and validate it."""
        return self.validate_or_raise(extract_json(text))

    def to_json_schema(self) -> dict[str, Any]:
        schema = self.model.model_json_schema()
        schema.setdefault("required", [])
        schema.setdefault("additionalProperties", not self.strict)
        return schema

    def describe(self) -> str:
        """Instructions appended to the system prompt."""
        return (
            "Respond only with a JSON object matching this JSON schema:\n"
            f"{json.dumps(self.to_json_schema(), indent=2)}"
        )

    def __repr__(self) -> str:
        return f"OutputSchema({self.name}, fields: {', '.join(self.fields)})"
