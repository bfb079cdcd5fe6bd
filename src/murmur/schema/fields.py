"""
Typed field declarations for structured model output.

A SchemaField describes one value (type, required-ness, enum, bounds) and
compiles to a pydantic annotation. Validation and conversion run through
pydantic in lax mode, so numeric strings such as "42" convert to numbers;
booleans are never accepted where a number is expected.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import cached_property
from typing import TYPE_CHECKING, Annotated, Any, Generic, Literal, Optional, TypeVar

from pydantic import BeforeValidator, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

if TYPE_CHECKING:
    from .output_schema import OutputSchema

T = TypeVar("T")

# pydantic error types that mean "right type, value out of bounds"
CONSTRAINT_ERRORS = frozenset(
    {
        "greater_than",
        "greater_than_equal",
        "less_than",
        "less_than_equal",
        "too_short",
        "too_long",
        "string_too_short",
        "string_too_long",
        "string_pattern_mismatch",
        "literal_error",
    }
)


@dataclass(frozen=True)
class ValidationResult(Generic[T]):
    """Outcome of validating one field or a whole object.

    Attributes:
        value: Converted value (None on failure)
        error: All failure messages joined with ", "
        errors: Individual failure messages
    """

    value: Optional[T] = None
    error: Optional[str] = None
    errors: tuple[str, ...] = ()

    @property
    def is_success(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T]) -> ValidationResult[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, *errors: str) -> ValidationResult[T]:
        return cls(error=", ".join(errors), errors=tuple(errors))


def describe_error(error: dict[str, Any], expected: Optional[str] = None) -> str:
    """Turn one pydantic error into a short message for the model."""
    kind = error["type"]
    if kind == "missing":
        return "Missing required field"
    if kind == "extra_forbidden":
        return "Unknown field"
    if kind in CONSTRAINT_ERRORS:
        return "Validation failed"
    if expected:
        return f"Invalid type: expected {expected}"
    return error["msg"]


def format_errors(exc: PydanticValidationError, expected: Optional[str] = None) -> list[str]:
    """Messages for every error of one field, nested ones prefixed by path."""
    messages = []
    for error in exc.errors():
        loc = error["loc"]
        if loc:
            path = ".".join(str(part) for part in loc)
            message = f"[{path}] {describe_error(error)}"
        else:
            message = describe_error(error, expected)
        if message not in messages:
            messages.append(message)
    return messages


def _reject_bool(value: Any) -> Any:
    if isinstance(value, bool):
        raise ValueError("booleans are not numbers")
    return value


@dataclass
class SchemaField(ABC, Generic[T]):
    """Base field.

    Attributes:
        description: Shown to the model when the schema is described
        required: Missing required fields fail validation
        enum_values: Allowed values
        default: Substituted when an optional field is absent
    """

    description: str = ""
    required: bool = True
    enum_values: Optional[list[T]] = None
    default: Optional[T] = None

    @abstractmethod
    def base_type(self) -> Any:
        """The pydantic annotation before enum, bounds and optionality."""

    def constraints(self) -> dict[str, Any]:
        """Keyword arguments for pydantic.Field (bounds, patterns)."""
        return {}

    def annotation(self) -> Any:
        """Full annotation, used both standalone and inside a model."""
        annotation = self.base_type()
        if self.enum_values is not None:
            annotation = Literal[tuple(self.enum_values)]
        constraints = {k: v for k, v in self.constraints().items() if v is not None}
        if constraints:
            annotation = Annotated[annotation, Field(**constraints)]
        if not self.required:
            annotation = Optional[annotation]
        return annotation

    def field_definition(self, alias: str) -> tuple[Any, Any]:
        """(annotation, FieldInfo) pair for pydantic.create_model."""
        info = Field(
            ... if self.required else self.default,
            alias=alias,
            title=alias,
            description=self.description or None,
        )
        return self.annotation(), info

    @cached_property
    def _adapter(self) -> TypeAdapter:
        return TypeAdapter(self.annotation())

    def validate_and_convert(self, value: Any) -> ValidationResult[T]:
        try:
            validated = self._adapter.validate_python(value)
        except PydanticValidationError as e:
            return ValidationResult.failure(*format_errors(e, type(self).__name__))
        return ValidationResult.success(
            self._adapter.dump_python(validated, by_alias=True, exclude_unset=True)
        )

    def to_json_schema(self) -> dict[str, Any]:
        schema = self._adapter.json_schema()
        if self.description:
            schema["description"] = self.description
        return schema


@dataclass
class StringField(SchemaField[str]):
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[str] = None

    def base_type(self) -> Any:
        return str

    def constraints(self) -> dict[str, Any]:
        return {
            "min_length": self.min_length,
            "max_length": self.max_length,
            "pattern": self.pattern,
        }


@dataclass
class IntField(SchemaField[int]):
    """Integer field; numeric strings such as "42" and whole floats are accepted."""

    min_value: Optional[int] = None
    max_value: Optional[int] = None

    def base_type(self) -> Any:
        return Annotated[int, BeforeValidator(_reject_bool)]

    def constraints(self) -> dict[str, Any]:
        return {"ge": self.min_value, "le": self.max_value}


@dataclass
class FloatField(SchemaField[float]):
    min_value: Optional[float] = None
    max_value: Optional[float] = None

    def base_type(self) -> Any:
        return Annotated[float, BeforeValidator(_reject_bool)]

    def constraints(self) -> dict[str, Any]:
        return {"ge": self.min_value, "le": self.max_value}


@dataclass
class BoolField(SchemaField[bool]):
    """Boolean field; strings like "true", "no" or "0" are accepted."""

    def base_type(self) -> Any:
        return bool


@dataclass
class ListField(SchemaField[list]):
    """List field, optionally converting every item through item_field."""

    item_field: Optional[SchemaField] = None
    min_items: Optional[int] = None
    max_items: Optional[int] = None

    def base_type(self) -> Any:
        if self.item_field is None:
            return list[Any]
        return list[self.item_field.annotation()]

    def constraints(self) -> dict[str, Any]:
        return {"min_length": self.min_items, "max_length": self.max_items}


@dataclass
class MapField(SchemaField[dict]):
    """Object field, optionally validated against a nested schema."""

    schema: Optional[OutputSchema] = field(default=None)

    def base_type(self) -> Any:
        if self.schema is None:
            return dict[str, Any]
        return self.schema.model


__all__ = [
    "BoolField",
    "CONSTRAINT_ERRORS",
    "FloatField",
    "IntField",
    "ListField",
    "MapField",
    "SchemaField",
    "StringField",
    "ValidationResult",
    "describe_error",
    "format_errors",
]
