"""Structured output validation."""

from .fields import (
    BoolField,
    FloatField,
    IntField,
    ListField,
    MapField,
    SchemaField,
    StringField,
    ValidationResult,
)
from .output_schema import OutputSchema, extract_json

__all__ = [
    "BoolField",
    "FloatField",
    "IntField",
    "ListField",
    "MapField",
    "OutputSchema",
    "SchemaField",
    "StringField",
    "ValidationResult",
    "extract_json",
]
