"""Tests for typed output schemas.

Tests cover:
    - Per-field type checks, conversion and constraints
    - Aggregated structural errors (missing and unknown fields)
    - Aggregated value errors
    - JSON extraction from fenced or prose-wrapped model output
    - JSON schema rendering
"""
import pytest
from pydantic import BaseModel

from murmur.exceptions import InvalidConfigurationError, ValidationError
from murmur.schema import (
    BoolField,
    FloatField,
    IntField,
    ListField,
    MapField,
    OutputSchema,
    StringField,
)
from murmur.schema.output_schema import extract_json


# ============================================
# Field Tests
# ============================================

class TestFields:
    """Test individual field validators."""

    def test_int_accepts_numeric_string(self):
        result = IntField().validate_and_convert("42")
        assert result.is_success
        assert result.value == 42

    def test_int_rejects_bool_and_fraction(self):
        assert not IntField().validate_and_convert(True).is_success
        assert not IntField().validate_and_convert(2.5).is_success
        assert IntField().validate_and_convert(2.0).value == 2

    def test_int_range(self):
        field = IntField(min_value=0, max_value=10)
        assert field.validate_and_convert(5).is_success
        assert field.validate_and_convert(11).error == "Validation failed"

    def test_float_from_string(self):
        assert FloatField().validate_and_convert("0.25").value == 0.25

    def test_bool_strings(self):
        assert BoolField().validate_and_convert("TRUE").value is True
        assert BoolField().validate_and_convert("false").value is False
        assert BoolField().validate_and_convert("no").value is False
        assert not BoolField().validate_and_convert("maybe").is_success

    def test_string_constraints(self):
        field = StringField(min_length=2, max_length=4, pattern=r"^[a-z]+$")
        assert field.validate_and_convert("abc").is_success
        assert not field.validate_and_convert("a").is_success
        assert not field.validate_and_convert("ABC").is_success
        assert field.validate_and_convert(3).error == "Invalid type: expected StringField"

    def test_enum(self):
        field = StringField(enum_values=["low", "high"])
        assert field.validate_and_convert("low").is_success
        assert not field.validate_and_convert("medium").is_success

    def test_required_none(self):
        assert not IntField().validate_and_convert(None).is_success
        assert IntField(required=False).validate_and_convert(None).is_success

    def test_list_items_converted(self):
        field = ListField(item_field=IntField(), max_items=3)
        assert field.validate_and_convert(["1", 2]).value == [1, 2]
        assert not field.validate_and_convert([1, 2, 3, 4]).is_success

        failed = field.validate_and_convert([1, "x"])
        assert "[1]" in failed.error
        assert "valid integer" in failed.error

    def test_nested_map(self):
        inner = OutputSchema({"city": StringField()})
        field = MapField(schema=inner)

        assert field.validate_and_convert({"city": "Oslo"}).value == {"city": "Oslo"}
        assert not field.validate_and_convert({"town": "Oslo"}).is_success


# ============================================
# Schema Tests
# ============================================

@pytest.fixture
def person_schema():
    return OutputSchema(
        {
            "name": StringField(description="Full name"),
            "age": IntField(min_value=0),
            "tags": ListField(item_field=StringField(), required=False),
            "active": BoolField(required=False, default=True),
        }
    )


class TestOutputSchema:
    """Test whole-object validation."""

    def test_valid_object(self, person_schema):
        data = person_schema.validate_or_raise({"name": "Ada", "age": "36"})
        assert data == {"name": "Ada", "age": 36, "active": True}

    def test_structural_errors_collected_together(self, person_schema):
        result = person_schema.validate_and_convert({"nickname": "x", "extra": 1})

        assert not result.is_success
        assert result.errors == (
            "Missing required field: name",
            "Missing required field: age",
            "Unknown field: nickname",
            "Unknown field: extra",
        )

    def test_value_errors_collected_together(self, person_schema):
        with pytest.raises(ValidationError) as exc_info:
            person_schema.validate_or_raise({"name": 1, "age": -1})

        assert exc_info.value.errors == [
            "name: Invalid type: expected StringField",
            "age: Validation failed",
        ]

    def test_non_strict_ignores_unknown(self):
        schema = OutputSchema({"a": IntField()}, strict=False)
        assert schema.validate_or_raise({"a": 1, "b": 2}) == {"a": 1}

    def test_non_object(self, person_schema):
        assert not person_schema.validate_and_convert([1, 2]).is_success

    def test_validate_field(self, person_schema):
        assert person_schema.validate_field("age", "7").value == 7
        assert person_schema.validate_field("nope", 1).error == "Unknown field: nope"

    def test_empty_schema_rejected(self):
        with pytest.raises(InvalidConfigurationError):
            OutputSchema({})

    def test_json_schema(self, person_schema):
        schema = person_schema.to_json_schema()
        assert schema["required"] == ["name", "age"]
        assert schema["additionalProperties"] is False
        age = schema["properties"]["age"]
        assert age["type"] == "integer"
        assert age["minimum"] == 0
        tags = schema["properties"]["tags"]
        assert {"type": "array", "items": {"type": "string"}} in tags["anyOf"]
        assert schema["properties"]["name"]["description"] == "Full name"
        assert schema["properties"]["active"]["default"] is True

    def test_json_schema_enum(self):
        schema = OutputSchema({"level": StringField(enum_values=["low", "high"])})
        assert schema.to_json_schema()["properties"]["level"]["enum"] == ["low", "high"]

    def test_describe_mentions_json(self, person_schema):
        assert person_schema.describe().startswith("Respond only with a JSON object")


# ============================================
# Generated Model Tests
# ============================================

class TestGeneratedModel:
    """Test the pydantic model behind a schema."""

    def test_model_is_pydantic(self, person_schema):
        model = person_schema.model

        assert issubclass(model, BaseModel)
        assert model.model_config["extra"] == "forbid"
        instance = model.model_validate({"name": "Ada", "age": "36"})
        assert instance.model_dump(by_alias=True, exclude_unset=True) == {"name": "Ada", "age": 36}

    def test_non_strict_model_ignores_extra(self):
        schema = OutputSchema({"a": IntField()}, strict=False)
        assert schema.model.model_config["extra"] == "ignore"

    def test_names_that_shadow_model_members(self):
        schema = OutputSchema({"model_config": StringField(), "schema": IntField()})

        assert schema.validate_or_raise({"model_config": "x", "schema": "2"}) == {
            "model_config": "x",
            "schema": 2,
        }
        assert set(schema.to_json_schema()["properties"]) == {"model_config", "schema"}

    def test_nested_errors_carry_path(self):
        schema = OutputSchema({"scores": ListField(item_field=IntField(max_value=10))})

        result = schema.validate_and_convert({"scores": [1, 20, "x"]})

        assert result.errors[0] == "scores: [1] Validation failed"
        assert result.errors[1].startswith("scores: [2] ")
        assert len(result.errors) == 2

    def test_nested_map_schema_in_model(self):
        schema = OutputSchema(
            {"address": MapField(schema=OutputSchema({"city": StringField()}, name="Address"))}
        )

        assert schema.parse('{"address": {"city": "Oslo"}}') == {"address": {"city": "Oslo"}}
        result = schema.validate_and_convert({"address": {"city": 1}})
        assert result.errors == ("address: [city] Input should be a valid string",)


# ============================================
# JSON Extraction Tests
# ============================================

class TestExtractJson:
    """Test decoding model output."""

    def test_bare(self):
        assert extract_json('{"a": 1}') == {"a": 1}

    def test_fenced_with_language(self):
        assert extract_json('Here:\n```json\n{"a": 1}\n```\nDone') == {"a": 1}

    def test_fenced_without_language(self):
        assert extract_json('```\n[1, 2]\n```') == [1, 2]

    def test_surrounded_by_prose(self):
        assert extract_json('Sure! {"a": {"b": 2}} Hope that helps.') == {"a": {"b": 2}}

    def test_invalid(self):
        with pytest.raises(ValidationError) as exc_info:
            extract_json("no json here")
        assert exc_info.value.errors[0].startswith("Invalid JSON")

    def test_parse(self, person_schema):
        assert person_schema.parse('```json\n{"name": "Ada", "age": 36}\n```')["age"] == 36
