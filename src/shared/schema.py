"""JSON Schema utilities for tool descriptors."""

from typing import Any

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

EMPTY_OBJECT_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


def validate_arguments(arguments: Any, schema: dict[str, Any]) -> list[str]:
    """
    Check tool arguments against a tool's input schema.

    Returns:
        One message per violation, prefixed with its JSON path; empty if valid
    """
    if not schema:
        return []

    errors = sorted(Draft7Validator(schema).iter_errors(arguments), key=lambda e: e.json_path)
    return [f"{e.json_path}: {e.message}" for e in errors]


def normalize_input_schema(schema: Any) -> dict[str, Any]:
    """
    Coerce a tool server's input schema into an object schema the model accepts.

    Tool servers may omit the schema, send one without a top-level type,
    or send an invalid one. Anything unusable becomes an empty object schema.
    """
    if not isinstance(schema, dict) or not schema:
        return dict(EMPTY_OBJECT_SCHEMA)

    try:
        Draft7Validator.check_schema(schema)
    except SchemaError:
        return dict(EMPTY_OBJECT_SCHEMA)

    normalized = dict(schema)
    normalized.setdefault("type", "object")
    if normalized["type"] == "object":
        normalized.setdefault("properties", {})
    return normalized
