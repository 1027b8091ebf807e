"""
Canonical response-schema validation and translation to provider dialects.

The canonical schema is a small JSON-schema subset: `type` (object, array,
string, number, integer, boolean), `properties`, `required`, `items`, `enum`,
`nullable` and `description`. Type names are accepted in any case.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Mapping

from models.errors import SchemaError

logger = logging.getLogger(__name__)

SCHEMA_TYPES = frozenset({"object", "array", "string", "number", "integer", "boolean"})
MAX_SCHEMA_DEPTH = 10


def _type_of(node: Mapping[str, Any]) -> str | None:
    value = node.get("type")
    return value.lower() if isinstance(value, str) else None


def validate_schema(schema: Any) -> None:
    """Raise SchemaError unless `schema` is a mapping with a known `type`."""
    if not isinstance(schema, Mapping):
        raise SchemaError("Response schema must be an object")
    if "type" not in schema:
        raise SchemaError("Response schema must declare a type")
    schema_type = _type_of(schema)
    if schema_type not in SCHEMA_TYPES:
        raise SchemaError(f"Unsupported schema type: {schema.get('type')!r}")


def _required_names(node: Mapping[str, Any]) -> List[str]:
    required = node.get("required")
    if not isinstance(required, (list, tuple)):
        return []
    return [name for name in required if isinstance(name, str) and name.strip()]


def to_openrouter_schema(schema: Any, *, strict: bool = True, _depth: int = 0) -> Dict[str, Any]:
    """
    Translate a canonical schema into the JSON-schema dialect used by
    OpenRouter structured outputs.

    `nullable` becomes an `anyOf` union with the null type. With `strict`, every
    object property is listed as required and properties that were optional
    become nullable, which is how strict mode expresses optionality.
    """
    if _depth > MAX_SCHEMA_DEPTH:
        logger.warning("Schema nesting exceeds depth %d; truncating to string", MAX_SCHEMA_DEPTH)
        return {"type": "string"}
    if not isinstance(schema, Mapping):
        logger.warning("Invalid schema node %r; defaulting to string", schema)
        return {"type": "string"}

    schema_type = _type_of(schema)
    if schema_type not in SCHEMA_TYPES:
        if schema.get("type") is None:
            logger.warning("Schema missing type field, defaulting to string")
        else:
            logger.warning("Unknown schema type %r, defaulting to string", schema.get("type"))
        schema_type = "string"

    result: Dict[str, Any] = {"type": schema_type}
    description = schema.get("description")
    if isinstance(description, str) and description:
        result["description"] = description

    enum = schema.get("enum")
    if isinstance(enum, (list, tuple)) and enum:
        result["enum"] = list(enum)

    if schema_type == "object":
        properties = schema.get("properties")
        translated: Dict[str, Any] = {}
        if isinstance(properties, Mapping):
            for name, child in properties.items():
                translated[str(name)] = to_openrouter_schema(child, strict=strict, _depth=_depth + 1)
        required = [name for name in _required_names(schema) if name in translated]
        if strict:
            for name, child in translated.items():
                if name not in required and not _is_nullable(child):
                    translated[name] = _nullable(child)
            required = list(translated)
        result["properties"] = translated
        result["required"] = required
        result["additionalProperties"] = False
    elif schema_type == "array":
        items = schema.get("items")
        if items is None:
            result["items"] = {"type": "string"}
        else:
            result["items"] = to_openrouter_schema(items, strict=strict, _depth=_depth + 1)

    if schema.get("nullable") is True:
        return _nullable(result)
    return result


def _is_nullable(node: Mapping[str, Any]) -> bool:
    variants = node.get("anyOf")
    if isinstance(variants, list):
        return any(isinstance(v, Mapping) and v.get("type") == "null" for v in variants)
    return node.get("type") == "null"


def _nullable(node: Dict[str, Any]) -> Dict[str, Any]:
    description = node.pop("description", None)
    union: Dict[str, Any] = {"anyOf": [node, {"type": "null"}]}
    if description:
        union["description"] = description
    return union


def to_gemini_schema(schema: Any, *, _depth: int = 0) -> Dict[str, Any]:
    """Translate a canonical schema into Gemini's upper-case OpenAPI subset."""
    if _depth > MAX_SCHEMA_DEPTH or not isinstance(schema, Mapping):
        return {"type": "STRING"}
    schema_type = _type_of(schema) or "string"
    if schema_type not in SCHEMA_TYPES:
        schema_type = "string"
    result: Dict[str, Any] = {"type": schema_type.upper()}
    for key in ("description", "nullable", "format"):
        if key in schema:
            result[key] = copy.deepcopy(schema[key])
    enum = schema.get("enum")
    if isinstance(enum, (list, tuple)) and enum:
        result["enum"] = [str(value) for value in enum]
    if schema_type == "object" and isinstance(schema.get("properties"), Mapping):
        result["properties"] = {
            str(name): to_gemini_schema(child, _depth=_depth + 1)
            for name, child in schema["properties"].items()
        }
        required = [name for name in _required_names(schema) if name in result["properties"]]
        if required:
            result["required"] = required
    elif schema_type == "array":
        result["items"] = to_gemini_schema(schema.get("items", {"type": "string"}), _depth=_depth + 1)
    return result
