"""
Tool-call argument boundary and schema helpers.

normalize_arguments – one explicit normalization pass (``kwargs`` wrapper unwrap)
validate_arguments  – JSON-schema check against the tool's declared inputSchema
sanitize_tool_schema – simplify a tool schema for strict LLM function-calling APIs
"""
from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

WRAPPER_KEY = "kwargs"

SUPPORTED_FORMATS = ("enum", "date-time")


# ==================================================================== arguments
def normalize_arguments(params: Any) -> Dict[str, Any]:
    """Return a plain argument dict.

    Some agent frameworks send ``{"kwargs": {...}}`` instead of the arguments
    themselves; when that wrapper is the only key it is unwrapped.
    """
    if params is None:
        return {}
    if not isinstance(params, Mapping):
        raise TypeError(f"Tool arguments must be an object, got {type(params).__name__}")
    if set(params) == {WRAPPER_KEY} and isinstance(params[WRAPPER_KEY], Mapping):
        return dict(params[WRAPPER_KEY])
    return dict(params)


def validate_arguments(arguments: Dict[str, Any], input_schema: Optional[Dict[str, Any]]) -> List[str]:
    """Return human-readable violations of *input_schema* (empty when valid).

    A missing or broken schema is not the caller's fault and validates nothing.
    """
    if not isinstance(input_schema, dict) or not input_schema:
        return []
    try:
        Draft7Validator.check_schema(input_schema)
    except SchemaError:
        return []
    validator = Draft7Validator(input_schema)
    errors = []
    for err in sorted(validator.iter_errors(arguments), key=lambda e: list(e.path)):
        where = ".".join(str(p) for p in err.path)
        errors.append(f"{where}: {err.message}" if where else err.message)
    return errors


# ==================================================================== raw tool records
def validate_tool_schema(tool: Any) -> bool:
    """A raw ``tools/list`` record is usable when it has a name and an object inputSchema."""
    if not isinstance(tool, dict):
        return False
    if not isinstance(tool.get("name"), str) or not tool["name"]:
        return False
    description = tool.get("description")
    if description is not None and not isinstance(description, str):
        return False
    schema = tool.get("inputSchema")
    return isinstance(schema, dict) and schema.get("type") == "object"


# ==================================================================== sanitization
def sanitize_tool_schema(tool: Dict[str, Any], max_depth: int = 6) -> Dict[str, Any]:
    """Copy of *tool* whose inputSchema strict providers accept.

    Type lists collapse to their first non-null member, unsupported ``format``
    values are dropped, ``anyOf``/``oneOf`` become their first option and
    anything nested deeper than *max_depth* becomes a described string.
    """
    if not isinstance(tool, dict):
        return tool
    out = copy.copy(tool)
    if "inputSchema" in out:
        out["inputSchema"] = _sanitize(out["inputSchema"], max_depth, 0)
    return out


def _sanitize(schema: Any, max_depth: int, depth: int) -> Any:
    if depth >= max_depth:
        return {"type": "string", "description": "Complex nested data (simplified for compatibility)"}
    if not isinstance(schema, dict):
        return schema

    out: Dict[str, Any] = {}
    for key, value in schema.items():
        if key == "type" and isinstance(value, list):
            out[key] = _first_type(value)
        elif key == "format":
            if value in SUPPORTED_FORMATS:
                out[key] = value
        elif key in ("anyOf", "oneOf"):
            out.update(_first_option(value, max_depth, depth))
        elif key == "properties" and isinstance(value, dict):
            out[key] = {name: _sanitize(sub, max_depth, depth + 1) for name, sub in value.items()}
        elif isinstance(value, dict):
            out[key] = _sanitize(value, max_depth, depth + 1)
        elif isinstance(value, list):
            out[key] = [_sanitize(item, max_depth, depth + 1) if isinstance(item, dict) else item
                        for item in value]
        else:
            out[key] = value
    return out


def _first_type(types: List[Any]) -> str:
    for t in types:
        if t != "null":
            return t
    return "string"


def _first_option(options: Any, max_depth: int, depth: int) -> Dict[str, Any]:
    if isinstance(options, list) and options and isinstance(options[0], dict):
        return _sanitize(options[0], max_depth, depth)
    return {"type": "string"}
