"""
Tool argument validation against runtime JSON-schema documents.

MCP servers describe tool inputs with JSON schema. The walker below treats
the schema as data: it checks ``required`` properties, declared types and
``enum`` values, and performs explicit, per-type coercion of values the LLM
commonly renders in the wrong JSON type (``"5"`` for an integer, ``"true"``
for a boolean).
"""

from typing import Any, Dict, List, Optional, Tuple

from mcpbridge.core.errors import ToolArgsError

_TRUE = ("true", "yes", "1")
_FALSE = ("false", "no", "0")


def _coerce(value: Any, type_name: str) -> Tuple[bool, Any]:
    """Try to read ``value`` as ``type_name``. Returns (ok, value)."""
    if type_name == "null":
        return value is None, value

    if type_name == "boolean":
        if isinstance(value, bool):
            return True, value
        if isinstance(value, str) and value.strip().lower() in _TRUE + _FALSE:
            return True, value.strip().lower() in _TRUE
        return False, value

    if type_name == "integer":
        if isinstance(value, bool):
            return False, value
        if isinstance(value, int):
            return True, value
        if isinstance(value, float) and value.is_integer():
            return True, int(value)
        if isinstance(value, str):
            try:
                return True, int(value.strip())
            except ValueError:
                return False, value
        return False, value

    if type_name == "number":
        if isinstance(value, bool):
            return False, value
        if isinstance(value, (int, float)):
            return True, value
        if isinstance(value, str):
            try:
                return True, float(value.strip())
            except ValueError:
                return False, value
        return False, value

    if type_name == "string":
        if isinstance(value, str):
            return True, value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return True, str(value)
        return False, value

    if type_name == "array":
        return isinstance(value, list), value

    if type_name == "object":
        return isinstance(value, dict), value

    # Unknown type keywords are not enforced.
    return True, value


def _declared_types(schema: Dict[str, Any]) -> List[str]:
    declared = schema.get("type")
    if declared is None:
        return []
    if isinstance(declared, list):
        return [str(t) for t in declared]
    return [str(declared)]


def _walk(schema: Any, value: Any, path: str, problems: List[str]) -> Any:
    if not isinstance(schema, dict):
        return value

    types = _declared_types(schema)
    if types:
        for type_name in types:
            ok, coerced = _coerce(value, type_name)
            if ok:
                value = coerced
                break
        else:
            problems.append(f"{path}: expected {' or '.join(types)}, got {type(value).__name__}")
            return value

    enum = schema.get("enum")
    if isinstance(enum, list) and enum and value not in enum:
        problems.append(f"{path}: must be one of {enum}")

    if isinstance(value, dict):
        value = _walk_object(schema, value, path, problems)
    elif isinstance(value, list) and isinstance(schema.get("items"), dict):
        value = [
            _walk(schema["items"], item, f"{path}[{i}]", problems)
            for i, item in enumerate(value)
        ]
    return value


def _walk_object(schema: Dict[str, Any], value: Dict[str, Any], path: str, problems: List[str]) -> Dict[str, Any]:
    properties = schema.get("properties") or {}
    result = dict(value)

    for name in schema.get("required") or []:
        if name not in value or value[name] is None:
            problems.append(f"{_join(path, name)}: required argument is missing")

    for name, item in value.items():
        if name in properties:
            result[name] = _walk(properties[name], item, _join(path, name), problems)
        elif schema.get("additionalProperties") is False:
            problems.append(f"{_join(path, name)}: unexpected argument")
    return result


def _join(path: str, name: str) -> str:
    return f"{path}.{name}" if path else name


def validate_args(schema: Optional[Dict[str, Any]], args: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate ``args`` against ``schema`` and return the coerced arguments.

    Args:
        schema: The tool's input schema (may be empty).
        args: Arguments proposed by the LLM.

    Returns:
        A new dict with values coerced to their declared types.

    Raises:
        ToolArgsError: If any argument is missing or has the wrong type.
    """
    if not isinstance(args, dict):
        raise ToolArgsError("tool arguments must be a JSON object", problems=["args: expected object"])
    if not schema:
        return dict(args)

    problems: List[str] = []
    coerced = _walk_object(schema, args, "", problems)
    if problems:
        raise ToolArgsError("invalid tool arguments: " + "; ".join(problems), problems=problems)
    return coerced

