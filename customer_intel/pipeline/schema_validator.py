"""
JSON schema validation and best-effort repair for NB payloads.

validate() runs jsonschema's Draft 7 validator and rewrites each error into
the short, path-addressed messages the retry feedback quotes back to the
model. Errors are accumulated, never short-circuited, so one pass reports
every violation. repair() has no library counterpart and stays hand-written.
"""
import re
from typing import Any, Dict, List, Tuple

from jsonschema import Draft7Validator

ROOT = '$'

_TYPE_NAMES = {
    bool: 'boolean',
    int: 'integer',
    float: 'number',
    str: 'string',
    list: 'array',
    dict: 'object',
    type(None): 'null',
}


def json_type(value) -> str:
    """JSON type name of a decoded value."""
    return _TYPE_NAMES.get(type(value), type(value).__name__)


def _declared_types(schema) -> List[str]:
    declared = schema.get('type')
    if declared is None:
        return []
    return declared if isinstance(declared, list) else [declared]


def json_path(parts) -> str:
    """$.a.b[0] style path from a jsonschema absolute_path."""
    path = ROOT
    for part in parts:
        path += f"[{part}]" if isinstance(part, int) else f".{part}"
    return path


def _unexpected_keys(instance, schema) -> List[str]:
    properties = schema.get('properties', {})
    patterns = schema.get('patternProperties', {})
    return [
        key for key in instance
        if key not in properties and not any(re.search(p, key) for p in patterns)
    ]


def _messages(error) -> List[str]:
    path = json_path(error.absolute_path)
    kind, limit, value = error.validator, error.validator_value, error.instance

    if kind == 'type':
        types = limit if isinstance(limit, list) else [limit]
        return [f"Type mismatch at {path}: expected {'|'.join(types)}, got {json_type(value)}"]
    if kind == 'required':
        return [f"Missing required property: {path}.{field}" for field in limit if field not in value]
    if kind == 'additionalProperties':
        return [f"Additional properties not allowed at {path}: {key}" for key in _unexpected_keys(value, error.schema)]
    if kind == 'enum':
        return [f"Value at {path} must be one of: {', '.join(str(v) for v in limit)}"]
    if kind == 'minimum':
        return [f"Value at {path} is below minimum {limit}: {value}"]
    if kind == 'maximum':
        return [f"Value at {path} exceeds maximum {limit}: {value}"]
    if kind == 'minItems':
        return [f"Array at {path} has too few items: {len(value)} < {limit}"]
    if kind == 'maxItems':
        return [f"Array at {path} has too many items: {len(value)} > {limit}"]
    if kind == 'minLength':
        return [f"String at {path} is shorter than minLength {limit}"]
    if kind == 'maxLength':
        return [f"String at {path} exceeds maxLength {limit}"]
    if kind == 'pattern':
        return [f"String at {path} does not match pattern {limit}"]
    return [f"{error.message} at {path}"]


def validate(value, schema: Dict[str, Any]) -> Dict[str, Any]:
    """Validate value against schema. Returns {'valid': bool, 'errors': [str]}."""
    found = list(Draft7Validator(schema or {}).iter_errors(value))

    # a wrong type makes every other keyword at that path noise
    mistyped = {tuple(e.absolute_path) for e in found if e.validator == 'type'}

    errors: List[str] = []
    seen_required = set()
    for error in found:
        where = tuple(error.absolute_path)
        if where in mistyped and error.validator != 'type':
            continue
        if error.validator == 'required':
            # jsonschema yields one error per missing field; report them once per object
            if where in seen_required:
                continue
            seen_required.add(where)
        errors.extend(_messages(error))
    return {'valid': not errors, 'errors': errors}


# ── Repair ───────────────────────────────────────────────────────────────────

def placeholder(schema: Dict[str, Any]):
    """Minimal value consistent with the schema's declared type."""
    schema = schema or {}
    if schema.get('enum'):
        return schema['enum'][0]
    types = _declared_types(schema)
    kind = types[0] if types else 'string'
    if kind == 'object':
        return repair({}, schema)
    if kind == 'array':
        return []
    if kind in ('integer', 'number'):
        floor = schema.get('minimum', 0)
        return max(0, floor) if 'maximum' not in schema else min(max(0, floor), schema['maximum'])
    if kind == 'boolean':
        return False
    if kind == 'null':
        return None
    return ''


def repair(value, schema: Dict[str, Any]):
    """
    Fill missing required fields with placeholders, recursively.

    Fields already present are never altered, only descended into when they
    are objects (or arrays of objects) with their own required fields. A
    non-object value where an object is expected is replaced by a skeleton.
    """
    schema = schema or {}
    if 'object' not in _declared_types(schema) and 'properties' not in schema:
        return value
    if not isinstance(value, dict):
        value = {}

    properties = schema.get('properties', {})
    repaired = dict(value)
    for field in schema.get('required', []):
        if field not in repaired:
            repaired[field] = placeholder(properties.get(field, {}))

    for key, item in repaired.items():
        sub = properties.get(key)
        if not sub:
            continue
        if isinstance(item, dict):
            repaired[key] = repair(item, sub)
        elif isinstance(item, list) and isinstance(sub.get('items'), dict):
            repaired[key] = [repair(el, sub['items']) if isinstance(el, dict) else el for el in item]
    return repaired


def repair_and_validate(value, schema) -> Tuple[Any, Dict[str, Any]]:
    """Repair, then revalidate. Returns (repaired_value, validation_result)."""
    repaired = repair(value, schema)
    return repaired, validate(repaired, schema)
