"""Preview/full projection of artifact component schemas.

Artifact component schemas are JSON-Schema objects whose properties carry an
extra ``inPreview`` flag. Preview fields are what an inline ``artifact:ref``
shows; full fields are what an ``artifact:create`` captures and what a tool
receives when an artifact is passed as an argument.

All functions here are pure and never raise on malformed input.
"""

import copy
from typing import Any, Dict

IN_PREVIEW_FLAG = "inPreview"


def _strip_flag(prop: Any) -> Any:
    if not isinstance(prop, dict):
        return prop
    cleaned = {k: v for k, v in prop.items() if k != IN_PREVIEW_FLAG}
    return copy.deepcopy(cleaned)


def extract_preview_fields(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of *schema* holding only properties flagged ``inPreview``.

    The flag is stripped from every kept property and ``required`` is
    narrowed to the names that survived.
    """
    if not isinstance(schema, dict):
        return {"type": "object", "properties": {}}

    properties = schema.get("properties") or {}
    preview_props = {
        name: _strip_flag(prop)
        for name, prop in properties.items()
        if isinstance(prop, dict) and prop.get(IN_PREVIEW_FLAG) is True
    }

    result = {k: copy.deepcopy(v) for k, v in schema.items() if k not in ("properties", "required")}
    result["properties"] = preview_props
    required = schema.get("required")
    if isinstance(required, list):
        result["required"] = [name for name in required if name in preview_props]
    return result


def extract_full_fields(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of *schema* with every property kept and the flag stripped."""
    if not isinstance(schema, dict):
        return {"type": "object", "properties": {}}

    properties = schema.get("properties") or {}
    result = {k: copy.deepcopy(v) for k, v in schema.items() if k != "properties"}
    result["properties"] = {name: _strip_flag(prop) for name, prop in properties.items()}
    return result


def build_schema_shape(properties: Dict[str, Any]) -> Dict[str, Any]:
    """Reduce a properties map to a compact structural summary.

    Used only for prompt documentation::

        {"tags": {"type": "array", "items": {"type": "string"}}}  -> {"tags": ["string"]}
        {"data": {"type": "array"}}                                -> {"data": []}
        {"x": {}}                                                  -> {"x": "unknown"}
    """
    shape: Dict[str, Any] = {}
    if not isinstance(properties, dict):
        return shape

    for name, prop in properties.items():
        shape[name] = _shape_of(prop)
    return shape


def _shape_of(prop: Any) -> Any:
    if not isinstance(prop, dict):
        return "unknown"

    prop_type = prop.get("type")
    if prop_type == "array":
        items = prop.get("items")
        if not isinstance(items, dict) or not items:
            return []
        if items.get("type") == "object" or "properties" in items:
            return [build_schema_shape(items.get("properties") or {})]
        if items.get("type"):
            return [items["type"]]
        return []
    if prop_type == "object" or (prop_type is None and "properties" in prop):
        return build_schema_shape(prop.get("properties") or {})
    if prop_type:
        return prop_type
    return "unknown"


def make_all_properties_required(schema: Any) -> Any:
    """Return a copy of *schema* where every object lists all its properties as required.

    Applied recursively into nested objects and array items. Structured-output
    providers reject schemas with optional properties.
    """
    if not isinstance(schema, dict):
        return schema

    result = copy.deepcopy(schema)
    properties = result.get("properties")
    if isinstance(properties, dict):
        result["properties"] = {
            name: make_all_properties_required(prop) for name, prop in properties.items()
        }
        result["required"] = list(properties.keys())
    if isinstance(result.get("items"), dict):
        result["items"] = make_all_properties_required(result["items"])
    for key in ("anyOf", "oneOf", "allOf"):
        if isinstance(result.get(key), list):
            result[key] = [make_all_properties_required(s) for s in result[key]]
    return result
