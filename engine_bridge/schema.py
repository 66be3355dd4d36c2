"""
JSON Schema to runtime validator translation.

Tool parameter schemas come from arbitrary clients and engines, so the
mapping is permissive: anything not understood becomes ``Any`` instead of an
error. The resulting pydantic model validates and coerces tool arguments
before they are dispatched.
"""
from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model
from mcp.types import INVALID_PARAMS

from engine_bridge.errors import ProtocolError

__all__ = ["translate", "validate_arguments", "ArgumentsModel"]

logger = logging.getLogger("engine_bridge.schema")

_PRIMITIVES: dict[str, Any] = {
    "string": str,
    "number": Union[int, float],
    "integer": int,
    "boolean": bool,
}

CACHE_SIZE = 512


class ArgumentsModel(BaseModel):
    """Base for generated validators. Undeclared keys pass through."""

    model_config = ConfigDict(extra="allow", populate_by_name=False)


def _property_type(prop: Any, path: str) -> Any:
    if not isinstance(prop, dict):
        return Any

    prop_type = prop.get("type")
    if isinstance(prop_type, list):
        # ["string", "null"] style unions; more than one real member is left open
        members = [member for member in prop_type if member != "null"]
        if len(members) != 1:
            return Any
        inner = _property_type({**prop, "type": members[0]}, path)
        return Optional[inner] if "null" in prop_type else inner
    if not isinstance(prop_type, str):
        return Any

    if prop_type in _PRIMITIVES:
        return _PRIMITIVES[prop_type]

    if prop_type == "array":
        items = prop.get("items")
        if not isinstance(items, dict):
            # No usable item schema: accept any element
            return list[Any]
        return list[_property_type(items, f"{path}[]")]

    if prop_type == "object":
        return _object_model(prop, path)

    return Any


def _object_model(schema: dict[str, Any], path: str) -> type[BaseModel]:
    properties = schema.get("properties")
    if not isinstance(properties, dict):
        properties = {}
    required = schema.get("required")
    if not isinstance(required, list):
        required = []

    fields: dict[str, Any] = {}
    for index, (key, prop) in enumerate(properties.items()):
        field_type = _property_type(prop, f"{path}.{key}")
        description = prop.get("description") if isinstance(prop, dict) else None
        # Positional field names; the JSON key lives in the alias
        field_name = f"field_{index}"
        if key in required:
            fields[field_name] = (field_type, Field(..., alias=key, description=description))
        else:
            fields[field_name] = (
                Optional[field_type],
                Field(default=None, alias=key, description=description),
            )

    model_name = "Args_" + "".join(ch if ch.isalnum() else "_" for ch in path)
    return create_model(model_name, __base__=ArgumentsModel, **fields)


def translate(schema: Any, name: str = "tool") -> type[BaseModel]:
    """Translate a JSON-Schema-like parameter description into a validator.

    The result is a pure function of ``schema``; models are cached by the
    schema's canonical JSON in a bounded LRU cache.

    Args:
        schema: The ``parameters`` / ``inputSchema`` object. ``None`` or a
            non-object yields a validator that accepts any object.
        name: Used only to name the generated model.

    Returns:
        A pydantic model class. Never raises.
    """
    if not isinstance(schema, dict):
        schema = {}
    try:
        canonical = json.dumps(schema, sort_keys=True)
    except (TypeError, ValueError):
        return _build(schema, name)
    return _cached_build(canonical, name)


@lru_cache(maxsize=CACHE_SIZE)
def _cached_build(canonical: str, name: str) -> type[BaseModel]:
    return _build(json.loads(canonical), name)


def _build(schema: dict[str, Any], name: str) -> type[BaseModel]:
    try:
        return _object_model(schema, name)
    except Exception:
        logger.warning("Falling back to a permissive validator for %s", name, exc_info=True)
        return create_model(f"Args_{name}_fallback", __base__=ArgumentsModel)


def validate_arguments(validator: type[BaseModel], arguments: Any) -> dict[str, Any]:
    """Validate and coerce ``arguments`` against ``validator``.

    Optional properties that were not supplied stay absent in the result.

    Raises:
        ProtocolError: with JSON-RPC code INVALID_PARAMS when validation fails.
    """
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise ProtocolError(
            f"Tool arguments must be an object, got {type(arguments).__name__}",
            code=INVALID_PARAMS,
        )

    try:
        parsed = validator.model_validate(arguments)
    except ValidationError as exc:
        problems = [
            {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
            for err in exc.errors()
        ]
        raise ProtocolError(
            "Invalid arguments: " + "; ".join(f"{p['loc']}: {p['msg']}" for p in problems),
            code=INVALID_PARAMS,
            data=problems,
        ) from exc

    return parsed.model_dump(by_alias=True, exclude_unset=True)
