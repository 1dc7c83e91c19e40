from __future__ import annotations

import json
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

from .models import WireModel

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert stored values into JSON-primitive types.

    Wire models dump with their camelCase aliases so persisted documents match
    what the web layer reads.

    Raises:
        TypeError: If value contains a type that cannot be converted to JSON.
    """
    # str-valued enums would otherwise pass through as str subclasses.
    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)

    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, WireModel):
        return _normalize_for_jcs(value.to_wire())

    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json"))

    if isinstance(value, dict):
        return {str(key): _normalize_for_jcs(item) for key, item in value.items()}

    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]

    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to deterministic, byte-for-byte reproducible JSON per RFC 8785.

    Raises:
        TypeError: If value contains an unsupported type.
        rfc8785.CanonicalizationError: If rfc8785 rejects the normalized value.
    """
    return rfc8785.dumps(_normalize_for_jcs(value)).decode("utf-8")


def from_canonical_json(text: str) -> Any:
    return json.loads(text)
