from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))

DIGEST_ALGORITHM = "sha256"


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert attribute values into JSON-primitive types.

    Resource attributes are opaque to the engine, but they still have to hash
    and compare identically regardless of key order or container type.

    Raises:
        TypeError: If value contains a type that has no JSON representation.
    """
    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)

    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json"))

    if isinstance(value, dict):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}

    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    if isinstance(value, (bytes, bytearray)):
        raise TypeError(f"Cannot serialize bytes to canonical JSON: {bytes(value)!r:.64}")

    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize a value to byte-for-byte reproducible JSON per RFC 8785."""
    return rfc8785.dumps(_normalize_for_jcs(value)).decode("utf-8")


def canonical_equal(left: Any, right: Any) -> bool:
    """Compare two attribute values by their canonical JSON form.

    ``{"a": 1, "b": 2}`` equals ``{"b": 2, "a": 1}`` and ``1`` equals ``1.0``.
    """
    return to_canonical_json(left) == to_canonical_json(right)


def fingerprint(value: Any) -> str:
    """Return the hex sha256 of ``value``'s canonical JSON."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()


def content_digest(content: bytes) -> str:
    """Return the content address of raw artifact bytes (``sha256:<hex>``)."""
    return f"{DIGEST_ALGORITHM}:{hashlib.sha256(content).hexdigest()}"
