from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from pathlib import PurePath
from typing import Any

import rfc8785
from pydantic import BaseModel

_JSON_SCALARS = (bool, int, float, str, type(None))


def _to_json_value(value: Any) -> Any:
    """Reduce models, enums, timestamps and paths to plain JSON values.

    Raises:
        TypeError: If a value has no JSON representation.
    """
    if isinstance(value, Enum):
        return _to_json_value(value.value)
    if isinstance(value, _JSON_SCALARS):
        return value
    if isinstance(value, BaseModel):
        return _to_json_value(value.model_dump(mode="json", exclude_none=True))
    if isinstance(value, dict):
        return {str(key): _to_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_to_json_value(item) for item in value]
        # Sets have no order of their own; sort their canonical forms.
        if isinstance(value, (set, frozenset)):
            items.sort(key=lambda item: rfc8785.dumps(item))
        return items
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, PurePath):
        return value.as_posix()
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize ``value`` to RFC 8785 canonical JSON."""
    return rfc8785.dumps(_to_json_value(value)).decode("utf-8")


def fingerprint(value: Any) -> str:
    """Return the hex SHA-256 digest of the canonical JSON form of ``value``.

    Two feedback batches that differ only in key order or in fields left at
    ``None`` produce the same fingerprint.
    """
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
