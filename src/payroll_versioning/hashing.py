"""Canonical serialization and content hashing.

The same logical payload must always produce the same bytes, whatever
order its keys were inserted in and however its decimals were written
(``Decimal("950.50")`` and ``Decimal("950.5")`` hash identically).
Floats are rejected outright: money and rates travel as Decimal.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from payroll_versioning.exceptions import SerializationError


def format_decimal(value: Decimal) -> str:
    """Fixed-point text for a decimal, without exponent or trailing zeros."""
    if not value.is_finite():
        raise SerializationError(f"Non-finite decimal cannot be canonicalized: {value}")
    text = format(value.normalize(), "f")
    return "0" if text in ("-0", "0") else text


def _normalize(value: Any, path: str = "$") -> Any:
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, Enum):
        return _normalize(value.value, path)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        raise SerializationError(
            f"Float at {path} is not allowed; use Decimal", {"path": path}
        )
    if isinstance(value, Decimal):
        return format_decimal(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Mapping):
        result = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise SerializationError(
                    f"Non-string key {key!r} at {path}", {"path": path}
                )
            result[key] = _normalize(item, f"{path}.{key}")
        return result
    if isinstance(value, (list, tuple)):
        return [_normalize(item, f"{path}[{i}]") for i, item in enumerate(value)]
    raise SerializationError(
        f"Cannot canonicalize {type(value).__name__} at {path}", {"path": path}
    )


def canonicalize(payload: Any) -> bytes:
    """Serialize a payload to canonical JSON bytes."""
    normalized = _normalize(payload)
    return json.dumps(
        normalized,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def canonical_json(payload: Any) -> str:
    """Canonical JSON text, as stored in snapshot rows."""
    return canonicalize(payload).decode("utf-8")


def hash_bytes(canonical_bytes: bytes) -> str:
    """SHA-256 hex digest of already-canonical bytes."""
    return hashlib.sha256(canonical_bytes).hexdigest()


def compute_hash(payload: Any) -> str:
    """Hash a payload via its canonical serialization."""
    return hash_bytes(canonicalize(payload))


def verify(payload: Any, expected_digest: str) -> bool:
    """Check a payload against a previously recorded digest."""
    return hmac.compare_digest(compute_hash(payload), expected_digest)
