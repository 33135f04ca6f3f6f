"""
Canonical request hashing

A request hash binds an idempotency key to the semantic inputs of the
request that first used it. The canonical form is stable across runs and
processes: keys sorted, strings trimmed, integral floats collapsed to
integers, Decimals spelled like the equal number and datetimes rendered
in UTC.
"""

import hashlib
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel


def canonicalize(value: Any) -> Any:
    """
    Reduce a value to plain JSON types in canonical form

    Args:
        value: Any mix of pydantic models, mappings, sequences and scalars

    Returns:
        An equivalent structure of dict/list/str/int/float/bool/None
    """
    if isinstance(value, BaseModel):
        return canonicalize(value.model_dump(mode="python"))
    if isinstance(value, Enum):
        return canonicalize(value.value)
    if isinstance(value, dict):
        return {str(k).strip(): canonicalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [canonicalize(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted((canonicalize(v) for v in value), key=_sort_key)
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else value
    if isinstance(value, Decimal):
        normalized = value.normalize()
        if normalized == normalized.to_integral_value():
            return int(normalized)
        # Same spelling as the equal float
        return float(normalized)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def canonical_json(value: Any) -> bytes:
    """Serialize a value to canonical JSON bytes (sorted keys, no whitespace)"""
    return json.dumps(
        canonicalize(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def request_hash(value: Any) -> str:
    """
    Stable SHA-256 hex digest of a request's canonical form

    Two payloads that differ only in key order, surrounding whitespace or
    numeric spelling (1 vs 1.0) hash identically.
    """
    return hashlib.sha256(canonical_json(value)).hexdigest()


def _sort_key(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)
