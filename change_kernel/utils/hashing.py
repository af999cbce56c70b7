"""
Deterministic hashing utilities.

Audit entries are chained by hash, so every value that goes into a hash
must serialize the same way on every run and every backend.  This module
provides the canonical serialization and the audit hash function.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

GENESIS = "GENESIS"


def _json_serializer(obj: Any) -> Any:
    """JSON serializer for the types that appear in audit payloads."""
    if isinstance(obj, Decimal):
        # Trailing zeros removed so 100 and 100.00 hash alike
        return format(obj.normalize(), "f")
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    Keys are sorted, there is no whitespace, and Decimal, datetime, UUID
    and Enum values are serialized consistently.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def hash_payload(payload: dict) -> str:
    """SHA-256 hex digest of the canonical JSON form of ``payload``."""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_audit_entry(
    request_id: str,
    action: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """
    Compute the chained hash of one audit entry.

    The hash covers the request, the action, the payload hash and the
    previous entry's hash, so altering or removing any earlier entry
    changes every later hash.
    """
    components = [
        str(request_id),
        action,
        payload_hash,
        prev_hash or GENESIS,
    ]
    data = "|".join(components)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def snapshot(value: Any) -> str | None:
    """String snapshot of a field value for an audit entry."""
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        # Plain notation, scale-independent: 115000.00 -> "115000"
        return format(value.normalize(), "f")
    if isinstance(value, (list, tuple)):
        return canonicalize_json(list(value))
    if isinstance(value, (datetime, date, UUID)):
        return _json_serializer(value)
    return str(value)
