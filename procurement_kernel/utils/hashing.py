"""
SHA-256 helpers for the audit chain and the configuration checksum.

Payloads are hashed in a canonical JSON form (sorted keys, compact
separators, normalized decimals) so the same logical content always
produces the same digest regardless of dict ordering or ``Decimal``
scale as stored by the database.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

GENESIS_MARKER = "GENESIS"


def _encode_value(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        # 10, 10.0 and 10.0000 must hash identically
        return str(obj.normalize())
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"cannot hash value of type {type(obj).__name__}")


def _canonical(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_encode_value)


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def to_json_safe(data: dict) -> dict:
    """Return ``data`` as plain JSON types, ready for a JSON column."""
    return json.loads(_canonical(data))


def hash_payload(payload: dict) -> str:
    return _sha256(_canonical(payload))


def hash_audit_event(
    entity_type: str,
    entity_id: str,
    action: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """
    Chain hash of one audit event.

    Links the event to its predecessor through ``prev_hash``; the first
    event of the chain links to a fixed genesis marker.
    """
    return _sha256(
        "|".join((entity_type, str(entity_id), action, payload_hash, prev_hash or GENESIS_MARKER))
    )
