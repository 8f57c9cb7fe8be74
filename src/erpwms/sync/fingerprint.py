"""
Content fingerprints for change detection.

A fingerprint is the SHA-256 of the canonical JSON form of a value, as 64
lowercase hex characters. Canonical means keys are sorted at every level
and separators are fixed, so two dicts holding the same data always hash
the same regardless of insertion order.

Non-JSON values with an obvious canonical text form (datetime, date,
Decimal, set) are converted; anything else raises TypeError, which is a
bug in the caller rather than a runtime condition.
"""
import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any

FINGERPRINT_LENGTH = 64


def _default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        # 1.50 and 1.5 are the same amount
        return format(value.normalize(), "f")
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    raise TypeError(f"Object of type {type(value).__name__} is not fingerprintable")


def canonical_json(value: Any) -> str:
    """Serialize value to its canonical JSON text."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_default,
    )


def fingerprint(value: Any) -> str:
    """Return the hex SHA-256 digest of value's canonical JSON form."""
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


def fingerprint_bytes(data: bytes) -> str:
    """Return the hex SHA-256 digest of raw bytes (images, attachments)."""
    return hashlib.sha256(data).hexdigest()
