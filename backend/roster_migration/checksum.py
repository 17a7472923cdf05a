"""
Integrity fingerprints for backup snapshots.

Intent:
    Turn arbitrary JSON-compatible data into one canonical byte sequence and
    fingerprint it with SHA-256. Identical data yields identical bytes (and
    digests) across processes; the digest is an integrity check, not a
    security boundary.
"""
from __future__ import annotations

import json
from hashlib import sha256 as _sha256
from typing import Any


def canonical_bytes(obj: Any) -> bytes:
    """Serialize `obj` as compact, key-sorted UTF-8 JSON."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def checksum(data: bytes) -> str:
    """Return the lowercase hex SHA-256 digest of `data`."""
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError("checksum expects bytes")
    return _sha256(bytes(data)).hexdigest()


__all__ = ["canonical_bytes", "checksum"]
