"""Canonicalization and digesting of electronic signature payloads.

The canonical form sorts only the **top-level** keys of the payload before
JSON encoding. Nested mappings keep the key order they were built with, so
stored payloads must round-trip through an order-preserving column type.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import Mapping
from typing import Any

SHA256_ALGORITHM = "sha-256"
CANONICALIZATION_SHALLOW_SORTED_JSON = "shallow-sorted-json-v1"


def canonicalize_signature_payload(payload: Mapping[str, Any]) -> bytes:
    """Return the canonical UTF-8 bytes for a signature payload.

    Raises ``TypeError`` for non-mapping payloads or values that cannot be
    JSON encoded, and ``ValueError`` for NaN or infinite floats.
    """
    if not isinstance(payload, Mapping):
        raise TypeError(f"signature payload must be a mapping, got {type(payload).__name__}")
    ordered = {key: payload[key] for key in sorted(payload)}
    return json.dumps(
        ordered,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def signature_digest(payload: Mapping[str, Any]) -> str:
    """Compute the lowercase hex SHA-256 digest of a signature payload."""
    return hashlib.sha256(canonicalize_signature_payload(payload)).hexdigest()


def digests_match(expected: str, actual: str) -> bool:
    """Compare two hex digests in constant time."""
    return hmac.compare_digest(expected.encode("utf-8"), actual.encode("utf-8"))
