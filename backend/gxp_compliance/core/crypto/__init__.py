"""
Integrity primitives for electronic signature records.

- **canonicalization**: shallow canonical JSON and SHA-256 payload digests
"""

from gxp_compliance.core.crypto.canonicalization import (
    CANONICALIZATION_SHALLOW_SORTED_JSON,
    SHA256_ALGORITHM,
    canonicalize_signature_payload,
    digests_match,
    signature_digest,
)

__all__ = [
    "canonicalize_signature_payload",
    "signature_digest",
    "digests_match",
    "CANONICALIZATION_SHALLOW_SORTED_JSON",
    "SHA256_ALGORITHM",
]
