"""Tests for signature payload canonicalization and digests."""

from __future__ import annotations

import hashlib
from collections import OrderedDict

import pytest

from gxp_compliance.core.crypto.canonicalization import (
    canonicalize_signature_payload,
    digests_match,
    signature_digest,
)


def test_top_level_keys_are_sorted_and_compact() -> None:
    payload = {"user_id": "U1", "type": "training_completion", "enrollment_id": "E1"}
    assert canonicalize_signature_payload(payload) == (
        b'{"enrollment_id":"E1","type":"training_completion","user_id":"U1"}'
    )


def test_digest_is_deterministic_and_order_invariant_at_top_level() -> None:
    left = {"b": 2, "a": 1, "c": [3, 2, 1]}
    right = OrderedDict([("c", [3, 2, 1]), ("a", 1), ("b", 2)])

    assert signature_digest(left) == signature_digest(left)
    assert signature_digest(left) == signature_digest(right)


def test_digest_is_lowercase_sha256_hex() -> None:
    payload = {"a": 1}
    expected = hashlib.sha256(b'{"a":1}').hexdigest()
    assert signature_digest(payload) == expected
    assert len(expected) == 64
    assert expected == expected.lower()


def test_nested_key_order_is_preserved() -> None:
    first = {"browser_info": {"platform": "MacIntel", "language": "en-US"}}
    second = {"browser_info": {"language": "en-US", "platform": "MacIntel"}}

    assert canonicalize_signature_payload(first) == (
        b'{"browser_info":{"platform":"MacIntel","language":"en-US"}}'
    )
    assert signature_digest(first) != signature_digest(second)


def test_non_ascii_is_kept_as_utf8() -> None:
    payload = {"signer_name": "Zoë Müller"}
    assert canonicalize_signature_payload(payload) == (
        '{"signer_name":"Zoë Müller"}'.encode()
    )


def test_non_mapping_payload_is_rejected() -> None:
    with pytest.raises(TypeError):
        canonicalize_signature_payload(["not", "a", "mapping"])  # type: ignore[arg-type]


def test_unserializable_value_is_rejected() -> None:
    with pytest.raises(TypeError):
        signature_digest({"when": object()})


def test_nan_is_rejected() -> None:
    with pytest.raises(ValueError):
        signature_digest({"score": float("nan")})


def test_digests_match() -> None:
    digest = signature_digest({"a": 1})
    assert digests_match(digest, signature_digest({"a": 1})) is True
    assert digests_match(digest, signature_digest({"a": 2})) is False
    assert digests_match(digest, "") is False
