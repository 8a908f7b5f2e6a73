from __future__ import annotations

import base64

import pytest

from farebridge.webhooks.signature import parse_signature_header, secret_keys, verify_signature
from fakes import signature_header

RAW_SECRET = b"\x8f\x01farebridge-signing-key\xfe\xff"
BODY = b'{"id":"wev_0001","type":"order.created","data":{"object":{"id":"ord_0001"}}}'


def _encodings() -> list[str]:
    return [
        "plain-utf8-secret",
        base64.b64encode(RAW_SECRET).decode("ascii"),
        base64.urlsafe_b64encode(RAW_SECRET).decode("ascii"),
        base64.urlsafe_b64encode(RAW_SECRET).decode("ascii").rstrip("="),
    ]


def _key_for(secret: str) -> bytes:
    return secret.encode("utf-8") if secret == "plain-utf8-secret" else RAW_SECRET


@pytest.mark.parametrize("secret", _encodings())
def test_signature_verifies_for_each_secret_encoding(secret: str) -> None:
    header = signature_header(_key_for(secret), BODY)
    assert verify_signature(header, BODY, secret)


def test_any_candidate_signature_may_match() -> None:
    good = signature_header(RAW_SECRET, BODY).split(",")[1].split("=", 1)[1]
    header = f"t=1700000000,v1={'0' * 64},v2={good}"
    assert verify_signature(header, BODY, base64.b64encode(RAW_SECRET).decode("ascii"))


def test_body_mutation_fails() -> None:
    secret = "plain-utf8-secret"
    header = signature_header(secret.encode(), BODY)
    for index in (0, len(BODY) // 2, len(BODY) - 1):
        mutated = bytearray(BODY)
        mutated[index] ^= 0x01
        assert not verify_signature(header, bytes(mutated), secret)


def test_timestamp_mutation_fails() -> None:
    secret = "plain-utf8-secret"
    header = signature_header(secret.encode(), BODY, timestamp="1700000000")
    assert not verify_signature(header.replace("t=1700000000", "t=1700000001"), BODY, secret)


def test_signature_mutation_fails() -> None:
    secret = "plain-utf8-secret"
    header = signature_header(secret.encode(), BODY)
    prefix, digest = header.rsplit("=", 1)
    flipped = ("1" if digest[0] != "1" else "2") + digest[1:]
    assert not verify_signature(f"{prefix}={flipped}", BODY, secret)
    assert not verify_signature(f"{prefix}={digest.upper()}", BODY, secret)


def test_wrong_secret_and_missing_parts_fail() -> None:
    header = signature_header(b"another-secret", BODY)
    assert not verify_signature(header, BODY, "plain-utf8-secret")
    assert not verify_signature(None, BODY, "plain-utf8-secret")
    assert not verify_signature("v1=abc", BODY, "plain-utf8-secret")
    assert not verify_signature("t=1700000000", BODY, "plain-utf8-secret")
    assert not verify_signature(header, BODY, "")


def test_header_parsing_collects_versioned_candidates() -> None:
    timestamp, candidates = parse_signature_header(" t=123 , v1=aa, v3=bb, x=cc, v1=")
    assert timestamp == "123"
    assert candidates == ["aa", "bb"]


def test_secret_keys_include_decoded_forms() -> None:
    keys = secret_keys(base64.urlsafe_b64encode(RAW_SECRET).decode("ascii").rstrip("="))
    assert RAW_SECRET in keys
