from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import re

logger = logging.getLogger(__name__)

_CANDIDATE_KEY = re.compile(r"^v\d+$")


def parse_signature_header(header: str) -> tuple[str | None, list[str]]:
    """Split ``t=<ts>,v1=<hex>[,v2=<hex>...]`` into the timestamp and candidate signatures."""
    timestamp: str | None = None
    candidates: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        key, value = key.strip(), value.strip()
        if key == "t":
            timestamp = value
        elif _CANDIDATE_KEY.match(key) and value:
            candidates.append(value)
    return timestamp, candidates


def _pad(value: str) -> str:
    return value + "=" * (-len(value) % 4)


def secret_keys(secret: str) -> list[bytes]:
    """The shared secret may be stored as UTF-8, standard base64 or URL-safe base64."""
    keys = [secret.encode("utf-8")]
    for decode in (base64.b64decode, base64.urlsafe_b64decode):
        try:
            decoded = decode(_pad(secret))
        except (binascii.Error, ValueError):
            continue
        if decoded and decoded not in keys:
            keys.append(decoded)
    return keys


def compute_signature(key: bytes, timestamp: str, raw_body: bytes) -> str:
    return hmac.new(key, f"{timestamp}.".encode("utf-8") + raw_body, hashlib.sha256).hexdigest()


def verify_signature(header: str | None, raw_body: bytes, secret: str) -> bool:
    if not header or not secret:
        return False
    timestamp, candidates = parse_signature_header(header)
    if timestamp is None or not candidates:
        logger.warning("webhook signature header missing t or v1")
        return False
    for key in secret_keys(secret):
        expected = compute_signature(key, timestamp, raw_body)
        if any(hmac.compare_digest(expected, candidate) for candidate in candidates):
            return True
    logger.warning("webhook signature mismatch (received %s...)", candidates[0][:8])
    return False
