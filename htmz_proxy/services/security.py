"""
Security service - canonical request serialization and HMAC signature validation.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Mapping, Optional

# Field order of the canonical descriptor. Browser clients sign
# JSON.stringify({url, method, headers, body}), which this must reproduce.
CANONICAL_FIELDS = ("url", "method", "headers", "body")


def canonical_json(descriptor: Mapping[str, Any]) -> bytes:
    """
    Serialize a request descriptor to its canonical signed form.

    Keys are emitted in the fixed order url, method, headers, body; a missing
    `headers` becomes {} and a missing `body` becomes null. Separators are
    compact and non-ASCII characters are written literally, matching
    JSON.stringify. Nested objects keep the key order they arrived in.
    """
    canonical = {
        "url": descriptor.get("url"),
        "method": descriptor.get("method"),
        "headers": descriptor.get("headers") or {},
        "body": descriptor.get("body"),
    }
    return json.dumps(canonical, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sign_descriptor(descriptor: Mapping[str, Any], secret: bytes) -> str:
    """Compute the hex HMAC-SHA256 signature a caller sends in X-Signature."""
    return hmac.new(secret, canonical_json(descriptor), hashlib.sha256).hexdigest()


def validate_signature(body: bytes, signature: str, secret: bytes) -> bool:
    """
    Validate HMAC-SHA256 signature of raw bytes.
    Uses timing-safe comparison to prevent timing attacks.

    Returns False for malformed or invalid signatures instead of raising exceptions.
    """
    try:
        presented = bytes.fromhex(signature)
    except (ValueError, TypeError):
        # Malformed signature string
        return False
    expected = hmac.new(secret, body, hashlib.sha256).digest()
    return hmac.compare_digest(expected, presented)


def verify_descriptor(
    descriptor: Mapping[str, Any],
    signature: Optional[str],
    secret: Optional[bytes],
) -> bool:
    """Verify a descriptor's signature. Fails closed on any missing input."""
    if not signature or not secret:
        return False
    try:
        canonical = canonical_json(descriptor)
    except UnicodeEncodeError:
        # Unpaired surrogates have no UTF-8 form to sign
        return False
    return validate_signature(canonical, signature, secret)


def verify_payload(
    body: bytes,
    descriptor: Mapping[str, Any],
    signature: Optional[str],
    secret: Optional[bytes],
) -> bool:
    """
    Verify a received request body.

    Browser clients send the exact text they signed, so the raw bytes are
    checked first. Only bodies that were re-encoded on the way (reordered
    keys, extra whitespace) fall back to the canonical form, where numbers
    are rendered by Python and may differ from JSON.stringify.
    """
    if not signature or not secret:
        return False
    if validate_signature(body, signature, secret):
        return True
    return verify_descriptor(descriptor, signature, secret)
