"""
Webhook signature primitives.

Twilio signs the full callback URL followed by the POST params sorted by
name (HMAC-SHA1, base64). OpenPhone, the WhatsApp bridge and our own outbound
webhooks use HMAC-SHA256 hex digests over the raw body.
"""

import base64
import hashlib
import hmac
from collections.abc import Mapping
from typing import Any


def compute_twilio_signature(auth_token: str, url: str, params: Mapping[str, Any]) -> str:
    data = url
    for key in sorted(params.keys()):
        value = params[key]
        if isinstance(value, (list, tuple)):
            for item in value:
                data += f"{key}{item}"
        else:
            data += f"{key}{value}"

    digest = hmac.new(
        auth_token.encode("utf-8"),
        data.encode("utf-8"),
        hashlib.sha1,
    ).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_twilio_signature(
    auth_token: str,
    url: str,
    params: Mapping[str, Any],
    signature: str | None,
) -> bool:
    if not signature:
        return False
    expected = compute_twilio_signature(auth_token, url, params)
    return hmac.compare_digest(expected, signature)


def compute_hmac_sha256_hex(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_hmac_sha256_hex(secret: str, body: bytes, signature: str | None) -> bool:
    """Constant-time check of a hex HMAC-SHA256 body signature."""
    if not signature:
        return False
    expected = compute_hmac_sha256_hex(secret, body)
    candidate = signature.strip()
    if candidate.lower().startswith("sha256="):
        candidate = candidate[len("sha256="):]
    return hmac.compare_digest(expected, candidate.lower())
