"""HMAC signatures for billing events posted by the webhook adapter."""
from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Optional

SIGNATURE_HEADER = "X-Credits-Signature"


class SignatureConfigurationError(Exception):
    """Raised when no signing secret is configured."""


def sign_event_payload(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_event_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Constant-time check of a base64 HMAC-SHA256 signature over the raw request body."""

    if not secret:
        raise SignatureConfigurationError("BILLING_EVENT_SECRET is not configured.")
    if not signature:
        return False
    expected = sign_event_payload(body or b"", secret)
    return hmac.compare_digest(expected, signature.strip())
