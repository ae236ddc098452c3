"""Webhook signature verification — constant-time HMAC.

Security contract:
- All verifications use hmac.compare_digest() (constant-time, no timing attacks)
- Verification failure -> 401 immediately, no payload processing
- Missing secret -> verification always fails (fail-closed)
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-shopify-hmac-sha256"


def compute_signature(body: bytes, secret: str) -> str:
    """Base64 HMAC-SHA256 of the raw body, as sent in X-Shopify-Hmac-SHA256."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_shopify(body: bytes, signature_header: str | None, secret: str) -> bool:
    """Verify a Shopify webhook signature.

    Args:
        body: Raw request body bytes
        signature_header: Value of X-Shopify-Hmac-SHA256 header
        secret: The app's shared secret

    Returns:
        True if signature is valid
    """
    if not secret:
        logger.warning("Shared secret not set — rejecting webhook")
        return False
    if not signature_header:
        return False

    computed = compute_signature(body, secret)
    return hmac.compare_digest(computed.encode("utf-8"), signature_header.encode("utf-8"))


def verify_webhook(body: bytes, headers: dict[str, str], secret: str) -> bool:
    """Verify a delivery given its lowercase-keyed headers."""
    return verify_shopify(body, headers.get(SIGNATURE_HEADER), secret)
