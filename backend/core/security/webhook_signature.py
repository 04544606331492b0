"""
Webhook signature verification.

LemonSqueezy signs every delivery with a hex HMAC-SHA256 of the raw request
body, sent in the ``X-Signature`` header.
"""

import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)


def compute_webhook_signature(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw payload."""
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=payload,
        digestmod=hashlib.sha256,
    ).hexdigest()


def verify_webhook_signature(payload: bytes, signature: str | None, secret: str | None) -> bool:
    """
    Verify a webhook signature against the raw, unparsed request body.

    Never raises: a missing secret, a missing signature or any internal
    error counts as a failed verification.

    Args:
        payload: Raw request body bytes
        signature: Value of the X-Signature header
        secret: Shared webhook signing secret

    Returns:
        True if the signature matches, False otherwise
    """
    if not secret:
        logger.error("Webhook secret not configured; rejecting delivery")
        return False
    if not signature:
        return False

    try:
        expected = compute_webhook_signature(payload, secret)
        claimed = signature

        # compare_digest needs equal-length inputs to be meaningful
        if len(claimed) != len(expected):
            return False

        return hmac.compare_digest(expected.encode("ascii"), claimed.encode("ascii"))
    except (TypeError, ValueError, UnicodeError) as e:
        logger.warning("Webhook signature check failed: %s", type(e).__name__)
        return False
