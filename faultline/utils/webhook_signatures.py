"""
HMAC-SHA256 signatures for outbound webhooks.

The signature covers the exact request body bytes and travels as a lowercase
hex digest in the X-Webhook-Signature header. Receivers may send it back
with a "sha256=" prefix; verify_signature accepts both forms.
"""
import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(
    body: bytes,
    secret: str,
    signature: str,
    header_prefix: str = "sha256=",
) -> bool:
    """
    Constant-time check of a hex HMAC-SHA256 signature.
    Returns False for a missing secret or signature.
    """
    if not secret or not signature:
        return False

    sig = signature
    if sig.startswith(header_prefix):
        sig = sig[len(header_prefix):]

    expected = compute_signature(body, secret)
    return hmac.compare_digest(expected, sig.lower())


def compute_payload_hash(body: bytes) -> str:
    """SHA-256 of the raw payload, for audit logging."""
    return hashlib.sha256(body).hexdigest()
