"""
Webhook signature verification.

The provider signs the raw request body with HMAC-SHA256 using the
shared webhook secret and sends the hex digest in `X-Signature`. The
digest casing is not stable on the provider side, so both sides are
lower-cased before comparing.

Always verify the exact bytes received. Parsing and re-serializing the
JSON body changes its bytes and invalidates the digest.
"""

import hashlib
import hmac


class SignatureConfigError(RuntimeError):
    """Raised when no signing secret is configured on this server."""


def compute_signature(secret: str, body: bytes) -> str:
    """Return the lower-case hex HMAC-SHA256 of `body` keyed by `secret`."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """
    Verify a provider signature against the raw request body.

    Args:
        secret: Shared webhook secret from settings
        body: Raw request body bytes, exactly as received
        signature: Value of the `X-Signature` header

    Returns:
        bool: True if the signature matches, ignoring hex casing

    Raises:
        SignatureConfigError: If `secret` is empty
    """
    if not secret:
        raise SignatureConfigError("SAHHA_WEBHOOK_SECRET is not configured")
    if not signature:
        return False
    computed = compute_signature(secret, body)
    return hmac.compare_digest(
        computed.encode(), signature.lower().encode("utf-8")
    )
