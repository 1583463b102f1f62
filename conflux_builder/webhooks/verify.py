"""GitHub webhook signature verification."""

import hashlib
import hmac

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, payload: bytes) -> str:
    """Return the ``X-Hub-Signature-256`` value GitHub sends for a payload."""
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(secret: str, payload: bytes, signature_header: str | None) -> bool:
    """Check a webhook payload against its HMAC-SHA256 signature.

    Unsigned payloads, and any payload when no secret is configured, fail
    verification.

    Args:
        secret: Shared webhook secret.
        payload: Raw request body, exactly as received.
        signature_header: Value of the ``X-Hub-Signature-256`` header.

    Returns:
        True if the signature matches.
    """
    if not secret or not signature_header:
        return False
    if not signature_header.startswith(SIGNATURE_PREFIX):
        return False
    return hmac.compare_digest(compute_signature(secret, payload), signature_header)


__all__ = ["compute_signature", "verify_signature"]
