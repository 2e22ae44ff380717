"""
Webhook signature validation - verify incoming SafeHaven webhooks are authentic.

SafeHaven signs the raw request body with HMAC-SHA256 using the shared webhook
secret and sends the lowercase hex digest in the signature header.

Fail secure: an unconfigured secret, an empty input, or any error while
computing the digest all mean "reject".
"""
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def compute_hmac_sha256(secret: str, body: bytes) -> str:
    """Lowercase hex HMAC-SHA256 of the exact body bytes."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def constant_time_equals(expected: str, provided: str) -> bool:
    """
    Compare two signatures without short-circuiting on the first mismatch.
    hmac.compare_digest scans the full input, so cost depends on length only.
    """
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def compute_payload_hash(body: bytes) -> str:
    """Compute SHA-256 hash of raw payload for audit logging."""
    return hashlib.sha256(body).hexdigest()


class WebhookSignatureValidator:
    """HMAC-SHA256 validator bound to one shared secret."""

    def __init__(self, secret: Optional[str]):
        self._secret = secret or ""

    def is_configured(self) -> bool:
        return bool(self._secret)

    def validate(self, body: Optional[bytes], signature: Optional[str]) -> bool:
        """
        Returns True only if signature is the HMAC-SHA256 hex digest of body.
        Returns False if invalid, if the secret is unset, or on error.
        """
        if not self._secret:
            logger.warning("Webhook secret is not configured - rejecting signature")
            return False

        if not body or not signature:
            logger.warning("Empty payload or signature provided for validation")
            return False

        try:
            expected = compute_hmac_sha256(self._secret, body)
            is_valid = constant_time_equals(expected, signature)
        except Exception as e:
            logger.error("HMAC-SHA256 validation error: %s", str(e))
            return False

        if not is_valid:
            # Never log the expected digest
            logger.warning(
                "Webhook signature mismatch (payload sha256=%s)",
                compute_payload_hash(body)[:16],
            )
        return is_valid


def build_signature_validator() -> WebhookSignatureValidator:
    """Validator configured from settings."""
    from safehaven.config import get_settings
    return WebhookSignatureValidator(get_settings().safehaven_webhook_secret)
