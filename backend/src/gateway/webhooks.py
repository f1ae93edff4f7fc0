"""
Inbound webhook authentication.

Shopify signs each webhook with HMAC-SHA256 over the raw request body using
the app's shared secret and sends the base64 digest in X-Shopify-Hmac-Sha256.

SECURITY:
- Verification runs over the raw bytes, before any JSON parsing
- Comparison is constant-time (hmac.compare_digest)
- A missing secret fails closed unless the deployment explicitly opts into
  ACCEPT_WITH_WARNING outside production
- Secrets and signatures are never logged

Usage:
    verifier = WebhookVerifier(MissingSecretPolicy.REJECT)
    body = await request.body()
    verifier.require_valid(body, request.headers.get("X-Shopify-Hmac-Sha256"), secret)
"""

import base64
import hashlib
import hmac
import logging
from enum import Enum
from typing import Optional, Union

from src.gateway.errors import SignatureMismatch

logger = logging.getLogger(__name__)

PRODUCTION_ENVIRONMENTS = ("production", "prod")


class MissingSecretPolicy(str, Enum):
    """What to do with a webhook when no shared secret is configured."""
    REJECT = "reject"
    ACCEPT_WITH_WARNING = "accept"


class WebhookConfigurationError(Exception):
    """Raised at startup when the webhook policy is not allowed in this environment."""
    pass


def resolve_missing_secret_policy(
    requested: Optional[str],
    app_env: Optional[str],
) -> MissingSecretPolicy:
    """
    Resolve the configured missing-secret policy.

    Defaults to REJECT. Accepting unsigned payloads is a development aid and
    is refused in production.

    Raises:
        WebhookConfigurationError: accept requested in production, or an
            unknown policy value
    """
    if not requested:
        return MissingSecretPolicy.REJECT

    try:
        policy = MissingSecretPolicy(requested.strip().lower())
    except ValueError:
        raise WebhookConfigurationError(
            f"Unknown webhook missing-secret policy: {requested!r} (expected 'reject' or 'accept')"
        )

    if policy == MissingSecretPolicy.ACCEPT_WITH_WARNING and (app_env or "").lower() in PRODUCTION_ENVIRONMENTS:
        raise WebhookConfigurationError(
            "WEBHOOK_MISSING_SECRET_POLICY=accept is not allowed when APP_ENV is production"
        )

    return policy


class WebhookVerifier:
    """Verifies base64 HMAC-SHA256 webhook signatures."""

    def __init__(self, missing_secret_policy: MissingSecretPolicy = MissingSecretPolicy.REJECT):
        self.missing_secret_policy = missing_secret_policy

    @staticmethod
    def compute_signature(raw_body: bytes, shared_secret: str) -> str:
        """Return the base64 HMAC-SHA256 digest of raw_body."""
        digest = hmac.new(
            shared_secret.encode("utf-8"),
            raw_body,
            hashlib.sha256,
        ).digest()
        return base64.b64encode(digest).decode("utf-8")

    def verify(
        self,
        raw_body: Union[bytes, bytearray],
        provided_signature: Optional[str],
        shared_secret: Optional[str],
    ) -> bool:
        """
        Check a webhook signature.

        Args:
            raw_body: Request body exactly as received
            provided_signature: Signature header value as received (may be missing)
            shared_secret: Configured shared secret (may be missing)

        Returns:
            True if the payload is authentic, or if no secret is configured
            and the policy is ACCEPT_WITH_WARNING
        """
        if not shared_secret:
            if self.missing_secret_policy == MissingSecretPolicy.ACCEPT_WITH_WARNING:
                logger.warning(
                    "Webhook accepted without verification: no shared secret configured",
                    extra={"body_bytes": len(raw_body)}
                )
                return True
            logger.error("Webhook rejected: no shared secret configured")
            return False

        if not provided_signature:
            return False

        expected = self.compute_signature(bytes(raw_body), shared_secret)
        return hmac.compare_digest(expected.encode("utf-8"), provided_signature.encode("utf-8"))

    def require_valid(
        self,
        raw_body: Union[bytes, bytearray],
        provided_signature: Optional[str],
        shared_secret: Optional[str],
        provider: str = "shopify",
    ) -> None:
        """
        Verify or raise.

        Raises:
            SignatureMismatch: If verify() returns False
        """
        if not self.verify(raw_body, provided_signature, shared_secret):
            raise SignatureMismatch(
                "Webhook signature verification failed",
                provider=provider,
                details={"signature_present": provided_signature is not None},
            )
