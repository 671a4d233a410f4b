"""
Webhook authenticity checks for billing providers.

Security:
- RevenueCat / App Store: HMAC-SHA256 of the raw body, hex encoded
- Stripe: Stripe-Signature header (t=...,v1=...) checked with the stripe SDK,
  which also enforces timestamp freshness (replay protection)
- All comparisons are constant-time

A provider without a configured secret runs in insecure mode (checks skipped)
unless enforce_signatures is set, in which case it fails closed.
"""

import hashlib
import hmac
import logging
from collections.abc import Mapping
from enum import Enum

import stripe

from mosaic.config import BillingConfig
from mosaic.models.billing import BillingProvider

logger = logging.getLogger(__name__)

REVENUECAT_SIGNATURE_HEADERS = ("x-revenuecat-signature", "revenuecat-signature", "signature")
APPSTORE_SIGNATURE_HEADERS = ("x-appstore-signature",)
STRIPE_SIGNATURE_HEADER = "stripe-signature"


class VerificationResult(str, Enum):
    VALID = "valid"
    SKIPPED = "skipped"
    INVALID = "invalid"


def compute_hmac_signature(secret: str, body: bytes) -> str:
    """Hex-encoded HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _first_header(headers: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    for name in names:
        value = headers.get(name)
        if value:
            return value.strip()
    return None


class SignatureVerifier:
    """
    Verifies inbound billing webhooks against per-provider secrets.

    Never raises for bad input: every failure is reported as INVALID.
    """

    def __init__(self, config: BillingConfig):
        """
        Initialize verifier.

        Args:
            config: Billing configuration holding provider secrets
        """
        self.config = config

    def verify(
        self,
        provider: BillingProvider,
        body: bytes,
        headers: Mapping[str, str],
    ) -> VerificationResult:
        """
        Check a webhook delivery.

        Args:
            provider: Provider the route belongs to
            body: Raw request body, exactly as received
            headers: Request headers (any case)

        Returns:
            VerificationResult: VALID, SKIPPED (insecure mode) or INVALID
        """
        headers = {key.lower(): value for key, value in headers.items()}

        if not self.config.is_secured(provider.value):
            if self.config.enforce_signatures:
                logger.error(
                    "Rejecting webhook: no secret configured and signatures are enforced",
                    extra={"provider": provider.value},
                )
                return VerificationResult.INVALID
            return VerificationResult.SKIPPED

        if provider == BillingProvider.STRIPE:
            return self._verify_stripe(body, headers)
        if provider == BillingProvider.REVENUECAT:
            return self._verify_revenuecat(body, headers)
        return self._verify_hmac(
            provider, self.config.appstore_webhook_secret, body, headers, APPSTORE_SIGNATURE_HEADERS
        )

    def _verify_stripe(self, body: bytes, headers: dict[str, str]) -> VerificationResult:
        header = headers.get(STRIPE_SIGNATURE_HEADER)
        if not header:
            logger.warning("Stripe webhook missing Stripe-Signature header")
            return VerificationResult.INVALID

        try:
            payload = body.decode("utf-8")
        except UnicodeDecodeError:
            return VerificationResult.INVALID

        try:
            stripe.WebhookSignature.verify_header(
                payload,
                header,
                self.config.stripe_webhook_secret,
                tolerance=self.config.stripe_signature_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("Stripe signature verification failed", extra={"reason": str(e)})
            return VerificationResult.INVALID

        return VerificationResult.VALID

    def _verify_revenuecat(self, body: bytes, headers: dict[str, str]) -> VerificationResult:
        expected_auth = self.config.revenuecat_webhook_auth
        if expected_auth:
            supplied = headers.get("authorization", "")
            if not (
                hmac.compare_digest(supplied.encode(), expected_auth.encode())
                or hmac.compare_digest(supplied.encode(), f"Bearer {expected_auth}".encode())
            ):
                logger.warning("RevenueCat webhook Authorization header mismatch")
                return VerificationResult.INVALID

        if not self.config.revenuecat_webhook_secret:
            return VerificationResult.VALID

        return self._verify_hmac(
            BillingProvider.REVENUECAT,
            self.config.revenuecat_webhook_secret,
            body,
            headers,
            REVENUECAT_SIGNATURE_HEADERS,
        )

    def _verify_hmac(
        self,
        provider: BillingProvider,
        secret: str,
        body: bytes,
        headers: dict[str, str],
        header_names: tuple[str, ...],
    ) -> VerificationResult:
        signature = _first_header(headers, header_names)
        if not signature:
            logger.warning("Webhook missing signature header", extra={"provider": provider.value})
            return VerificationResult.INVALID

        # Some relays prefix the digest with the algorithm name
        if signature.lower().startswith("sha256="):
            signature = signature.split("=", 1)[1]

        expected = compute_hmac_signature(secret, body)
        if not hmac.compare_digest(signature.lower().encode(), expected.encode()):
            logger.warning("Webhook signature mismatch", extra={"provider": provider.value})
            return VerificationResult.INVALID

        return VerificationResult.VALID
