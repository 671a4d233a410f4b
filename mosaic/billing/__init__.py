"""
Billing webhook processing.

Pipeline components:
- signature.py: per-provider authenticity checks
- normalizer.py: provider payloads -> canonical BillingEvent
- reconciliation.py: pure event + ledger row -> LedgerMutation
- idempotency.py: processed event tracking
- observers.py: post-commit metrics and analytics
- webhooks.py: the end-to-end processor
"""

from mosaic.billing.normalizer import EventNormalizer
from mosaic.billing.reconciliation import reconcile
from mosaic.billing.signature import SignatureVerifier, VerificationResult
from mosaic.billing.webhooks import BillingWebhookProcessor, WebhookError

__all__ = [
    "BillingWebhookProcessor",
    "EventNormalizer",
    "SignatureVerifier",
    "VerificationResult",
    "WebhookError",
    "reconcile",
]
