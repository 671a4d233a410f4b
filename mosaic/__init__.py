"""
Mosaic - billing ledger service for the Mosaic children's-story app.

Consumes Stripe, RevenueCat and App Store webhooks and converges a per-user
entitlement and listen-credit ledger.

Key Features:
    - Signature-verified webhooks for three billing providers
    - Idempotent, atomic ledger updates (exactly-once effect per event id)
    - Recurring subscription bonus and one-time credit packs
    - Derived subscription state for the app

Example:
    >>> from mosaic import get_settings
    >>> settings = get_settings()
    >>> print(settings.credits.recurring_bonus)
"""

from mosaic.config import get_settings

__all__ = ["get_settings"]
