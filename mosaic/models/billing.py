"""
Canonical billing event and ledger mutation models.

Every provider payload (Stripe, RevenueCat, App Store) is normalized into a
BillingEvent. The reconciliation engine turns a BillingEvent plus the current
ledger row into a LedgerMutation, which the storage layer applies atomically.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class BillingProvider(str, Enum):
    """Billing providers that deliver webhooks."""

    STRIPE = "stripe"
    REVENUECAT = "revenuecat"
    APPSTORE = "appstore"


class EventKind(str, Enum):
    """
    Closed set of entitlement-relevant event kinds.

    UNKNOWN is the explicit variant for anything unrecognized; the provider's
    raw string travels alongside it in BillingEvent.raw_kind.
    """

    INITIAL_PURCHASE = "INITIAL_PURCHASE"
    RENEWAL = "RENEWAL"
    UNCANCELLATION = "UNCANCELLATION"
    NON_RENEWING_PURCHASE = "NON_RENEWING_PURCHASE"
    SUBSCRIPTION_EXTENDED = "SUBSCRIPTION_EXTENDED"
    TEMPORARY_ENTITLEMENT_GRANT = "TEMPORARY_ENTITLEMENT_GRANT"
    CANCELLATION = "CANCELLATION"
    EXPIRATION = "EXPIRATION"
    SUBSCRIPTION_PAUSED = "SUBSCRIPTION_PAUSED"
    BILLING_ISSUE = "BILLING_ISSUE"
    PRODUCT_CHANGE = "PRODUCT_CHANGE"
    REFUND = "REFUND"
    REFUND_REVERSED = "REFUND_REVERSED"
    CONSUMABLE_PURCHASE = "CONSUMABLE_PURCHASE"
    TRANSFER = "TRANSFER"
    INVOICE_ISSUANCE = "INVOICE_ISSUANCE"
    TEST = "TEST"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: str | None) -> "EventKind":
        """Map a provider event type string onto a kind (UNKNOWN if unrecognized)."""
        if not raw:
            return cls.UNKNOWN
        try:
            kind = cls(raw.strip().upper())
        except ValueError:
            return cls.UNKNOWN
        return kind


@dataclass(frozen=True)
class UserIdentity:
    """Identifiers a payload carries for the user it concerns, in lookup order."""

    app_user_id: str | None = None
    original_app_user_id: str | None = None
    email: str | None = None
    stripe_customer_id: str | None = None
    apple_original_transaction_id: str | None = None

    @property
    def app_user_ids(self) -> list[str]:
        """Distinct app-user-id candidates, most specific first."""
        candidates = []
        for value in (self.app_user_id, self.original_app_user_id):
            if value and value not in candidates:
                candidates.append(value)
        return candidates

    def is_empty(self) -> bool:
        return not (
            self.app_user_ids
            or self.email
            or self.stripe_customer_id
            or self.apple_original_transaction_id
        )


@dataclass(frozen=True)
class BillingEvent:
    """Provider-independent view of one webhook delivery. Never persisted."""

    provider: BillingProvider
    kind: EventKind
    raw_kind: str
    event_id: str | None = None
    identity: UserIdentity = field(default_factory=UserIdentity)
    product_id: str | None = None
    expires_at: datetime | None = None
    entitlement_active: bool | None = None
    subscription_id: str | None = None
    consumable_credits: int | None = None


class ExpiryUpdate(str, Enum):
    """How a mutation treats the stored premium expiry."""

    KEEP = "keep"
    EXTEND = "extend"  # only ever moves the expiry forward
    REPLACE = "replace"  # revoking kinds may move it backward


@dataclass
class LedgerMutation:
    """
    Field assignments and increments to apply atomically to one ledger row.

    bonus_credits is conditional: the store grants it only while the row's
    active_subscription_id still differs from bonus_guard_subscription_id.
    consumable_credits is unconditional.
    """

    user_id: str | None
    assignments: dict[str, Any] = field(default_factory=dict)
    expires_at: datetime | None = None
    expiry_update: ExpiryUpdate = ExpiryUpdate.KEEP
    bonus_credits: int = 0
    bonus_guard_subscription_id: str | None = None
    consumable_credits: int = 0
    notes: list[str] = field(default_factory=list)

    @classmethod
    def empty(cls, note: str) -> "LedgerMutation":
        return cls(user_id=None, notes=[note])

    def is_empty(self) -> bool:
        return (
            self.user_id is None
            or (
                not self.assignments
                and self.expiry_update == ExpiryUpdate.KEEP
                and self.bonus_credits == 0
                and self.consumable_credits == 0
            )
        )


class MarkResult(str, Enum):
    """Outcome of claiming an event id."""

    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"


@dataclass(frozen=True)
class ProcessedEventRecord:
    """Row of the processed_events table."""

    event_id: str
    provider: str
    created_at: datetime
