"""
User ledger models.

Each user owns exactly one ledger row: entitlement flags, the listen-credit
balance and weak back-references to billing provider identifiers.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class EntitlementState(str, Enum):
    """Derived subscription state of a ledger row (never stored)."""

    FREE = "free"
    PREMIUM_ACTIVE = "premium_active"
    PREMIUM_CANCELLED_PENDING_EXPIRY = "premium_cancelled_pending_expiry"
    PREMIUM_PAUSED = "premium_paused"
    PREMIUM_BILLING_ISSUE = "premium_billing_issue"
    EXPIRED = "expired"


def _validate_email(v: str) -> str:
    if "@" not in v or "." not in v.split("@")[-1]:
        raise ValueError("Invalid email format")
    return v.strip().lower()


class User(BaseModel):
    """
    Per-user ledger row.

    Invariant: is_premium implies a future premium_expires_at or a provider
    reporting an active entitlement.
    """

    # Identity
    user_id: str = Field(..., min_length=1, max_length=64)
    email: str = Field(..., description="Primary contact email (secondary lookup key)")
    name: str | None = Field(default=None, max_length=200)

    # Billing back-references (lookup only)
    billing_app_user_id: str | None = Field(default=None, description="RevenueCat app user id")
    stripe_customer_id: str | None = Field(default=None)
    stripe_subscription_id: str | None = Field(default=None)
    apple_original_transaction_id: str | None = Field(default=None)

    # Entitlement
    is_premium: bool = Field(default=False)
    premium_expires_at: datetime | None = Field(default=None)
    is_paused: bool = Field(default=False)
    is_cancelled: bool = Field(default=False)
    billing_issue: bool = Field(default=False)

    # Consumable balance
    listen_credits: int = Field(default=0, ge=0)

    # Subscription currently granting entitlement
    active_subscription_id: str | None = Field(default=None)
    active_product_id: str | None = Field(default=None)

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def entitlement_state(self, now: datetime | None = None) -> EntitlementState:
        """Classify the row into one of the subscription states."""
        now = now or datetime.now(UTC)
        expired = self.premium_expires_at is not None and self.premium_expires_at <= now

        if self.is_paused:
            return EntitlementState.PREMIUM_PAUSED
        if not self.is_premium:
            if self.premium_expires_at is not None or self.active_subscription_id:
                return EntitlementState.EXPIRED
            return EntitlementState.FREE
        if expired:
            return EntitlementState.EXPIRED
        if self.billing_issue:
            return EntitlementState.PREMIUM_BILLING_ISSUE
        if self.is_cancelled:
            return EntitlementState.PREMIUM_CANCELLED_PENDING_EXPIRY
        return EntitlementState.PREMIUM_ACTIVE

    def has_premium_access(self, now: datetime | None = None) -> bool:
        """Premium access as the app should enforce it right now."""
        return self.entitlement_state(now) in {
            EntitlementState.PREMIUM_ACTIVE,
            EntitlementState.PREMIUM_CANCELLED_PENDING_EXPIRY,
            EntitlementState.PREMIUM_BILLING_ISSUE,
        }


class UserCreate(BaseModel):
    """Schema for creating a user at signup."""

    email: str
    name: str | None = Field(default=None, max_length=200)
    billing_app_user_id: str | None = Field(default=None, max_length=200)

    @field_validator("email")
    @classmethod
    def validate_email_format(cls, v: str) -> str:
        """Basic email validation."""
        return _validate_email(v)
