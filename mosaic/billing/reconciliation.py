"""
Reconciliation of billing events against a user's ledger row.

reconcile() is a pure function: (current row, canonical event, credit config,
clock) -> LedgerMutation. It never touches storage and never raises for odd
event shapes; anything surprising is recorded in LedgerMutation.notes.

Rules:
- Entitlement grants extend the expiry, never shorten it. Only revoking kinds
  (REFUND, EXPIRATION, CANCELLATION) may replace it.
- The recurring bonus is granted once per subscription id. The storage layer
  re-checks the guard inside its UPDATE so concurrent deliveries cannot both
  grant it.
- Consumable credits are added for any event that carries them, independent of
  the event kind.
- Premium is never left set with a known-past expiry unless the provider
  reports the entitlement as active.
"""

from collections.abc import Callable
from datetime import UTC, datetime

from mosaic.config import CreditConfig
from mosaic.models.billing import (
    BillingEvent,
    BillingProvider,
    EventKind,
    ExpiryUpdate,
    LedgerMutation,
)
from mosaic.models.user import User

REVOKING_KINDS = frozenset({EventKind.REFUND, EventKind.EXPIRATION, EventKind.CANCELLATION})

Transition = Callable[[User, BillingEvent, LedgerMutation, CreditConfig, datetime], None]


def _grant(
    row: User,
    event: BillingEvent,
    mutation: LedgerMutation,
    credits: CreditConfig,
    clear_billing_issue: bool,
) -> None:
    mutation.assignments.update(is_premium=True, is_paused=False, is_cancelled=False)
    if clear_billing_issue:
        mutation.assignments["billing_issue"] = False

    if event.expires_at is not None:
        mutation.expires_at = event.expires_at
        mutation.expiry_update = ExpiryUpdate.EXTEND

    if event.subscription_id:
        if event.subscription_id != row.active_subscription_id and credits.recurring_bonus > 0:
            mutation.bonus_credits = credits.recurring_bonus
            mutation.bonus_guard_subscription_id = event.subscription_id
        mutation.assignments["active_subscription_id"] = event.subscription_id
    else:
        mutation.notes.append("no subscription id; recurring bonus not granted")

    if event.product_id:
        mutation.assignments["active_product_id"] = event.product_id


def _purchase(row, event, mutation, credits, now) -> None:
    _grant(row, event, mutation, credits, clear_billing_issue=True)


def _entitlement_extension(row, event, mutation, credits, now) -> None:
    _grant(row, event, mutation, credits, clear_billing_issue=False)


def _cancellation(row, event, mutation, credits, now) -> None:
    # Premium remains until the stored expiry passes
    mutation.assignments["is_cancelled"] = True
    if event.expires_at is not None:
        mutation.expires_at = event.expires_at
        mutation.expiry_update = ExpiryUpdate.REPLACE


def _expiration(row, event, mutation, credits, now) -> None:
    mutation.assignments.update(is_premium=False, is_paused=False)
    if event.expires_at is not None:
        mutation.expires_at = event.expires_at
        mutation.expiry_update = ExpiryUpdate.REPLACE


def _paused(row, event, mutation, credits, now) -> None:
    mutation.assignments.update(is_paused=True, is_premium=False)


def _billing_issue(row, event, mutation, credits, now) -> None:
    # Grace period: entitlement is decided by expiry
    mutation.assignments["billing_issue"] = True
    if event.expires_at is not None:
        mutation.expires_at = event.expires_at
        mutation.expiry_update = ExpiryUpdate.EXTEND


def _product_change(row, event, mutation, credits, now) -> None:
    if event.subscription_id:
        mutation.assignments["active_subscription_id"] = event.subscription_id
    if event.product_id:
        mutation.assignments["active_product_id"] = event.product_id


def _refund(row, event, mutation, credits, now) -> None:
    mutation.assignments["is_premium"] = False
    if event.expires_at is not None:
        mutation.expires_at = event.expires_at
        mutation.expiry_update = ExpiryUpdate.REPLACE


def _refund_reversed(row, event, mutation, credits, now) -> None:
    mutation.assignments["is_premium"] = True
    if event.expires_at is not None:
        mutation.expires_at = event.expires_at
        mutation.expiry_update = ExpiryUpdate.EXTEND


def _consumable(row, event, mutation, credits, now) -> None:
    if not event.consumable_credits:
        mutation.notes.append(f"consumable purchase of unmapped product {event.product_id!r}")


def _diagnostic(row, event, mutation, credits, now) -> None:
    mutation.notes.append(f"{event.kind.value} acknowledged without ledger change")


def _unknown(row, event, mutation, credits, now) -> None:
    expiry_known = event.expires_at is not None
    premium_now = (expiry_known and event.expires_at > now) or event.entitlement_active is True

    if premium_now:
        _grant(row, event, mutation, credits, clear_billing_issue=False)
        mutation.notes.append(f"unrecognized event {event.raw_kind!r} treated as entitlement grant")
    elif event.entitlement_active is False or expiry_known:
        mutation.assignments["is_premium"] = False
        mutation.notes.append(f"unrecognized event {event.raw_kind!r} revoked premium")
    else:
        mutation.notes.append(f"unrecognized event {event.raw_kind!r} carried no entitlement data")


TRANSITIONS: dict[EventKind, Transition] = {
    EventKind.INITIAL_PURCHASE: _purchase,
    EventKind.RENEWAL: _purchase,
    EventKind.UNCANCELLATION: _entitlement_extension,
    EventKind.NON_RENEWING_PURCHASE: _entitlement_extension,
    EventKind.SUBSCRIPTION_EXTENDED: _entitlement_extension,
    EventKind.TEMPORARY_ENTITLEMENT_GRANT: _entitlement_extension,
    EventKind.CANCELLATION: _cancellation,
    EventKind.EXPIRATION: _expiration,
    EventKind.SUBSCRIPTION_PAUSED: _paused,
    EventKind.BILLING_ISSUE: _billing_issue,
    EventKind.PRODUCT_CHANGE: _product_change,
    EventKind.REFUND: _refund,
    EventKind.REFUND_REVERSED: _refund_reversed,
    EventKind.CONSUMABLE_PURCHASE: _consumable,
    EventKind.TRANSFER: _diagnostic,
    EventKind.INVOICE_ISSUANCE: _diagnostic,
    EventKind.TEST: _diagnostic,
    EventKind.UNKNOWN: _unknown,
}


def _link_identifiers(row: User, event: BillingEvent, mutation: LedgerMutation) -> None:
    """Record provider identifiers the row does not know yet (lookup only)."""
    identity = event.identity
    if event.provider == BillingProvider.REVENUECAT:
        app_user_id = identity.app_user_id or identity.original_app_user_id
        if app_user_id and not row.billing_app_user_id:
            mutation.assignments["billing_app_user_id"] = app_user_id
    elif event.provider == BillingProvider.STRIPE:
        if identity.stripe_customer_id and not row.stripe_customer_id:
            mutation.assignments["stripe_customer_id"] = identity.stripe_customer_id
        if event.subscription_id and event.subscription_id != row.stripe_subscription_id:
            if event.kind != EventKind.CONSUMABLE_PURCHASE:
                mutation.assignments["stripe_subscription_id"] = event.subscription_id
    elif event.provider == BillingProvider.APPSTORE:
        otid = identity.apple_original_transaction_id
        if otid and not row.apple_original_transaction_id:
            mutation.assignments["apple_original_transaction_id"] = otid


def resulting_expiry(row: User, mutation: LedgerMutation) -> datetime | None:
    """Expiry the row will hold after the mutation is applied."""
    if mutation.expires_at is None or mutation.expiry_update == ExpiryUpdate.KEEP:
        return row.premium_expires_at
    if mutation.expiry_update == ExpiryUpdate.REPLACE:
        return mutation.expires_at
    if row.premium_expires_at is None or row.premium_expires_at < mutation.expires_at:
        return mutation.expires_at
    return row.premium_expires_at


def reconcile(
    row: User | None,
    event: BillingEvent,
    credits: CreditConfig,
    now: datetime | None = None,
) -> LedgerMutation:
    """
    Compute the ledger mutation for one billing event.

    Args:
        row: Current ledger row (None if no user could be resolved)
        event: Canonical billing event
        credits: Credit amounts (recurring bonus)
        now: Clock used for expiry comparisons

    Returns:
        LedgerMutation: Empty (user_id None) when there is no user to update
    """
    if row is None:
        return LedgerMutation.empty(f"no ledger row for {event.provider.value} event")

    now = now or datetime.now(UTC)
    mutation = LedgerMutation(user_id=row.user_id)

    TRANSITIONS.get(event.kind, _unknown)(row, event, mutation, credits, now)

    if event.consumable_credits and event.consumable_credits > 0:
        mutation.consumable_credits = event.consumable_credits

    _link_identifiers(row, event, mutation)

    # Never leave premium set on a lapsed expiry without an active entitlement
    will_be_premium = mutation.assignments.get("is_premium", row.is_premium)
    expiry = resulting_expiry(row, mutation)
    if (
        will_be_premium
        and expiry is not None
        and expiry <= now
        and event.entitlement_active is not True
    ):
        mutation.assignments["is_premium"] = False
        if mutation.bonus_credits:
            mutation.notes.append("recurring bonus withheld: subscription already lapsed")
            mutation.bonus_credits = 0
            mutation.bonus_guard_subscription_id = None
        mutation.notes.append("premium cleared: expiry already passed")

    return mutation
