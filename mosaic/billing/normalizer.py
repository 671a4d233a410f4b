"""
Event normalization for Stripe, RevenueCat and App Store payloads.

Provider payloads arrive in several shapes (event envelopes, subscriber
snapshots, V1/V2 App Store notifications). Every field is read through a
FieldStrategy: an explicit ordered list of paths tried until one resolves.
Fields that cannot be resolved stay None; nothing here raises for odd shapes.
"""

import base64
import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from mosaic.config import BillingConfig, CreditConfig
from mosaic.models.billing import BillingEvent, BillingProvider, EventKind, UserIdentity

logger = logging.getLogger(__name__)


@dataclass
class ParsedEnvelope:
    """Named sub-documents of a payload that extraction paths start from."""

    roots: dict[str, Any] = field(default_factory=dict)

    def get(self, path: str) -> Any:
        """Resolve a dotted path such as 'event.subscriber_attributes.$email.value'."""
        root_name, _, rest = path.partition(".")
        node = self.roots.get(root_name)
        if not rest:
            return node
        for key in rest.split("."):
            if isinstance(node, dict):
                node = node.get(key)
            elif isinstance(node, list) and key.isdigit():
                index = int(key)
                node = node[index] if index < len(node) else None
            else:
                return None
            if node is None:
                return None
        return node


@dataclass(frozen=True)
class FieldStrategy:
    """Ordered extraction paths for one canonical field."""

    name: str
    paths: tuple[str, ...]

    def extract(self, envelope: ParsedEnvelope) -> Any:
        for path in self.paths:
            value = envelope.get(path)
            if value is None or value == "":
                continue
            return value
        return None

    def extract_str(self, envelope: ParsedEnvelope) -> str | None:
        value = self.extract(envelope)
        if isinstance(value, dict):
            # Expanded Stripe objects (e.g. customer) carry their id
            value = value.get("id")
        if value is None or isinstance(value, (dict, list, bool)):
            return None
        return str(value).strip() or None


def parse_timestamp(value: Any, unit: str = "ms") -> datetime | None:
    """
    Coerce a provider timestamp to an aware datetime.

    Args:
        value: Epoch number (or numeric string) or ISO-8601 string
        unit: 'ms' or 's' for numeric values

    Returns:
        datetime, or None if the value is missing or unparseable
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            value = float(stripped)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(stripped.replace("Z", "+00:00"))
            except ValueError:
                return None
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    if not isinstance(value, (int, float)):
        return None
    seconds = value / 1000 if unit == "ms" else value
    try:
        return datetime.fromtimestamp(seconds, UTC)
    except (OverflowError, OSError, ValueError):
        return None


def decode_unverified_jws(compact_jws: Any) -> dict[str, Any]:
    """Claims of a compact JWS, read without verifying its signature."""
    token = str(compact_jws or "").strip()
    parts = token.split(".")
    if len(parts) < 2:
        return {}
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        parsed = json.loads(base64.urlsafe_b64decode(segment.encode("utf-8")).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def select_latest_subscription(subscriptions: Any) -> tuple[str, dict, datetime] | None:
    """
    Pick the subscription entry with the latest expiry.

    Entries without a parseable expiry are skipped; ties keep the first-seen key.

    Returns:
        (key, entry, expires_at), or None when no entry has an expiry
    """
    if not isinstance(subscriptions, dict):
        return None

    latest: tuple[str, dict, datetime] | None = None
    for key, entry in subscriptions.items():
        if not isinstance(entry, dict):
            continue
        expires_at = parse_timestamp(entry.get("expires_date_ms")) or parse_timestamp(
            entry.get("expiration_date_ms")
        )
        if expires_at is None:
            expires_at = parse_timestamp(entry.get("expires_date"))
        if expires_at is None:
            continue
        if latest is None or expires_at > latest[2]:
            latest = (key, entry, expires_at)
    return latest


# ----------------------------------------------------------------------
# RevenueCat
# ----------------------------------------------------------------------

RC_EVENT_ID = FieldStrategy(
    "event_id",
    ("event.id", "event.event_id", "payload.request_id", "payload.delivery_id", "data.id"),
)
RC_EVENT_TYPE = FieldStrategy("type", ("event.type", "payload.type"))
RC_APP_USER_ID = FieldStrategy(
    "app_user_id",
    (
        "event.app_user_id",
        "payload.app_user_id",
        "data.app_user_id",
        "subscriber.app_user_id",
    ),
)
RC_ORIGINAL_APP_USER_ID = FieldStrategy(
    "original_app_user_id",
    ("event.original_app_user_id", "subscriber.original_app_user_id", "event.aliases.0"),
)
RC_EMAIL = FieldStrategy(
    "email",
    (
        "subscriber.email",
        "subscriber.subscriber_attributes.$email.value",
        "event.subscriber_attributes.$email.value",
        "payload.email",
    ),
)
RC_PRODUCT_ID = FieldStrategy(
    "product_id",
    (
        "event.product_id",
        "payload.product_id",
        "data.product_id",
        "data.product.product_id",
        "data.product.id",
    ),
)
RC_EVENT_EXPIRY = FieldStrategy("expires_at", ("event.expiration_at_ms",))
RC_EVENT_SUBSCRIPTION_ID = FieldStrategy(
    "subscription_id", ("event.original_transaction_id", "event.transaction_id")
)
RC_CANCEL_REASON = FieldStrategy("cancel_reason", ("event.cancel_reason",))


def _revenuecat_envelope(payload: dict[str, Any]) -> ParsedEnvelope:
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    event = payload.get("event") or data.get("event") or payload
    subscriber = data.get("subscriber") or payload.get("subscriber") or data
    return ParsedEnvelope(
        roots={
            "payload": payload,
            "event": event if isinstance(event, dict) else {},
            "data": data,
            "subscriber": subscriber if isinstance(subscriber, dict) else {},
        }
    )


# ----------------------------------------------------------------------
# Stripe
# ----------------------------------------------------------------------

STRIPE_EMAIL = FieldStrategy(
    "email",
    (
        "object.metadata.email",
        "object.receipt_email",
        "object.customer_email",
        "object.customer_details.email",
        "object.billing_details.email",
        "object.evidence.customer_email_address",
    ),
)
STRIPE_APP_USER_ID = FieldStrategy(
    "app_user_id",
    ("object.metadata.app_user_id", "object.metadata.user_id", "object.metadata.userId"),
)
STRIPE_CUSTOMER = FieldStrategy("stripe_customer_id", ("object.customer",))
STRIPE_PRODUCT_ID = FieldStrategy(
    "product_id",
    (
        "object.metadata.product",
        "object.metadata.product_id",
        "object.items.data.0.price.product",
        "object.plan.product",
        "object.lines.data.0.price.product",
        "object.lines.data.0.plan.product",
    ),
)
STRIPE_SUBSCRIPTION_EXPIRY = FieldStrategy(
    "expires_at", ("object.current_period_end", "object.items.data.0.current_period_end")
)
STRIPE_INVOICE_EXPIRY = FieldStrategy(
    "expires_at", ("object.lines.data.0.period.end", "object.period_end")
)
STRIPE_INVOICE_SUBSCRIPTION = FieldStrategy(
    "subscription_id",
    ("object.subscription", "object.parent.subscription_details.subscription"),
)

STRIPE_ACTIVE_STATUSES = {"active", "trialing"}
STRIPE_ENDED_STATUSES = {"canceled", "incomplete_expired"}
STRIPE_DELINQUENT_STATUSES = {"past_due", "unpaid"}


# ----------------------------------------------------------------------
# App Store
# ----------------------------------------------------------------------

APPSTORE_NOTIFICATION_TYPE = FieldStrategy(
    "type", ("notification.notificationType", "payload.notification_type", "payload.type")
)
APPSTORE_SUBTYPE = FieldStrategy("subtype", ("notification.subtype",))
APPSTORE_EVENT_ID = FieldStrategy(
    "event_id", ("notification.notificationUUID", "payload.notificationUUID")
)
APPSTORE_APP_ACCOUNT_TOKEN = FieldStrategy(
    "app_user_id", ("transaction.appAccountToken", "renewal.appAccountToken")
)
APPSTORE_ORIGINAL_TRANSACTION_ID = FieldStrategy(
    "apple_original_transaction_id",
    (
        "transaction.originalTransactionId",
        "renewal.originalTransactionId",
        "receipt.original_transaction_id",
        "payload.original_transaction_id",
    ),
)
APPSTORE_PRODUCT_ID = FieldStrategy(
    "product_id",
    (
        "transaction.productId",
        "receipt.product_id",
        "payload.auto_renew_product_id",
    ),
)
APPSTORE_EXPIRY = FieldStrategy(
    "expires_at", ("transaction.expiresDate", "receipt.expires_date_ms", "renewal.gracePeriodExpiresDate")
)
APPSTORE_REVOCATION = FieldStrategy("revocation", ("transaction.revocationDate",))
APPSTORE_AUTO_RENEW_STATUS = FieldStrategy(
    "auto_renew_status", ("renewal.autoRenewStatus", "payload.auto_renew_status")
)

APPSTORE_KINDS = {
    "SUBSCRIBED": EventKind.INITIAL_PURCHASE,
    "INITIAL_BUY": EventKind.INITIAL_PURCHASE,
    "DID_RENEW": EventKind.RENEWAL,
    "DID_RECOVER": EventKind.RENEWAL,
    "INTERACTIVE_RENEWAL": EventKind.RENEWAL,
    "EXPIRED": EventKind.EXPIRATION,
    "GRACE_PERIOD_EXPIRED": EventKind.EXPIRATION,
    "DID_FAIL_TO_RENEW": EventKind.BILLING_ISSUE,
    "REFUND": EventKind.REFUND,
    "REVOKE": EventKind.REFUND,
    "CANCEL": EventKind.REFUND,
    "REFUND_REVERSED": EventKind.REFUND_REVERSED,
    "DID_CHANGE_RENEWAL_PREF": EventKind.PRODUCT_CHANGE,
    "ONE_TIME_CHARGE": EventKind.NON_RENEWING_PURCHASE,
    "TEST": EventKind.TEST,
}


class EventNormalizer:
    """
    Converts raw provider payloads into BillingEvents.

    Product-to-credit mapping and the premium entitlement id are injected so
    tests and deployments can change them without touching the parser.
    """

    def __init__(self, credits: CreditConfig, billing: BillingConfig):
        """
        Initialize normalizer.

        Args:
            credits: One-time product -> credit table
            billing: Provides the premium entitlement identifier
        """
        self.credits = credits
        self.premium_entitlement_id = billing.premium_entitlement_id

    def normalize(self, provider: BillingProvider, payload: dict[str, Any]) -> BillingEvent | None:
        """
        Normalize a parsed webhook body.

        Returns:
            BillingEvent, or None for event types the provider sends that carry
            no ledger meaning (e.g. Stripe customer.created)
        """
        if provider == BillingProvider.REVENUECAT:
            return self._normalize_revenuecat(payload)
        if provider == BillingProvider.STRIPE:
            return self._normalize_stripe(payload)
        return self._normalize_appstore(payload)

    # ------------------------------------------------------------------

    def _normalize_revenuecat(self, payload: dict[str, Any]) -> BillingEvent:
        envelope = _revenuecat_envelope(payload)

        raw_kind = RC_EVENT_TYPE.extract_str(envelope) or ""
        kind = EventKind.parse(raw_kind)
        product_id = RC_PRODUCT_ID.extract_str(envelope)
        consumable_credits = self.credits.credits_for_product(product_id)

        # The event's own transaction id names the subscription in every payload
        # shape; snapshot entries often carry only their product key.
        subscription_id = RC_EVENT_SUBSCRIPTION_ID.extract_str(envelope)
        latest = select_latest_subscription(envelope.get("subscriber.subscriptions"))
        if latest is not None:
            key, entry, expires_at = latest
            subscription_id = subscription_id or str(
                entry.get("original_transaction_id") or entry.get("id") or key
            )
            product_id = product_id or entry.get("product_id") or key
        else:
            expires_at = parse_timestamp(RC_EVENT_EXPIRY.extract(envelope))

        if kind == EventKind.NON_RENEWING_PURCHASE and consumable_credits:
            kind = EventKind.CONSUMABLE_PURCHASE
        if kind == EventKind.CONSUMABLE_PURCHASE:
            # A consumable is not a subscription; never let it trip the bonus guard
            subscription_id = None
            expires_at = None
        elif (
            kind == EventKind.CANCELLATION
            and (RC_CANCEL_REASON.extract_str(envelope) or "").upper() == "CUSTOMER_SUPPORT"
        ):
            kind = EventKind.REFUND

        return BillingEvent(
            provider=BillingProvider.REVENUECAT,
            kind=kind,
            raw_kind=raw_kind,
            event_id=RC_EVENT_ID.extract_str(envelope),
            identity=UserIdentity(
                app_user_id=RC_APP_USER_ID.extract_str(envelope),
                original_app_user_id=RC_ORIGINAL_APP_USER_ID.extract_str(envelope),
                email=RC_EMAIL.extract_str(envelope),
            ),
            product_id=product_id,
            expires_at=expires_at,
            entitlement_active=self._revenuecat_entitlement(envelope),
            subscription_id=subscription_id,
            consumable_credits=consumable_credits,
        )

    def _revenuecat_entitlement(self, envelope: ParsedEnvelope) -> bool | None:
        entitlements = envelope.get("subscriber.entitlements")
        entitlement = (
            entitlements.get(self.premium_entitlement_id) if isinstance(entitlements, dict) else None
        )
        if isinstance(entitlement, dict):
            if "is_active" in entitlement:
                return bool(entitlement["is_active"])
            expires_at = parse_timestamp(entitlement.get("expires_date"))
            if expires_at is not None:
                return expires_at > datetime.now(UTC)
            return True

        entitlement_ids = envelope.get("event.entitlement_ids")
        if isinstance(entitlement_ids, list) and self.premium_entitlement_id in entitlement_ids:
            return True
        if envelope.get("event.entitlement_id") == self.premium_entitlement_id:
            return True
        return None

    # ------------------------------------------------------------------

    def _normalize_stripe(self, payload: dict[str, Any]) -> BillingEvent | None:
        raw_kind = str(payload.get("type") or "")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        obj = data.get("object") if isinstance(data.get("object"), dict) else {}
        envelope = ParsedEnvelope(roots={"payload": payload, "object": obj})

        kind: EventKind | None = None
        expires_at = None
        subscription_id = None
        entitlement_active: bool | None = None
        consumable_credits = None
        product_id = STRIPE_PRODUCT_ID.extract_str(envelope)
        status = str(obj.get("status") or "")

        if raw_kind == "payment_intent.succeeded":
            consumable_credits = self.credits.credits_for_product(product_id)
            if not consumable_credits:
                logger.info(
                    "Stripe payment for unmapped product",
                    extra={"product_id": product_id, "event_type": raw_kind},
                )
            kind = EventKind.CONSUMABLE_PURCHASE

        elif raw_kind.startswith("customer.subscription."):
            subscription_id = obj.get("id")
            expires_at = parse_timestamp(STRIPE_SUBSCRIPTION_EXPIRY.extract(envelope), unit="s")
            if status in STRIPE_ACTIVE_STATUSES:
                entitlement_active = True
            elif status in STRIPE_ENDED_STATUSES:
                entitlement_active = False
            kind = self._stripe_subscription_kind(raw_kind, obj, status)

        elif raw_kind in ("invoice.payment_succeeded", "invoice.paid", "invoice.payment_failed"):
            subscription_id = STRIPE_INVOICE_SUBSCRIPTION.extract_str(envelope)
            if subscription_id is None:
                # One-off invoices carry no entitlement
                return None
            expires_at = parse_timestamp(STRIPE_INVOICE_EXPIRY.extract(envelope), unit="s")
            if raw_kind == "invoice.payment_failed":
                kind = EventKind.BILLING_ISSUE
            else:
                kind = EventKind.RENEWAL
                entitlement_active = True

        elif raw_kind == "charge.refunded":
            # Only subscription charges affect entitlement
            subscription_id = STRIPE_INVOICE_SUBSCRIPTION.extract_str(envelope)
            if not obj.get("invoice"):
                return None
            kind = EventKind.REFUND
            entitlement_active = False

        elif raw_kind == "charge.dispute.funds_reinstated":
            kind = EventKind.REFUND_REVERSED

        if kind is None:
            return None

        return BillingEvent(
            provider=BillingProvider.STRIPE,
            kind=kind,
            raw_kind=raw_kind,
            event_id=payload.get("id") if isinstance(payload.get("id"), str) else None,
            identity=UserIdentity(
                app_user_id=STRIPE_APP_USER_ID.extract_str(envelope),
                email=STRIPE_EMAIL.extract_str(envelope),
                stripe_customer_id=STRIPE_CUSTOMER.extract_str(envelope),
            ),
            product_id=product_id,
            expires_at=expires_at,
            entitlement_active=entitlement_active,
            subscription_id=subscription_id,
            consumable_credits=consumable_credits,
        )

    @staticmethod
    def _stripe_subscription_kind(raw_kind: str, obj: dict[str, Any], status: str) -> EventKind | None:
        if raw_kind == "customer.subscription.created":
            return EventKind.INITIAL_PURCHASE if status in STRIPE_ACTIVE_STATUSES else None
        if raw_kind == "customer.subscription.deleted":
            return EventKind.EXPIRATION
        if raw_kind == "customer.subscription.paused":
            return EventKind.SUBSCRIPTION_PAUSED
        if raw_kind == "customer.subscription.resumed":
            return EventKind.UNCANCELLATION
        if raw_kind != "customer.subscription.updated":
            return None

        if status in STRIPE_ENDED_STATUSES:
            return EventKind.EXPIRATION
        if status == "paused" or obj.get("pause_collection"):
            return EventKind.SUBSCRIPTION_PAUSED
        if status in STRIPE_DELINQUENT_STATUSES:
            return EventKind.BILLING_ISSUE
        if obj.get("cancel_at_period_end"):
            return EventKind.CANCELLATION
        if status in STRIPE_ACTIVE_STATUSES:
            return EventKind.RENEWAL
        return None

    # ------------------------------------------------------------------

    def _normalize_appstore(self, payload: dict[str, Any]) -> BillingEvent:
        notification = decode_unverified_jws(payload.get("signedPayload"))
        notification_data = notification.get("data") if isinstance(notification.get("data"), dict) else {}
        transaction = decode_unverified_jws(notification_data.get("signedTransactionInfo"))
        renewal = decode_unverified_jws(notification_data.get("signedRenewalInfo"))

        receipt = None
        unified_receipt = payload.get("unified_receipt")
        if isinstance(unified_receipt, dict):
            receipts = unified_receipt.get("latest_receipt_info")
            if isinstance(receipts, list):
                receipt = self._latest_receipt(receipts)

        envelope = ParsedEnvelope(
            roots={
                "payload": payload,
                "notification": notification,
                "transaction": transaction,
                "renewal": renewal,
                "receipt": receipt or {},
            }
        )

        raw_kind = APPSTORE_NOTIFICATION_TYPE.extract_str(envelope) or ""
        subtype = (APPSTORE_SUBTYPE.extract_str(envelope) or "").upper()
        product_id = APPSTORE_PRODUCT_ID.extract_str(envelope)
        consumable_credits = self.credits.credits_for_product(product_id)
        original_transaction_id = APPSTORE_ORIGINAL_TRANSACTION_ID.extract_str(envelope)

        kind = self._appstore_kind(raw_kind.upper(), subtype, envelope)
        if kind == EventKind.NON_RENEWING_PURCHASE and consumable_credits:
            kind = EventKind.CONSUMABLE_PURCHASE

        entitlement_active: bool | None = None
        if APPSTORE_REVOCATION.extract(envelope) is not None:
            entitlement_active = False

        expires_at = None
        subscription_id = None
        if kind != EventKind.CONSUMABLE_PURCHASE:
            expires_at = parse_timestamp(APPSTORE_EXPIRY.extract(envelope))
            subscription_id = original_transaction_id
            consumable_credits = None

        if notification:
            logger.debug(
                "Decoded App Store notification claims",
                extra={"notification_type": raw_kind, "subtype": subtype or None},
            )

        return BillingEvent(
            provider=BillingProvider.APPSTORE,
            kind=kind,
            raw_kind=f"{raw_kind}:{subtype}" if subtype else raw_kind,
            event_id=APPSTORE_EVENT_ID.extract_str(envelope),
            identity=UserIdentity(
                app_user_id=APPSTORE_APP_ACCOUNT_TOKEN.extract_str(envelope),
                apple_original_transaction_id=original_transaction_id,
            ),
            product_id=product_id,
            expires_at=expires_at,
            entitlement_active=entitlement_active,
            subscription_id=subscription_id,
            consumable_credits=consumable_credits,
        )

    @staticmethod
    def _appstore_kind(raw_kind: str, subtype: str, envelope: ParsedEnvelope) -> EventKind:
        if raw_kind == "DID_CHANGE_RENEWAL_STATUS":
            auto_renew = APPSTORE_AUTO_RENEW_STATUS.extract(envelope)
            if subtype == "AUTO_RENEW_DISABLED" or auto_renew in (0, "0", False, "false"):
                return EventKind.CANCELLATION
            return EventKind.UNCANCELLATION
        return APPSTORE_KINDS.get(raw_kind, EventKind.UNKNOWN)

    @staticmethod
    def _latest_receipt(receipts: list[Any]) -> dict[str, Any] | None:
        latest = None
        latest_expiry = None
        for receipt in receipts:
            if not isinstance(receipt, dict):
                continue
            expiry = parse_timestamp(receipt.get("expires_date_ms"))
            if latest is None or (expiry is not None and (latest_expiry is None or expiry > latest_expiry)):
                latest, latest_expiry = receipt, expiry
        return latest
