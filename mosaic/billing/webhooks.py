"""
Billing webhook pipeline.

Every provider route funnels into BillingWebhookProcessor.process():

    verify signature -> parse JSON -> normalize -> idempotency check
    -> resolve user -> reconcile -> atomic apply (with event claim)
    -> observers

A webhook is acknowledged only after its ledger write is durable. Store
failures surface as StoreFailureError so the provider retries the delivery.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable

from mosaic.billing.idempotency import IdempotencyStore
from mosaic.billing.normalizer import EventNormalizer
from mosaic.billing.observers import (
    AnalyticsLogObserver,
    LedgerObserver,
    MetricsObserver,
    notify_observers,
)
from mosaic.billing.reconciliation import reconcile
from mosaic.billing.signature import SignatureVerifier, VerificationResult
from mosaic.config import BillingConfig, CreditConfig
from mosaic.models.billing import BillingEvent, BillingProvider, MarkResult
from mosaic.observability.logging import set_user_id
from mosaic.observability.metrics import (
    track_signature_failure,
    track_webhook_duration,
    track_webhook_event,
)
from mosaic.storage.database import LedgerStoreError, UserDatabase

logger = logging.getLogger(__name__)


class WebhookError(Exception):
    """Base exception for webhook processing errors."""

    status_code = 500


class WebhookAuthError(WebhookError):
    """Signature or Authorization header did not verify."""

    status_code = 401


class MalformedPayloadError(WebhookError):
    """Body is not a JSON object."""

    status_code = 400


class StoreFailureError(WebhookError):
    """Ledger or idempotency store could not be read or written."""

    status_code = 500


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNRESOLVED_USER = "unresolved_user"
    NO_CHANGE = "no_change"


@dataclass
class WebhookResult:
    """Outcome of one acknowledged delivery."""

    provider: BillingProvider
    outcome: WebhookOutcome
    kind: str | None = None
    event_id: str | None = None
    user_id: str | None = None
    notes: list[str] = field(default_factory=list)


class BillingWebhookProcessor:
    """
    Applies billing webhooks from Stripe, RevenueCat and the App Store to the
    user ledger.
    """

    def __init__(
        self,
        db: UserDatabase,
        billing_config: BillingConfig,
        credit_config: CreditConfig,
        observers: list[LedgerObserver] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Initialize webhook processor.

        Args:
            db: User ledger database
            billing_config: Provider secrets and entitlement id
            credit_config: Credit amounts and one-time product table
            observers: Post-commit observers (default: metrics + analytics log)
            clock: Time source for expiry comparisons
        """
        self.db = db
        self.credit_config = credit_config
        self.verifier = SignatureVerifier(billing_config)
        self.normalizer = EventNormalizer(credit_config, billing_config)
        self.idempotency = IdempotencyStore(db)
        self.observers = (
            observers if observers is not None else [MetricsObserver(), AnalyticsLogObserver()]
        )
        self.clock = clock or (lambda: datetime.now(UTC))

    async def process(
        self,
        provider: BillingProvider,
        body: bytes,
        headers: dict[str, str],
    ) -> WebhookResult:
        """
        Process one webhook delivery.

        Args:
            provider: Provider owning the route
            body: Raw request body (signatures cover these exact bytes)
            headers: Request headers

        Returns:
            WebhookResult: Acknowledged outcome (the route answers 200 "ok")

        Raises:
            WebhookAuthError: Signature verification failed (401)
            MalformedPayloadError: Body is not a JSON object (400)
            StoreFailureError: Ledger write failed; provider should retry (500)
        """
        start_time = time.perf_counter()
        try:
            result = await self._process(provider, body, headers)
        finally:
            track_webhook_duration(provider.value, time.perf_counter() - start_time)

        track_webhook_event(provider.value, result.kind or "none", result.outcome.value)
        logger.info(
            "Billing webhook processed",
            extra={
                "provider": provider.value,
                "kind": result.kind,
                "event_id": result.event_id,
                "outcome": result.outcome.value,
                "user_id": result.user_id,
                "notes": result.notes,
            },
        )
        return result

    async def _process(
        self,
        provider: BillingProvider,
        body: bytes,
        headers: dict[str, str],
    ) -> WebhookResult:
        verification = self.verifier.verify(provider, body, headers)
        if verification == VerificationResult.INVALID:
            track_signature_failure(provider.value)
            track_webhook_event(provider.value, "none", "invalid_signature")
            raise WebhookAuthError(f"Invalid {provider.value} webhook signature")

        payload = self._parse(provider, body)

        if provider == BillingProvider.APPSTORE:
            await self._persist_appstore_notification(payload)

        try:
            event = self.normalizer.normalize(provider, payload)
        except Exception as e:
            logger.error(
                "Failed to normalize billing webhook",
                exc_info=True,
                extra={"provider": provider.value, "error": str(e)},
            )
            return WebhookResult(
                provider=provider,
                outcome=WebhookOutcome.IGNORED,
                notes=[f"normalization failed: {type(e).__name__}"],
            )

        if event is None:
            logger.info(
                "Billing webhook has no ledger meaning",
                extra={"provider": provider.value, "event_type": payload.get("type")},
            )
            return WebhookResult(
                provider=provider,
                outcome=WebhookOutcome.IGNORED,
                event_id=payload.get("id") if isinstance(payload.get("id"), str) else None,
                notes=["unhandled event type"],
            )

        try:
            return await self._apply(event)
        except LedgerStoreError as e:
            track_webhook_event(provider.value, event.kind.value, "store_failure")
            raise StoreFailureError(str(e)) from e

    def _parse(self, provider: BillingProvider, body: bytes) -> dict[str, Any]:
        if not body:
            track_webhook_event(provider.value, "none", "malformed")
            raise MalformedPayloadError("Missing body")
        try:
            payload = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            track_webhook_event(provider.value, "none", "malformed")
            raise MalformedPayloadError("Body is not valid JSON") from e
        if not isinstance(payload, dict):
            track_webhook_event(provider.value, "none", "malformed")
            raise MalformedPayloadError("Body must be a JSON object")
        return payload

    async def _persist_appstore_notification(self, payload: dict[str, Any]) -> None:
        notification_type = payload.get("notificationType") or payload.get("notification_type")
        try:
            await self.db.store_appstore_notification(
                payload, str(notification_type) if notification_type else None
            )
        except Exception as e:
            # Diagnostics only; never blocks ledger processing
            logger.warning(f"Failed to persist App Store notification: {e}")

    async def _apply(self, event: BillingEvent) -> WebhookResult:
        provider = event.provider
        result = WebhookResult(
            provider=provider,
            outcome=WebhookOutcome.APPLIED,
            kind=event.kind.value,
            event_id=event.event_id,
        )

        if await self.idempotency.has_processed(event.event_id):
            result.outcome = WebhookOutcome.DUPLICATE
            return result

        row = await self.db.find_user_by_identity(event.identity)
        if row is None:
            logger.warning(
                "Billing webhook for unknown user",
                extra={
                    "provider": provider.value,
                    "event_id": event.event_id,
                    "kind": event.kind.value,
                    "has_identity": not event.identity.is_empty(),
                },
            )
            await self.idempotency.mark_processed(event.event_id, provider.value)
            result.outcome = WebhookOutcome.UNRESOLVED_USER
            return result

        result.user_id = row.user_id
        set_user_id(row.user_id)

        try:
            mutation = reconcile(row, event, self.credit_config, now=self.clock())
        except Exception as e:
            logger.error(
                "Reconciliation failed",
                exc_info=True,
                extra={"provider": provider.value, "event_id": event.event_id, "error": str(e)},
            )
            result.outcome = WebhookOutcome.IGNORED
            result.notes.append(f"reconciliation failed: {type(e).__name__}")
            return result

        result.notes.extend(mutation.notes)

        if mutation.is_empty():
            claim = await self.idempotency.mark_processed(event.event_id, provider.value)
            result.outcome = (
                WebhookOutcome.DUPLICATE
                if claim == MarkResult.ALREADY_EXISTS
                else WebhookOutcome.NO_CHANGE
            )
            return result

        write = await self.db.apply_ledger_mutation(
            mutation, event_id=event.event_id, provider=provider.value
        )
        if write.claim == MarkResult.ALREADY_EXISTS:
            result.outcome = WebhookOutcome.DUPLICATE
            return result
        if not write.applied:
            result.outcome = WebhookOutcome.UNRESOLVED_USER
            return result

        await notify_observers(self.observers, event, mutation, write)
        return result


# Global webhook processor instance
_processor: BillingWebhookProcessor | None = None


async def get_webhook_processor() -> BillingWebhookProcessor:
    """
    Get global webhook processor instance (singleton).

    Returns:
        BillingWebhookProcessor: Processor bound to the global ledger database
    """
    global _processor
    if _processor is None:
        from mosaic.config import get_settings
        from mosaic.storage.database import get_user_db

        settings = get_settings()
        _processor = BillingWebhookProcessor(
            db=await get_user_db(),
            billing_config=settings.billing,
            credit_config=settings.credits,
        )
    return _processor
