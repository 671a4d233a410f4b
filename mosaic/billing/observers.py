"""
Post-commit observers for billing ledger changes.

Observers run only after a mutation has been durably committed. They never
influence the outcome of a webhook: failures are logged and swallowed.
"""

import logging
from typing import Protocol

from mosaic.models.billing import BillingEvent, LedgerMutation
from mosaic.observability.logging import get_logger
from mosaic.observability.metrics import track_credits_granted, track_entitlement_transition
from mosaic.storage.database import LedgerWriteResult

logger = logging.getLogger(__name__)


class LedgerObserver(Protocol):
    """Receives committed ledger mutations."""

    async def on_committed(
        self, event: BillingEvent, mutation: LedgerMutation, result: LedgerWriteResult
    ) -> None: ...


class MetricsObserver:
    """Prometheus counters for credit grants and entitlement transitions."""

    async def on_committed(
        self, event: BillingEvent, mutation: LedgerMutation, result: LedgerWriteResult
    ) -> None:
        provider = event.provider.value
        if mutation.consumable_credits:
            track_credits_granted(provider, "consumable", mutation.consumable_credits)
        if result.bonus_applied:
            track_credits_granted(provider, "recurring_bonus", mutation.bonus_credits)
        if result.before is not None and result.after is not None:
            track_entitlement_transition(
                result.before.entitlement_state().value,
                result.after.entitlement_state().value,
            )


class AnalyticsLogObserver:
    """
    Emits structured analytics events for product dashboards.

    Events:
        {provider}_consumable_granted, {provider}_subscription_bonus_granted,
        entitlement_changed
    """

    def __init__(self):
        self.analytics = get_logger("mosaic.analytics")

    async def on_committed(
        self, event: BillingEvent, mutation: LedgerMutation, result: LedgerWriteResult
    ) -> None:
        if result.after is None:
            return
        provider = event.provider.value
        user_id = result.after.user_id

        if mutation.consumable_credits:
            self.analytics.info(
                f"{provider}_consumable_granted",
                user_id=user_id,
                product_id=event.product_id,
                credits=mutation.consumable_credits,
            )

        if result.bonus_applied:
            self.analytics.info(
                f"{provider}_subscription_bonus_granted",
                user_id=user_id,
                subscription_id=event.subscription_id,
                credits=mutation.bonus_credits,
            )

        before_state = result.before.entitlement_state() if result.before else None
        after_state = result.after.entitlement_state()
        if before_state != after_state:
            self.analytics.info(
                "entitlement_changed",
                user_id=user_id,
                provider=provider,
                kind=event.kind.value,
                from_state=before_state.value if before_state else None,
                to_state=after_state.value,
            )


async def notify_observers(
    observers: list[LedgerObserver],
    event: BillingEvent,
    mutation: LedgerMutation,
    result: LedgerWriteResult,
) -> None:
    """Fan out a committed mutation; observer errors never reach the caller."""
    for observer in observers:
        try:
            await observer.on_committed(event, mutation, result)
        except Exception as e:
            logger.error(
                f"Ledger observer {type(observer).__name__} failed: {e}",
                exc_info=True,
                extra={"event_id": event.event_id, "provider": event.provider.value},
            )
