"""
Processed-event tracking for billing webhooks.

Providers deliver at least once. An event id is recorded only after its ledger
mutation commits (the claim happens inside the same transaction, see
UserDatabase.apply_ledger_mutation), so a failed write is retried by the
provider rather than skipped.
"""

import logging

from mosaic.models.billing import MarkResult
from mosaic.storage.database import UserDatabase

logger = logging.getLogger(__name__)


class IdempotencyStore:
    """Remembers which provider event ids have already been applied."""

    def __init__(self, db: UserDatabase):
        self.db = db

    async def has_processed(self, event_id: str | None) -> bool:
        """Events without an id are never tracked and always reprocess."""
        if not event_id:
            return False
        return await self.db.has_event_processed(event_id)

    async def mark_processed(self, event_id: str | None, provider: str = "unknown") -> MarkResult | None:
        """
        Claim an event id that carries no ledger mutation.

        Returns:
            MarkResult, or None when the event has no id
        """
        if not event_id:
            return None
        result = await self.db.mark_event_processed(event_id, provider)
        if result == MarkResult.ALREADY_EXISTS:
            logger.info(
                "Event already claimed by another delivery",
                extra={"event_id": event_id, "provider": provider},
            )
        return result
