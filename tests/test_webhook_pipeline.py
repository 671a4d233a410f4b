"""
Tests for the billing webhook pipeline (BillingWebhookProcessor).

Covers the ledger guarantees providers rely on:
- Idempotent re-delivery
- Recurring bonus granted once per subscription
- Monotonic expiry
- Signature rejection without ledger mutation
- Consumable grants for distinct and repeated event ids
- Cancellation before expiry
- Full subscription lifecycle
"""

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from payloads import REVENUECAT_SECRET, encode_jws, hmac_hex, revenuecat_payload, stripe_payload, to_ms

from mosaic.billing.webhooks import (
    BillingWebhookProcessor,
    MalformedPayloadError,
    StoreFailureError,
    WebhookAuthError,
    WebhookOutcome,
)
from mosaic.models.billing import BillingProvider, LedgerMutation
from mosaic.storage.database import LedgerStoreError

RC = BillingProvider.REVENUECAT


def body_of(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")


async def deliver(processor: BillingWebhookProcessor, payload: dict, provider: BillingProvider = RC):
    return await processor.process(provider, body_of(payload), {"content-type": "application/json"})


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_same_event_twice_equals_once(self, processor, db, user, future):
        payload = revenuecat_payload("evt-1", "INITIAL_PURCHASE", expires_at=future, subscription_id="s1")

        first = await deliver(processor, payload)
        after_first = await db.get_user(user.user_id)
        second = await deliver(processor, payload)
        after_second = await db.get_user(user.user_id)

        assert first.outcome == WebhookOutcome.APPLIED
        assert second.outcome == WebhookOutcome.DUPLICATE
        assert after_second.model_dump(exclude={"updated_at"}) == after_first.model_dump(
            exclude={"updated_at"}
        )

    @pytest.mark.asyncio
    async def test_events_without_id_always_reprocess(self, processor, db, user):
        payload = revenuecat_payload(None, "NON_RENEWING_PURCHASE", product_id="com.mosaic.credits_10")

        await deliver(processor, payload)
        await deliver(processor, payload)

        assert (await db.get_user(user.user_id)).listen_credits == 20


class TestRedeliveryGuard:
    @pytest.mark.asyncio
    async def test_renewal_of_active_subscription_grants_nothing(self, processor, db, user, future):
        await deliver(processor, revenuecat_payload("evt-1", "INITIAL_PURCHASE", expires_at=future, subscription_id="sub_1"))
        credits = (await db.get_user(user.user_id)).listen_credits

        await deliver(
            processor,
            revenuecat_payload("evt-2", "RENEWAL", expires_at=future + timedelta(days=30), subscription_id="sub_1"),
        )

        assert (await db.get_user(user.user_id)).listen_credits == credits

    @pytest.mark.asyncio
    async def test_new_subscription_grants_bonus(self, processor, db, user, future):
        await deliver(processor, revenuecat_payload("evt-1", "INITIAL_PURCHASE", expires_at=future, subscription_id="sub_1"))
        credits = (await db.get_user(user.user_id)).listen_credits

        await deliver(
            processor,
            revenuecat_payload("evt-2", "RENEWAL", expires_at=future + timedelta(days=30), subscription_id="sub_2"),
        )

        row = await db.get_user(user.user_id)
        assert row.listen_credits == credits + 30
        assert row.active_subscription_id == "sub_2"

    @pytest.mark.asyncio
    async def test_subscriber_snapshot_keeps_subscription_identity(self, processor, db, user, future):
        await deliver(
            processor,
            revenuecat_payload("evt-1", "INITIAL_PURCHASE", expires_at=future, subscription_id="1000000123"),
        )
        renewal = revenuecat_payload("evt-2", "RENEWAL", subscription_id="1000000123")
        renewal["subscriber"] = {
            "subscriptions": {
                "mosaic_monthly": {"expires_date_ms": to_ms(future + timedelta(days=30))},
            },
        }

        await deliver(processor, renewal)

        row = await db.get_user(user.user_id)
        assert row.listen_credits == 30
        assert row.active_subscription_id == "1000000123"


@pytest.mark.asyncio
async def test_monotonic_expiry(processor, db, user, now):
    later = now + timedelta(days=60)
    await deliver(processor, revenuecat_payload("evt-1", "RENEWAL", expires_at=later, subscription_id="s1"))
    stored = (await db.get_user(user.user_id)).premium_expires_at

    await deliver(processor, revenuecat_payload("evt-2", "RENEWAL", expires_at=now + timedelta(days=30), subscription_id="s1"))

    assert (await db.get_user(user.user_id)).premium_expires_at == stored


class TestSignatureRejection:
    @pytest.mark.asyncio
    async def test_altered_body_rejected_without_mutation(self, secured_processor, db, user, future):
        body = body_of(revenuecat_payload("evt-1", "INITIAL_PURCHASE", expires_at=future, subscription_id="s1"))
        signature = hmac_hex(REVENUECAT_SECRET, body)
        tampered = body.replace(b"rc-user-1", b"rc-user-2")

        with pytest.raises(WebhookAuthError) as exc_info:
            await secured_processor.process(RC, tampered, {"x-revenuecat-signature": signature})

        assert exc_info.value.status_code == 401
        row = await db.get_user(user.user_id)
        assert row.is_premium is False
        assert row.listen_credits == 0
        assert not await db.has_event_processed("evt-1")

    @pytest.mark.asyncio
    async def test_valid_signature_applies(self, secured_processor, db, user, future):
        body = body_of(revenuecat_payload("evt-1", "INITIAL_PURCHASE", expires_at=future, subscription_id="s1"))

        result = await secured_processor.process(
            RC, body, {"x-revenuecat-signature": hmac_hex(REVENUECAT_SECRET, body)}
        )

        assert result.outcome == WebhookOutcome.APPLIED
        assert (await db.get_user(user.user_id)).is_premium is True


class TestConsumableGrant:
    @pytest.mark.asyncio
    async def test_single_delivery(self, processor, db, user):
        await deliver(processor, revenuecat_payload("evt-1", "NON_RENEWING_PURCHASE", product_id="com.mosaic.credits_10"))

        assert (await db.get_user(user.user_id)).listen_credits == 10

    @pytest.mark.asyncio
    async def test_distinct_event_ids_both_grant(self, processor, db, user):
        await deliver(processor, revenuecat_payload("evt-1", "NON_RENEWING_PURCHASE", product_id="com.mosaic.credits_10"))
        await deliver(processor, revenuecat_payload("evt-2", "NON_RENEWING_PURCHASE", product_id="com.mosaic.credits_10"))

        assert (await db.get_user(user.user_id)).listen_credits == 20

    @pytest.mark.asyncio
    async def test_same_event_id_grants_once(self, processor, db, user):
        payload = revenuecat_payload("evt-1", "NON_RENEWING_PURCHASE", product_id="com.mosaic.credits_10")

        await deliver(processor, payload)
        await deliver(processor, payload)

        assert (await db.get_user(user.user_id)).listen_credits == 10

    @pytest.mark.asyncio
    async def test_stripe_credit_pack(self, processor, db, user):
        payload = stripe_payload(
            "evt_pi_1",
            "payment_intent.succeeded",
            {"id": "pi_1", "customer": "cus_1", "metadata": {"product": "credits10", "email": "parent@example.com"}},
        )

        result = await deliver(processor, payload, BillingProvider.STRIPE)

        row = await db.get_user(user.user_id)
        assert result.outcome == WebhookOutcome.APPLIED
        assert row.listen_credits == 10
        assert row.stripe_customer_id == "cus_1"
        assert row.is_premium is False


@pytest.mark.asyncio
async def test_cancellation_before_expiry(processor, db, user, future):
    await deliver(processor, revenuecat_payload("evt-1", "INITIAL_PURCHASE", expires_at=future, subscription_id="s1"))

    await deliver(processor, revenuecat_payload("evt-2", "CANCELLATION"))
    cancelled = await db.get_user(user.user_id)

    assert cancelled.is_premium is True
    assert cancelled.is_cancelled is True

    await deliver(processor, revenuecat_payload("evt-3", "EXPIRATION"))

    assert (await db.get_user(user.user_id)).is_premium is False


@pytest.mark.asyncio
async def test_cancellation_then_sweep_after_expiry(processor, db, user, now, future):
    await deliver(processor, revenuecat_payload("evt-1", "INITIAL_PURCHASE", expires_at=future, subscription_id="s1"))
    await deliver(processor, revenuecat_payload("evt-2", "CANCELLATION"))

    expired = await db.expire_lapsed_premium(now=future + timedelta(seconds=1))

    assert expired == [user.user_id]
    assert (await db.get_user(user.user_id)).is_premium is False


@pytest.mark.asyncio
async def test_subscription_lifecycle(processor, db, user, now):
    ev1 = revenuecat_payload("ev1", "INITIAL_PURCHASE", subscription_id="s1", expires_at=now + timedelta(days=30))

    await deliver(processor, ev1)
    row = await db.get_user(user.user_id)
    assert row.is_premium is True
    assert row.listen_credits == 30
    assert row.active_subscription_id == "s1"

    duplicate = await deliver(processor, ev1)
    assert duplicate.outcome == WebhookOutcome.DUPLICATE
    assert (await db.get_user(user.user_id)).model_dump(exclude={"updated_at"}) == row.model_dump(
        exclude={"updated_at"}
    )

    renewal_expiry = now + timedelta(days=60)
    await deliver(
        processor, revenuecat_payload("ev2", "RENEWAL", subscription_id="s1", expires_at=renewal_expiry)
    )
    row = await db.get_user(user.user_id)
    assert row.listen_credits == 30
    assert row.premium_expires_at == datetime.fromtimestamp(
        int(renewal_expiry.timestamp() * 1000) / 1000, UTC
    )

    await deliver(processor, revenuecat_payload("ev3", "CANCELLATION"))
    row = await db.get_user(user.user_id)
    assert row.is_cancelled is True
    assert row.is_premium is True

    await deliver(processor, revenuecat_payload("ev4", "EXPIRATION"))
    assert (await db.get_user(user.user_id)).is_premium is False


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_unknown_user_is_acknowledged_and_marked(self, processor, db, user):
        payload = revenuecat_payload("evt-1", "RENEWAL", app_user_id="someone-else")

        result = await deliver(processor, payload)

        assert result.outcome == WebhookOutcome.UNRESOLVED_USER
        assert await db.has_event_processed("evt-1")

    @pytest.mark.asyncio
    async def test_unhandled_stripe_type_ignored(self, processor, user):
        result = await deliver(
            processor, stripe_payload("evt_c", "customer.created", {"id": "cus_1"}), BillingProvider.STRIPE
        )

        assert result.outcome == WebhookOutcome.IGNORED

    @pytest.mark.asyncio
    async def test_test_event_changes_nothing(self, processor, db, user):
        result = await deliver(processor, revenuecat_payload("evt-t", "TEST"))

        assert result.outcome == WebhookOutcome.NO_CHANGE
        assert await db.has_event_processed("evt-t")

    @pytest.mark.asyncio
    async def test_malformed_body(self, processor):
        with pytest.raises(MalformedPayloadError):
            await processor.process(RC, b"{not json", {})
        with pytest.raises(MalformedPayloadError):
            await processor.process(RC, b"[1, 2]", {})
        with pytest.raises(MalformedPayloadError):
            await processor.process(RC, b"", {})

    @pytest.mark.asyncio
    async def test_store_failure_surfaces_for_retry(self, processor, db, user, future, monkeypatch):
        monkeypatch.setattr(
            db, "apply_ledger_mutation", AsyncMock(side_effect=LedgerStoreError("disk full"))
        )

        with pytest.raises(StoreFailureError) as exc_info:
            await deliver(
                processor,
                revenuecat_payload("evt-1", "INITIAL_PURCHASE", expires_at=future, subscription_id="s1"),
            )

        assert exc_info.value.status_code == 500
        assert not await db.has_event_processed("evt-1")

    @pytest.mark.asyncio
    async def test_reconciliation_error_is_absorbed(self, processor, user, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr("mosaic.billing.webhooks.reconcile", explode)

        result = await deliver(processor, revenuecat_payload("evt-1", "RENEWAL"))

        assert result.outcome == WebhookOutcome.IGNORED


class TestObservers:
    @pytest.mark.asyncio
    async def test_observers_notified_after_commit(self, db, insecure_billing_config, credit_config, user, future):
        observer = AsyncMock()
        processor = BillingWebhookProcessor(db, insecure_billing_config, credit_config, observers=[observer])

        await deliver(processor, revenuecat_payload("evt-1", "INITIAL_PURCHASE", expires_at=future, subscription_id="s1"))

        observer.on_committed.assert_awaited_once()
        event, mutation, result = observer.on_committed.await_args.args
        assert event.event_id == "evt-1"
        assert isinstance(mutation, LedgerMutation)
        assert result.bonus_applied is True
        assert result.after.listen_credits == 30

    @pytest.mark.asyncio
    async def test_observer_failure_does_not_fail_delivery(self, db, insecure_billing_config, credit_config, user, future):
        observer = AsyncMock()
        observer.on_committed.side_effect = RuntimeError("analytics down")
        processor = BillingWebhookProcessor(db, insecure_billing_config, credit_config, observers=[observer])

        result = await deliver(
            processor, revenuecat_payload("evt-1", "INITIAL_PURCHASE", expires_at=future, subscription_id="s1")
        )

        assert result.outcome == WebhookOutcome.APPLIED
        assert (await db.get_user(user.user_id)).is_premium is True

    @pytest.mark.asyncio
    async def test_duplicates_are_not_observed(self, db, insecure_billing_config, credit_config, user):
        observer = AsyncMock()
        processor = BillingWebhookProcessor(db, insecure_billing_config, credit_config, observers=[observer])
        payload = revenuecat_payload("evt-1", "NON_RENEWING_PURCHASE", product_id="com.mosaic.credits_10")

        await deliver(processor, payload)
        await deliver(processor, payload)

        assert observer.on_committed.await_count == 1


class TestAppStore:
    @pytest.mark.asyncio
    async def test_notification_persisted_and_applied(self, processor, db, user, future):
        await db.apply_ledger_mutation(
            LedgerMutation(user_id=user.user_id, assignments={"apple_original_transaction_id": "1000000001"})
        )
        payload = {
            "signedPayload": encode_jws(
                {
                    "notificationType": "DID_RENEW",
                    "notificationUUID": "uuid-1",
                    "data": {
                        "signedTransactionInfo": encode_jws(
                            {
                                "originalTransactionId": "1000000001",
                                "productId": "com.mosaic.premium.monthly",
                                "expiresDate": int(future.timestamp() * 1000),
                            }
                        )
                    },
                }
            )
        }

        result = await deliver(processor, payload, BillingProvider.APPSTORE)

        assert result.outcome == WebhookOutcome.APPLIED
        assert await db.count_appstore_notifications() == 1
        row = await db.get_user(user.user_id)
        assert row.is_premium is True
        assert row.active_subscription_id == "1000000001"

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_block(self, processor, db, user, monkeypatch):
        monkeypatch.setattr(
            db, "store_appstore_notification", AsyncMock(side_effect=RuntimeError("disk"))
        )

        result = await deliver(processor, {"notification_type": "TEST"}, BillingProvider.APPSTORE)

        assert result.outcome in (WebhookOutcome.UNRESOLVED_USER, WebhookOutcome.IGNORED)
