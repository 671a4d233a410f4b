"""
Tests for the user ledger storage.

Tests:
- User creation, lookup and deletion
- Identity resolution order
- Atomic ledger mutations (bonus guard, monotonic expiry, event claims)
- Listen-credit consumption
- Lapsed-premium sweep
"""

from datetime import UTC, datetime, timedelta

import pytest

from mosaic.models.billing import ExpiryUpdate, LedgerMutation, MarkResult, UserIdentity
from mosaic.models.user import UserCreate
from mosaic.storage.database import LedgerStoreError, UserDatabase, from_epoch_ms, to_epoch_ms


def test_epoch_ms_round_trip():
    moment = datetime(2030, 1, 1, 8, 30, tzinfo=UTC)

    assert to_epoch_ms(None) is None
    assert from_epoch_ms(to_epoch_ms(moment)) == moment


@pytest.mark.asyncio
async def test_create_and_get_user(db):
    created = await db.create_user(
        UserCreate(email="  New.Parent@Example.com ", name="New Parent"), starter_credits=30
    )

    fetched = await db.get_user(created.user_id)

    assert fetched.email == "new.parent@example.com"
    assert fetched.listen_credits == 30
    assert fetched.is_premium is False
    assert (await db.get_user_by_email("NEW.PARENT@example.com")).user_id == created.user_id


@pytest.mark.asyncio
async def test_duplicate_email_returns_none(db, user):
    duplicate = await db.create_user(UserCreate(email="parent@example.com"))

    assert duplicate is None


@pytest.mark.asyncio
async def test_delete_user(db, user):
    assert await db.delete_user(user.user_id) is True
    assert await db.get_user(user.user_id) is None
    assert await db.delete_user(user.user_id) is False


class TestIdentityResolution:
    @pytest.mark.asyncio
    async def test_billing_app_user_id(self, db, user):
        found = await db.find_user_by_identity(UserIdentity(app_user_id="rc-user-1"))

        assert found.user_id == user.user_id

    @pytest.mark.asyncio
    async def test_app_user_id_matches_user_id(self, db, user):
        found = await db.find_user_by_identity(UserIdentity(app_user_id=user.user_id))

        assert found.user_id == user.user_id

    @pytest.mark.asyncio
    async def test_original_app_user_id_fallback(self, db, user):
        identity = UserIdentity(app_user_id="$RCAnonymousID:xyz", original_app_user_id="rc-user-1")

        assert (await db.find_user_by_identity(identity)).user_id == user.user_id

    @pytest.mark.asyncio
    async def test_email_fallback_is_case_insensitive(self, db, user):
        identity = UserIdentity(app_user_id="unknown", email="Parent@Example.COM")

        assert (await db.find_user_by_identity(identity)).user_id == user.user_id

    @pytest.mark.asyncio
    async def test_stripe_customer_id(self, db, user):
        await db.apply_ledger_mutation(
            LedgerMutation(user_id=user.user_id, assignments={"stripe_customer_id": "cus_1"})
        )

        found = await db.find_user_by_identity(UserIdentity(stripe_customer_id="cus_1"))

        assert found.user_id == user.user_id

    @pytest.mark.asyncio
    async def test_unresolvable(self, db, user):
        assert await db.find_user_by_identity(UserIdentity()) is None
        assert await db.find_user_by_identity(UserIdentity(email="nobody@example.com")) is None


class TestApplyLedgerMutation:
    @pytest.mark.asyncio
    async def test_assignments_and_expiry(self, db, user):
        expires = datetime(2030, 1, 1, tzinfo=UTC)
        mutation = LedgerMutation(
            user_id=user.user_id,
            assignments={"is_premium": True, "active_subscription_id": "s1"},
            expires_at=expires,
            expiry_update=ExpiryUpdate.EXTEND,
        )

        result = await db.apply_ledger_mutation(mutation, event_id="evt-1", provider="revenuecat")

        assert result.applied
        assert result.claim == MarkResult.INSERTED
        assert result.before.is_premium is False
        assert result.after.is_premium is True
        assert result.after.premium_expires_at == expires
        assert await db.has_event_processed("evt-1")

    @pytest.mark.asyncio
    async def test_extend_never_moves_expiry_back(self, db, user):
        later = datetime(2030, 3, 1, tzinfo=UTC)
        earlier = datetime(2030, 1, 1, tzinfo=UTC)
        await db.apply_ledger_mutation(
            LedgerMutation(user_id=user.user_id, expires_at=later, expiry_update=ExpiryUpdate.EXTEND)
        )

        result = await db.apply_ledger_mutation(
            LedgerMutation(user_id=user.user_id, expires_at=earlier, expiry_update=ExpiryUpdate.EXTEND)
        )

        assert result.after.premium_expires_at == later

    @pytest.mark.asyncio
    async def test_replace_can_move_expiry_back(self, db, user):
        later = datetime(2030, 3, 1, tzinfo=UTC)
        earlier = datetime(2030, 1, 1, tzinfo=UTC)
        await db.apply_ledger_mutation(
            LedgerMutation(user_id=user.user_id, expires_at=later, expiry_update=ExpiryUpdate.EXTEND)
        )

        result = await db.apply_ledger_mutation(
            LedgerMutation(user_id=user.user_id, expires_at=earlier, expiry_update=ExpiryUpdate.REPLACE)
        )

        assert result.after.premium_expires_at == earlier

    @pytest.mark.asyncio
    async def test_bonus_guard_checked_against_current_row(self, db, user):
        # Two mutations computed from the same stale row: only the first grants
        first = LedgerMutation(
            user_id=user.user_id,
            assignments={"active_subscription_id": "s1"},
            bonus_credits=30,
            bonus_guard_subscription_id="s1",
        )
        second = LedgerMutation(
            user_id=user.user_id,
            assignments={"active_subscription_id": "s1"},
            bonus_credits=30,
            bonus_guard_subscription_id="s1",
        )

        first_result = await db.apply_ledger_mutation(first, event_id="evt-a")
        second_result = await db.apply_ledger_mutation(second, event_id="evt-b")

        assert first_result.bonus_applied is True
        assert second_result.bonus_applied is False
        assert second_result.after.listen_credits == 30

    @pytest.mark.asyncio
    async def test_consumable_credits_are_unconditional(self, db, user):
        for event_id in ("evt-1", "evt-2"):
            await db.apply_ledger_mutation(
                LedgerMutation(user_id=user.user_id, consumable_credits=10), event_id=event_id
            )

        assert (await db.get_user(user.user_id)).listen_credits == 20

    @pytest.mark.asyncio
    async def test_claimed_event_writes_nothing(self, db, user):
        mutation = LedgerMutation(user_id=user.user_id, consumable_credits=10)
        await db.apply_ledger_mutation(mutation, event_id="evt-1")

        result = await db.apply_ledger_mutation(mutation, event_id="evt-1")

        assert result.claim == MarkResult.ALREADY_EXISTS
        assert not result.applied
        assert (await db.get_user(user.user_id)).listen_credits == 10

    @pytest.mark.asyncio
    async def test_rejects_unknown_column(self, db, user):
        mutation = LedgerMutation(user_id=user.user_id, assignments={"listen_credits": 1_000_000})

        with pytest.raises(ValueError):
            await db.apply_ledger_mutation(mutation, event_id="evt-1")

        # Failed write leaves the event unclaimed
        assert not await db.has_event_processed("evt-1")

    @pytest.mark.asyncio
    async def test_requires_resolved_user(self, db):
        with pytest.raises(ValueError):
            await db.apply_ledger_mutation(LedgerMutation(user_id=None, consumable_credits=1))

    @pytest.mark.asyncio
    async def test_vanished_row_is_not_applied(self, db):
        result = await db.apply_ledger_mutation(
            LedgerMutation(user_id="ghost", consumable_credits=10), event_id="evt-ghost"
        )

        assert not result.applied
        assert result.claim == MarkResult.INSERTED

    @pytest.mark.asyncio
    async def test_storage_failure_raises_ledger_store_error(self, tmp_path, user, db):
        db._get_connection().execute("DROP TABLE audit_log")

        with pytest.raises(LedgerStoreError):
            await db.apply_ledger_mutation(
                LedgerMutation(user_id=user.user_id, consumable_credits=10), event_id="evt-1"
            )

        assert not await db.has_event_processed("evt-1")
        assert (await db.get_user(user.user_id)).listen_credits == 0

    @pytest.mark.asyncio
    async def test_mutation_is_audited(self, db, user):
        await db.apply_ledger_mutation(
            LedgerMutation(user_id=user.user_id, consumable_credits=10), event_id="evt-1", provider="stripe"
        )

        row = (
            db._get_connection()
            .execute("SELECT * FROM audit_log WHERE action = 'LEDGER_MUTATION'")
            .fetchone()
        )

        assert row["user_id"] == user.user_id
        assert row["resource_id"] == "evt-1"
        assert '"credits_delta": 10' in row["details"]


class TestProcessedEvents:
    @pytest.mark.asyncio
    async def test_mark_is_insert_if_absent(self, db):
        assert await db.mark_event_processed("evt-1", "stripe") == MarkResult.INSERTED
        assert await db.mark_event_processed("evt-1", "stripe") == MarkResult.ALREADY_EXISTS

        record = await db.get_processed_event("evt-1")
        assert record.provider == "stripe"

    @pytest.mark.asyncio
    async def test_unknown_event(self, db):
        assert await db.has_event_processed("missing") is False
        assert await db.get_processed_event("missing") is None


class TestListenCredits:
    @pytest.mark.asyncio
    async def test_consume_decrements(self, db):
        created = await db.create_user(UserCreate(email="kid@example.com"), starter_credits=2)

        assert await db.consume_listen_credit(created.user_id) == 1
        assert await db.consume_listen_credit(created.user_id) == 0

    @pytest.mark.asyncio
    async def test_never_below_zero(self, db, user):
        assert await db.consume_listen_credit(user.user_id) is None
        assert (await db.get_user(user.user_id)).listen_credits == 0

    @pytest.mark.asyncio
    async def test_unknown_user(self, db):
        assert await db.consume_listen_credit("ghost") is None


class TestExpireLapsedPremium:
    @pytest.mark.asyncio
    async def test_clears_only_lapsed_rows(self, db, user):
        now = datetime.now(UTC)
        other = await db.create_user(UserCreate(email="other@example.com"))
        await db.apply_ledger_mutation(
            LedgerMutation(
                user_id=user.user_id,
                assignments={"is_premium": True, "is_cancelled": True},
                expires_at=now - timedelta(hours=1),
                expiry_update=ExpiryUpdate.REPLACE,
            )
        )
        await db.apply_ledger_mutation(
            LedgerMutation(
                user_id=other.user_id,
                assignments={"is_premium": True},
                expires_at=now + timedelta(days=10),
                expiry_update=ExpiryUpdate.REPLACE,
            )
        )

        expired = await db.expire_lapsed_premium(now=now)

        assert expired == [user.user_id]
        assert (await db.get_user(user.user_id)).is_premium is False
        assert (await db.get_user(other.user_id)).is_premium is True
        assert await db.expire_lapsed_premium(now=now) == []


@pytest.mark.asyncio
async def test_appstore_notifications_persisted(db):
    await db.store_appstore_notification({"notification_type": "DID_RENEW"}, "DID_RENEW")

    assert await db.count_appstore_notifications() == 1


@pytest.mark.asyncio
async def test_initialize_is_idempotent(tmp_path):
    database = UserDatabase(db_path=str(tmp_path / "nested" / "ledger.db"))
    await database.initialize()
    await database.initialize()

    tables = {
        row[0]
        for row in database._get_connection()
        .execute("SELECT name FROM sqlite_master WHERE type='table'")
        .fetchall()
    }

    assert {"users", "processed_events", "appstore_notifications", "audit_log"} <= tables
    database.close()
