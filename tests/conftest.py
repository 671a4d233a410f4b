"""
Pytest configuration and fixtures for the billing ledger tests.

Provides shared fixtures for:
- Temporary SQLite ledger databases
- Billing and credit configuration
- Webhook signing helpers
- FastAPI test client bound to a temporary database
"""

import json
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from payloads import (
    ADMIN_KEY,
    APPSTORE_SECRET,
    REVENUECAT_SECRET,
    STRIPE_SECRET,
    hmac_hex,
    stripe_signature_header,
)

from mosaic.billing.webhooks import BillingWebhookProcessor
from mosaic.config import BillingConfig, CreditConfig
from mosaic.models.user import UserCreate
from mosaic.storage.database import UserDatabase


@pytest.fixture
def now() -> datetime:
    return datetime.now(UTC)


@pytest.fixture
def billing_config() -> BillingConfig:
    """Every provider secured with a test secret."""
    return BillingConfig(
        stripe_webhook_secret=STRIPE_SECRET,
        revenuecat_webhook_secret=REVENUECAT_SECRET,
        revenuecat_webhook_auth="",
        appstore_webhook_secret=APPSTORE_SECRET,
        enforce_signatures=True,
        premium_entitlement_id="RC-Mosaic-AI",
    )


@pytest.fixture
def insecure_billing_config() -> BillingConfig:
    """No secrets configured and signatures not enforced."""
    return BillingConfig(
        stripe_webhook_secret="",
        revenuecat_webhook_secret="",
        revenuecat_webhook_auth="",
        appstore_webhook_secret="",
        enforce_signatures=False,
    )


@pytest.fixture
def credit_config() -> CreditConfig:
    return CreditConfig(
        recurring_bonus=30,
        starter_credits=30,
        one_time_products={
            "com.mosaic.credits_10": 10,
            "credits10": 10,
        },
    )


@pytest.fixture
async def db(tmp_path):
    """Initialized ledger database in a temporary directory."""
    database = UserDatabase(db_path=str(tmp_path / "mosaic.db"))
    await database.initialize()
    yield database
    database.close()


@pytest.fixture
async def user(db):
    """Ledger row linked to RevenueCat app user 'rc-user-1', starting with 0 credits."""
    return await db.create_user(
        UserCreate(email="parent@example.com", name="Parent", billing_app_user_id="rc-user-1"),
        starter_credits=0,
    )


@pytest.fixture
def processor(db, insecure_billing_config, credit_config) -> BillingWebhookProcessor:
    """Processor with signature checks skipped (insecure mode)."""
    return BillingWebhookProcessor(db, insecure_billing_config, credit_config)


@pytest.fixture
def secured_processor(db, billing_config, credit_config) -> BillingWebhookProcessor:
    return BillingWebhookProcessor(db, billing_config, credit_config)


@pytest.fixture
def signed_revenuecat():
    """Serialize a payload and sign it with the RevenueCat test secret."""

    def _sign(payload: dict) -> tuple[bytes, dict[str, str]]:
        body = json.dumps(payload).encode("utf-8")
        return body, {
            "content-type": "application/json",
            "x-revenuecat-signature": hmac_hex(REVENUECAT_SECRET, body),
        }

    return _sign


@pytest.fixture
def signed_stripe():
    """Serialize a payload and sign it with the Stripe test secret."""

    def _sign(payload: dict) -> tuple[bytes, dict[str, str]]:
        body = json.dumps(payload).encode("utf-8")
        return body, {
            "content-type": "application/json",
            "stripe-signature": stripe_signature_header(body),
        }

    return _sign


@pytest.fixture
def client(tmp_path, monkeypatch):
    """
    Test client for the FastAPI app.

    The ledger database, settings and webhook processor singletons are reset so
    the app runs against a fresh SQLite file with test secrets.
    """
    monkeypatch.setenv("STORAGE_DATABASE_PATH", str(tmp_path / "api.db"))
    monkeypatch.setenv("BILLING_STRIPE_WEBHOOK_SECRET", STRIPE_SECRET)
    monkeypatch.setenv("BILLING_REVENUECAT_WEBHOOK_SECRET", REVENUECAT_SECRET)
    monkeypatch.setenv("BILLING_REVENUECAT_WEBHOOK_AUTH", "")
    monkeypatch.setenv("BILLING_APPSTORE_WEBHOOK_SECRET", APPSTORE_SECRET)
    monkeypatch.setenv("BILLING_ENFORCE_SIGNATURES", "true")
    monkeypatch.setenv("CREDITS_STARTER_CREDITS", "30")
    monkeypatch.setenv("CREDITS_RECURRING_BONUS", "30")
    monkeypatch.setenv("ADMIN_API_KEY", ADMIN_KEY)

    import mosaic.billing.webhooks as webhooks_module
    import mosaic.config as config_module
    import mosaic.storage.database as database_module

    monkeypatch.setattr(config_module, "_settings", None)
    monkeypatch.setattr(database_module, "_db", None)
    monkeypatch.setattr(webhooks_module, "_processor", None)

    from mosaic.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def api_user(client) -> dict:
    """User created through the API (30 starter credits)."""
    response = client.post(
        "/users",
        json={"email": "api-parent@example.com", "name": "API Parent", "billing_app_user_id": "rc-api-user"},
    )
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def future(now) -> datetime:
    return now + timedelta(days=30)
