"""
Tests for Prometheus metrics observability.

Tests:
- Metrics endpoint returns valid Prometheus format
- Request metrics are tracked correctly
- Billing webhook, credit and entitlement metrics
- Endpoint normalization keeps label cardinality bounded
"""

from datetime import UTC, datetime, timedelta

import pytest
from payloads import revenuecat_payload
from prometheus_client import REGISTRY

from mosaic.billing.observers import MetricsObserver
from mosaic.models.billing import BillingEvent, BillingProvider, EventKind, LedgerMutation
from mosaic.models.user import User
from mosaic.observability.metrics import (
    track_credits_granted,
    track_entitlement_transition,
    track_error,
    track_listen_credit_consumed,
    track_premium_expired,
    track_rate_limit_exceeded,
    track_request,
    track_signature_failure,
    track_webhook_event,
)
from mosaic.observability.middleware import normalize_endpoint
from mosaic.storage.database import LedgerWriteResult


def sample(name: str, **labels) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_metrics_endpoint_exists(client):
    """Test that /metrics endpoint exists and returns data."""
    response = client.get("/metrics")

    assert response.status_code == 200
    assert "text/plain" in response.headers["content-type"]
    assert len(response.content) > 0


def test_metrics_prometheus_format(client):
    """Test that metrics are in valid Prometheus format."""
    client.get("/")
    content = client.get("/metrics").text

    assert "# TYPE" in content
    assert "# HELP" in content

    assert "mosaic_http_request_duration_seconds" in content
    assert "mosaic_http_requests_total" in content
    assert "mosaic_billing_webhook_events_total" in content
    assert "mosaic_billing_credits_granted_total" in content


def test_metrics_track_requests():
    before = sample(
        "mosaic_http_requests_total", method="POST", endpoint="/billing/stripe/webhook", status_code="200"
    )

    track_request(
        method="POST",
        endpoint="/billing/stripe/webhook",
        status_code=200,
        duration_seconds=0.05,
    )

    after = sample(
        "mosaic_http_requests_total", method="POST", endpoint="/billing/stripe/webhook", status_code="200"
    )
    assert after == before + 1


def test_metrics_track_webhook_outcomes():
    labels = {"provider": "stripe", "kind": "RENEWAL", "outcome": "applied"}
    before = sample("mosaic_billing_webhook_events_total", **labels)

    track_webhook_event("stripe", "RENEWAL", "applied")
    track_signature_failure("stripe")

    assert sample("mosaic_billing_webhook_events_total", **labels) == before + 1
    assert sample("mosaic_billing_signature_failures_total", provider="stripe") >= 1


def test_metrics_track_credits_ignores_zero():
    labels = {"provider": "appstore", "grant_type": "consumable"}
    before = sample("mosaic_billing_credits_granted_total", **labels)

    track_credits_granted("appstore", "consumable", 0)
    track_credits_granted("appstore", "consumable", 10)

    assert sample("mosaic_billing_credits_granted_total", **labels) == before + 10


def test_metrics_entitlement_transition_skips_unchanged_state():
    labels = {"from_state": "free", "to_state": "premium_paused"}
    before = sample("mosaic_entitlement_transitions_total", **labels)

    track_entitlement_transition("free", "free")
    track_entitlement_transition("free", "premium_paused")

    assert sample("mosaic_entitlement_transitions_total", **labels) == before + 1
    assert sample("mosaic_entitlement_transitions_total", from_state="free", to_state="free") == 0


def test_metrics_track_errors_and_limits():
    """Error and rate limit helpers should not raise."""
    track_error("validation", "/users")
    track_rate_limit_exceeded("/users/{user_id}/listen-credits/consume")
    track_listen_credit_consumed()
    track_premium_expired(0)
    track_premium_expired(2)


@pytest.mark.asyncio
async def test_metrics_observer_counts_bonus_and_transition():
    now = datetime.now(UTC)
    before_row = User(user_id="u1", email="parent@example.com")
    after_row = before_row.model_copy(
        update={
            "is_premium": True,
            "premium_expires_at": now + timedelta(days=30),
            "active_subscription_id": "s1",
            "listen_credits": 30,
        }
    )
    event = BillingEvent(
        provider=BillingProvider.REVENUECAT,
        kind=EventKind.INITIAL_PURCHASE,
        raw_kind="INITIAL_PURCHASE",
        subscription_id="s1",
    )
    mutation = LedgerMutation(user_id="u1", bonus_credits=30, bonus_guard_subscription_id="s1")
    result = LedgerWriteResult(claim=None, before=before_row, after=after_row, bonus_applied=True)
    bonus_labels = {"provider": "revenuecat", "grant_type": "recurring_bonus"}
    transition_labels = {"from_state": "free", "to_state": "premium_active"}
    bonus_before = sample("mosaic_billing_credits_granted_total", **bonus_labels)
    transition_before = sample("mosaic_entitlement_transitions_total", **transition_labels)

    await MetricsObserver().on_committed(event, mutation, result)

    assert sample("mosaic_billing_credits_granted_total", **bonus_labels) == bonus_before + 30
    assert sample("mosaic_entitlement_transitions_total", **transition_labels) == transition_before + 1


def test_webhook_counted_by_outcome(client, api_user, signed_revenuecat):
    labels = {"provider": "revenuecat", "kind": "CONSUMABLE_PURCHASE", "outcome": "duplicate"}
    before = sample("mosaic_billing_webhook_events_total", **labels)
    body, headers = signed_revenuecat(
        revenuecat_payload(
            "evt-metrics-dup", "NON_RENEWING_PURCHASE", app_user_id="rc-api-user", product_id="credits10"
        )
    )

    client.post("/billing/revenuecat/webhook", content=body, headers=headers)
    client.post("/billing/revenuecat/webhook", content=body, headers=headers)

    assert sample("mosaic_billing_webhook_events_total", **labels) == before + 1


@pytest.mark.parametrize(
    "path,expected",
    [
        ("/users/3f2a9c/subscription", "/users/{user_id}/subscription"),
        ("/users/3f2a9c/listen-credits/consume", "/users/{user_id}/listen-credits/consume"),
        ("/users/3f2a9c", "/users/{user_id}"),
        ("/billing/stripe/webhook", "/billing/stripe/webhook"),
        ("/users", "/users"),
    ],
)
def test_normalize_endpoint(path, expected):
    assert normalize_endpoint(path) == expected
