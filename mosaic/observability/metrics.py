"""
Prometheus metrics for production observability.

Metrics tracked:
- Request latency (histogram) per endpoint
- Request count (counter) with status codes
- Active requests (gauge)
- Billing webhook outcomes per provider and event kind (counter)
- Signature verification failures (counter)
- Listen credits granted and consumed (counters)
- Entitlement state transitions (counter)
- Error rates (counter) by error type

Integration:
- Exposed via /metrics endpoint (Prometheus scraping)
- Label values are bounded enums (never user ids or emails)
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ============================================================================
# REQUEST METRICS
# ============================================================================

# Request duration histogram (P50, P95, P99)
http_request_duration_seconds = Histogram(
    "mosaic_http_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "endpoint", "status_code"],
    buckets=(
        0.001,  # 1ms
        0.005,  # 5ms
        0.010,  # 10ms
        0.025,  # 25ms
        0.050,  # 50ms
        0.100,  # 100ms
        0.250,  # 250ms
        0.500,  # 500ms
        1.000,  # 1s
        2.500,  # 2.5s
    ),
)

# Request counter (total requests with labels)
http_requests_total = Counter(
    "mosaic_http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status_code"],
)

# Active requests gauge (in-flight requests)
http_requests_active = Gauge(
    "mosaic_http_requests_active",
    "Number of in-flight HTTP requests",
    labelnames=["method", "endpoint"],
)

# ============================================================================
# BILLING METRICS
# ============================================================================

# Webhook deliveries by outcome (applied, duplicate, ignored, unresolved_user, ...)
billing_webhook_events_total = Counter(
    "mosaic_billing_webhook_events_total",
    "Billing webhook deliveries by provider, event kind and outcome",
    labelnames=["provider", "kind", "outcome"],
)

# Signature rejections (possible misconfiguration or forged requests)
billing_signature_failures_total = Counter(
    "mosaic_billing_signature_failures_total",
    "Billing webhooks rejected by signature verification",
    labelnames=["provider"],
)

# Webhook processing latency (verification through commit)
billing_webhook_duration_seconds = Histogram(
    "mosaic_billing_webhook_duration_seconds",
    "Billing webhook processing latency",
    labelnames=["provider"],
    buckets=(
        0.001,  # 1ms
        0.005,  # 5ms
        0.010,  # 10ms
        0.025,  # 25ms
        0.050,  # 50ms
        0.100,  # 100ms
        0.250,  # 250ms
        1.000,  # 1s
    ),
)

# Listen credits granted (grant_type: recurring_bonus, consumable)
billing_credits_granted_total = Counter(
    "mosaic_billing_credits_granted_total",
    "Listen credits granted by billing events",
    labelnames=["provider", "grant_type"],
)

# Entitlement transitions (from_state -> to_state)
entitlement_transitions_total = Counter(
    "mosaic_entitlement_transitions_total",
    "Entitlement state changes caused by billing events or expiry sweeps",
    labelnames=["from_state", "to_state"],
)

# Listen credits spent by the app
listen_credits_consumed_total = Counter(
    "mosaic_listen_credits_consumed_total",
    "Listen credits consumed",
)

# Users downgraded by the lapsed-premium sweep
premium_expired_total = Counter(
    "mosaic_premium_expired_total",
    "Users whose premium was cleared by the expiry sweep",
)

# ============================================================================
# ERROR METRICS
# ============================================================================

# Error counter by type
errors_total = Counter(
    "mosaic_errors_total",
    "Total errors by type",
    labelnames=["error_type", "endpoint"],
)

# Rate limit exceeded counter
rate_limit_exceeded_total = Counter(
    "mosaic_rate_limit_exceeded_total",
    "Total rate limit violations",
    labelnames=["endpoint"],
)

# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def track_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """
    Track HTTP request metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        endpoint: API endpoint path (normalized, no ids)
        status_code: HTTP status code
        duration_seconds: Request duration in seconds
    """
    http_request_duration_seconds.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).observe(duration_seconds)

    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).inc()


def track_webhook_event(provider: str, kind: str, outcome: str) -> None:
    """
    Track a billing webhook delivery.

    Args:
        provider: stripe, revenuecat or appstore
        kind: Canonical event kind (or 'none' before normalization)
        outcome: applied, duplicate, ignored, unresolved_user, no_change,
            invalid_signature, malformed, store_failure
    """
    billing_webhook_events_total.labels(provider=provider, kind=kind, outcome=outcome).inc()


def track_webhook_duration(provider: str, duration_seconds: float) -> None:
    billing_webhook_duration_seconds.labels(provider=provider).observe(duration_seconds)


def track_signature_failure(provider: str) -> None:
    """Track a webhook rejected for a bad or missing signature."""
    billing_signature_failures_total.labels(provider=provider).inc()


def track_credits_granted(provider: str, grant_type: str, credits: int) -> None:
    """
    Track listen credits added to a ledger.

    Args:
        provider: Billing provider that triggered the grant
        grant_type: recurring_bonus or consumable
        credits: Number of credits granted
    """
    if credits <= 0:
        return
    billing_credits_granted_total.labels(provider=provider, grant_type=grant_type).inc(credits)


def track_entitlement_transition(from_state: str, to_state: str) -> None:
    """Track an entitlement state change (no-op when the state is unchanged)."""
    if from_state == to_state:
        return
    entitlement_transitions_total.labels(from_state=from_state, to_state=to_state).inc()


def track_listen_credit_consumed(amount: int = 1) -> None:
    listen_credits_consumed_total.inc(amount)


def track_premium_expired(count: int) -> None:
    if count > 0:
        premium_expired_total.inc(count)


def track_error(error_type: str, endpoint: str) -> None:
    """
    Track error occurrence.

    Args:
        error_type: Error type (validation, authentication, storage, etc.)
        endpoint: API endpoint where error occurred
    """
    errors_total.labels(
        error_type=error_type,
        endpoint=endpoint,
    ).inc()


def track_rate_limit_exceeded(endpoint: str) -> None:
    """Track rate limit violation."""
    rate_limit_exceeded_total.labels(endpoint=endpoint).inc()


# ============================================================================
# METRICS ENDPOINT
# ============================================================================


def generate_metrics() -> tuple[bytes, str]:
    """
    Generate Prometheus metrics in exposition format (bytes).

    Returns:
        tuple: (metrics_bytes, content_type)
    """
    metrics_data = generate_latest(REGISTRY)
    return metrics_data, CONTENT_TYPE_LATEST
