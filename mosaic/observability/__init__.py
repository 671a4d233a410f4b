"""
Observability infrastructure for production monitoring.

Components:
- metrics.py: Prometheus metrics (counters, histograms, gauges)
- logging.py: Structured JSON logging with request context
- middleware.py: Request metrics and error classification
"""

from mosaic.observability.metrics import (
    track_credits_granted,
    track_entitlement_transition,
    track_request,
    track_signature_failure,
    track_webhook_event,
)

__all__ = [
    "track_request",
    "track_webhook_event",
    "track_signature_failure",
    "track_credits_granted",
    "track_entitlement_transition",
]
