"""
Observability middleware for automatic metric tracking.

Components:
- PrometheusMiddleware: Tracks all HTTP requests (latency, count, active)
- ErrorTrackingMiddleware: Captures and classifies errors
"""

import logging
import re
import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from mosaic.observability.metrics import (
    http_requests_active,
    track_error,
    track_request,
)

logger = logging.getLogger(__name__)

_USER_SEGMENT = re.compile(r"/users/[^/]+")


def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metric cardinality.

    Examples:
        /users/3f2a.../subscription -> /users/{user_id}/subscription
        /billing/stripe/webhook -> /billing/stripe/webhook (unchanged)
    """
    return _USER_SEGMENT.sub("/users/{user_id}", path)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Middleware for automatic Prometheus metric tracking.

    Tracks:
    - Request latency (histogram)
    - Request count (counter)
    - Active requests (gauge)
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Track request metrics.

        Args:
            request: Incoming request
            call_next: Next middleware/handler

        Returns:
            Response: Handler response
        """
        endpoint = normalize_endpoint(request.url.path)
        method = request.method

        http_requests_active.labels(method=method, endpoint=endpoint).inc()

        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code

        except Exception as exc:
            logger.error(f"Request failed: {exc}", exc_info=True)
            track_error(error_type=type(exc).__name__, endpoint=endpoint)
            raise

        finally:
            duration_seconds = time.perf_counter() - start_time

            http_requests_active.labels(method=method, endpoint=endpoint).dec()

            track_request(
                method=method,
                endpoint=endpoint,
                status_code=status_code,
                duration_seconds=duration_seconds,
            )

        return response


class ErrorTrackingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for error classification and tracking.

    Classifies errors into categories:
    - validation: Pydantic validation errors
    - authentication: Webhook signature failures
    - storage: Ledger database errors
    - rate_limit: slowapi rejections
    - internal: Unhandled exceptions
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)

        except Exception as exc:
            error_type = self._classify_error(exc)
            track_error(error_type=error_type, endpoint=normalize_endpoint(request.url.path))

            # Re-raise for FastAPI exception handlers
            raise

    def _classify_error(self, exc: Exception) -> str:
        """
        Classify error into category.

        Args:
            exc: Exception instance

        Returns:
            str: Error category
        """
        exc_name = type(exc).__name__

        if "ValidationError" in exc_name or "ValueError" in exc_name:
            return "validation"

        if "WebhookAuth" in exc_name or "Unauthorized" in exc_name:
            return "authentication"

        if "LedgerStore" in exc_name or "StoreFailure" in exc_name or "sqlite3" in type(exc).__module__:
            return "storage"

        if "RateLimitExceeded" in exc_name:
            return "rate_limit"

        return "internal"
