"""
FastAPI middleware for structured logging with request context.

Automatically:
- Generates request_id for each request
- Extracts trace_id from X-Trace-ID header (distributed tracing)
- Logs request/response with latency
- Propagates context to all log calls
"""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from mosaic.observability.logging import RequestContext, get_logger

logger = get_logger(__name__)


class RequestLoggingFilter:
    """
    Excludes health check and metrics endpoints from request logs.

    Prevents log spam from readiness probes and Prometheus scraping.
    """

    EXCLUDED_PATHS = {
        "/health",
        "/metrics",
        "/docs",
        "/redoc",
        "/openapi.json",
    }

    @classmethod
    def should_log(cls, path: str) -> bool:
        return path not in cls.EXCLUDED_PATHS


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for automatic request logging with structured context.

    Headers:
    - X-Request-ID: Client-provided request ID (optional, auto-generated if missing)
    - X-Trace-ID: Distributed trace ID (optional, auto-generated if missing)
    - Returns X-Request-ID and X-Trace-ID in response headers

    Logging output:
        {
          "timestamp": "2025-01-15T10:30:45.123456Z",
          "level": "info",
          "event": "HTTP request completed",
          "request_id": "req_abc123",
          "trace_id": "trace_xyz789",
          "method": "POST",
          "path": "/billing/revenuecat/webhook",
          "status_code": 200,
          "latency_ms": 12.4,
          "service": "mosaic-billing"
        }
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Process request with structured logging context.

        Args:
            request: Incoming HTTP request
            call_next: Next middleware/handler

        Returns:
            Response: HTTP response with injected headers
        """
        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:16]}"
        trace_id = request.headers.get("x-trace-id") or f"trace_{uuid.uuid4().hex[:16]}"
        should_log = RequestLoggingFilter.should_log(request.url.path)

        with RequestContext(request_id=request_id, trace_id=trace_id):
            start_time = time.perf_counter()

            if should_log:
                logger.info(
                    "HTTP request started",
                    method=request.method,
                    path=request.url.path,
                    client_host=request.client.host if request.client else None,
                )

            try:
                response = await call_next(request)
            except Exception as exc:
                latency_ms = (time.perf_counter() - start_time) * 1000
                logger.error(
                    "HTTP request failed",
                    method=request.method,
                    path=request.url.path,
                    latency_ms=round(latency_ms, 2),
                    exception_type=type(exc).__name__,
                    exc_info=True,
                )
                # Re-raise for FastAPI exception handlers
                raise

            latency_ms = (time.perf_counter() - start_time) * 1000
            if should_log:
                logger.info(
                    "HTTP request completed",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    latency_ms=round(latency_ms, 2),
                )

            # Inject trace headers in response (for client-side correlation)
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Trace-ID"] = trace_id

            return response


class SlowRequestLogger(BaseHTTPMiddleware):
    """
    Middleware for logging slow requests.

    Webhook providers time out and retry slow deliveries, so latency here
    turns directly into duplicate traffic.
    """

    def __init__(
        self,
        app: ASGIApp,
        warning_threshold_ms: float = 250.0,
        error_threshold_ms: float = 1000.0,
    ):
        """
        Initialize slow request logger.

        Args:
            app: ASGI application
            warning_threshold_ms: Log warning if request exceeds this
            error_threshold_ms: Log error if request exceeds this
        """
        super().__init__(app)
        self.warning_threshold_ms = warning_threshold_ms
        self.error_threshold_ms = error_threshold_ms

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()

        response = await call_next(request)

        latency_ms = (time.perf_counter() - start_time) * 1000

        if latency_ms > self.error_threshold_ms:
            logger.error(
                "Slow request detected (exceeds error threshold)",
                method=request.method,
                path=request.url.path,
                latency_ms=round(latency_ms, 2),
                threshold_ms=self.error_threshold_ms,
                status_code=response.status_code,
            )
        elif latency_ms > self.warning_threshold_ms:
            logger.warning(
                "Slow request detected (exceeds warning threshold)",
                method=request.method,
                path=request.url.path,
                latency_ms=round(latency_ms, 2),
                threshold_ms=self.warning_threshold_ms,
                status_code=response.status_code,
            )

        return response
