"""
FastAPI application for the Mosaic billing ledger service.

Provides REST API for:
- Billing webhooks (Stripe, RevenueCat, App Store)
- User ledger lookup, subscription status and listen-credit consumption
- Health monitoring and Prometheus metrics
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from mosaic.config import get_settings
from mosaic.observability.logging import configure_logging, get_logger
from mosaic.observability.logging_middleware import (
    SlowRequestLogger,
    StructuredLoggingMiddleware,
)
from mosaic.observability.metrics import generate_metrics, track_rate_limit_exceeded
from mosaic.observability.middleware import (
    ErrorTrackingMiddleware,
    PrometheusMiddleware,
    normalize_endpoint,
)
from mosaic.observability.request_limits import RequestSizeLimitMiddleware
from mosaic.rate_limits import limiter
from mosaic.routers import admin_router, billing_router, users_router
from mosaic.storage.database import LedgerStoreError, get_user_db

# Initialize structured logging
settings = get_settings()
configure_logging(
    log_level=settings.logging.level,
    json_output=settings.logging.json_output,
    colorized=settings.logging.colorized,
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown:
    - Open and migrate the ledger database
    - Report providers running without signature verification
    """
    settings = get_settings()

    logger.info("=== Mosaic Billing Service Starting ===")

    db = None
    try:
        db = await get_user_db()
        logger.info("✓ Ledger database ready", path=settings.storage.database_path)

        insecure = settings.billing.insecure_providers
        if insecure and not settings.billing.enforce_signatures:
            logger.warning("Webhook signature verification disabled", providers=insecure)

        logger.info("=== Service Ready ===")
        yield  # Application runs here

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        logger.info("=== Shutting down ===")
        if db is not None:
            db.close()
            logger.info("✓ Ledger database closed")
        logger.info("=== Shutdown complete ===")


# Create FastAPI app
app = FastAPI(
    title="Mosaic Billing API",
    description="Billing reconciliation and listen-credit ledger for the Mosaic story app",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Rate limiter state
app.state.limiter = limiter


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """Count the rejection, then answer with slowapi's 429."""
    track_rate_limit_exceeded(normalize_endpoint(request.url.path))
    return _rate_limit_exceeded_handler(request, exc)


app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# CORS middleware (configured via environment variables)
cors_origins = settings.cors.origins_list

if "*" in cors_origins:
    logger.warning("CORS allows ALL origins (*) - configure CORS_ALLOWED_ORIGINS for production!")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=settings.cors.allow_credentials,
    allow_methods=settings.cors.methods_list,
    allow_headers=settings.cors.headers_list,
    max_age=settings.cors.max_age,
)

# Observability and security middleware
# Order matters (processed in reverse order of registration):
# 1. RequestSizeLimitMiddleware (innermost) - Rejects oversized requests first
# 2. ErrorTrackingMiddleware - Classifies errors
# 3. PrometheusMiddleware - Tracks metrics
# 4. SlowRequestLogger - Logs slow requests
# 5. StructuredLoggingMiddleware (outermost) - Sets request context
app.add_middleware(StructuredLoggingMiddleware)
app.add_middleware(
    SlowRequestLogger,
    warning_threshold_ms=settings.logging.slow_request_warning_ms,
    error_threshold_ms=settings.logging.slow_request_error_ms,
)
app.add_middleware(PrometheusMiddleware)
app.add_middleware(ErrorTrackingMiddleware)
app.add_middleware(
    RequestSizeLimitMiddleware,
    max_body_size=settings.service.max_request_body_size,
)

# Include routers
app.include_router(billing_router)
app.include_router(users_router)
app.include_router(admin_router)


# Exception handler for ledger storage errors
@app.exception_handler(LedgerStoreError)
async def ledger_store_error_handler(request: Request, exc: LedgerStoreError):
    """Handle ledger database failures."""
    logger.error(
        "Ledger store error occurred",
        path=request.url.path,
        method=request.method,
        error=str(exc),
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Ledger storage temporarily unavailable"},
    )


# Exception handler for validation errors
@app.exception_handler(ValueError)
async def validation_error_handler(request: Request, exc: ValueError):
    """Handle validation errors."""
    logger.warning(f"Validation error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": "Validation failed", "error": str(exc)},
    )


@app.get("/health", tags=["Health"])
async def health_check(response: Response):
    """
    Health check.

    Verifies the ledger database answers a trivial query.

    Returns:
        HTTP 200: healthy
        HTTP 503: ledger database unavailable
    """
    try:
        db = await get_user_db()
        db._get_connection().execute("SELECT 1").fetchone()
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "unhealthy", "database": "unavailable"}

    return {
        "status": "healthy",
        "database": "ok",
        "insecure_webhook_providers": get_settings().billing.insecure_providers,
    }


# Prometheus metrics endpoint
@app.get("/metrics", tags=["System"])
async def metrics():
    """
    Prometheus metrics endpoint.

    Metrics include:
    - HTTP request latency and counts
    - Billing webhook outcomes and signature failures
    - Listen credits granted and consumed
    - Entitlement transitions
    - Error rates by type
    """
    metrics_data, content_type = generate_metrics()
    return Response(content=metrics_data, media_type=content_type)


@app.get("/", tags=["System"])
async def root():
    """
    Root endpoint with API information.
    """
    return {
        "service": "Mosaic Billing API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "mosaic.main:app",
        host=settings.service.host,
        port=settings.service.port,
        reload=settings.service.reload,
        log_level="info",
    )
