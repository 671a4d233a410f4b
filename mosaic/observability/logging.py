"""
Structured logging with JSON output for production observability.

Features:
- JSON output for log aggregation (ELK, Loki, CloudWatch)
- Request context propagation (user_id, request_id, trace_id)
- Redaction of webhook secrets, signatures and emails

Architecture:
- structlog for structured logging
- Context variables for request-scoped data
- Processors for formatting and enrichment
- Multiple output formats (JSON for prod, console for dev)
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar

import structlog
from structlog.types import EventDict, Processor

# Context variables for request-scoped data
# These propagate across async boundaries automatically
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)

SENSITIVE_FIELDS = {
    "password",
    "authorization",
    "secret",
    "webhook_secret",
    "token",
    "signature",
    "stripe_signature",
    "admin_api_key",
}


# ============================================================================
# CUSTOM PROCESSORS
# ============================================================================


def add_request_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add request context to log events.

    Injects:
    - request_id: Unique ID for each HTTP request
    - user_id: Ledger row the request concerns (if resolved)
    - trace_id: Distributed tracing ID (for multi-service correlation)
    """
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    user_id = user_id_var.get()
    if user_id and "user_id" not in event_dict:
        event_dict["user_id"] = user_id

    trace_id = trace_id_var.get()
    if trace_id:
        event_dict["trace_id"] = trace_id

    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add ISO 8601 timestamp with microsecond precision.

    Format: 2025-01-15T10:30:45.123456Z
    """
    event_dict["timestamp"] = (
        time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime())
        + f".{int((time.time() % 1) * 1000000):06d}Z"
    )
    return event_dict


def add_service_metadata(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add service metadata for log aggregation.

    Configured via LOGGING_SERVICE_NAME, LOGGING_SERVICE_VERSION and
    LOGGING_ENVIRONMENT.
    """
    # Import here to avoid circular dependency
    try:
        from mosaic.config import get_settings

        settings = get_settings()
        event_dict["service"] = settings.logging.service_name
        event_dict["version"] = settings.logging.service_version
        event_dict["environment"] = settings.logging.environment
    except Exception:
        # Fallback if config not available
        event_dict["service"] = "mosaic-billing"
        event_dict["version"] = "0.1.0"
        event_dict["environment"] = "development"
    return event_dict


def redact_sensitive_fields(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Redact sensitive fields to prevent PII/credential leakage.

    Redacted fields:
    - secrets, signatures, authorization values: ***REDACTED***
    - email: domain only (user@example.com -> ***@example.com)
    """
    for key in list(event_dict.keys()):
        lowered = key.lower()
        if lowered in SENSITIVE_FIELDS and isinstance(event_dict[key], str):
            event_dict[key] = "***REDACTED***"

        # Redact email addresses
        if lowered == "email" and isinstance(event_dict[key], str):
            email = event_dict[key]
            if "@" in email:
                domain = email.split("@")[1]
                event_dict[key] = f"***@{domain}"

    return event_dict


def add_exception_info(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add structured exception information.

    Extracts exception_type and exception_message so errors can be grouped
    and alerted on without parsing tracebacks.
    """
    exc_info = event_dict.get("exc_info")
    if exc_info and isinstance(exc_info, tuple) and len(exc_info) == 3:
        exc_type, exc_value, exc_tb = exc_info
        event_dict["exception_type"] = exc_type.__name__ if exc_type else "Unknown"
        event_dict["exception_message"] = str(exc_value) if exc_value else ""

    return event_dict


# ============================================================================
# LOGGER CONFIGURATION
# ============================================================================


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    colorized: bool = False,
) -> None:
    """
    Configure structured logging for production.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON output (True for production, False for development)
        colorized: Colorize console output (only for development)

    JSON (production):
        {
          "timestamp": "2025-01-15T10:30:45.123456Z",
          "level": "info",
          "event": "Billing webhook processed",
          "service": "mosaic-billing",
          "request_id": "req_abc123",
          "provider": "revenuecat",
          "kind": "RENEWAL"
        }
    """
    # Shared processors (run for all outputs)
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_context,
        add_service_metadata,
        redact_sensitive_fields,
        add_timestamp,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        add_exception_info,
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=colorized),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


# ============================================================================
# LOGGER FACTORY
# ============================================================================


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("Listen credit consumed", remaining=12)
    """
    return structlog.get_logger(name)


# ============================================================================
# CONTEXT MANAGERS
# ============================================================================


class RequestContext:
    """
    Context manager for request-scoped logging.

    Automatically generates request_id and propagates user_id.

    Thread-safe:
        - Uses contextvars for async-safe propagation
        - Each async task has isolated context
    """

    def __init__(
        self,
        user_id: str | None = None,
        trace_id: str | None = None,
        request_id: str | None = None,
    ):
        self.request_id = request_id or f"req_{uuid.uuid4().hex[:16]}"
        self.user_id = user_id
        self.trace_id = trace_id or f"trace_{uuid.uuid4().hex[:16]}"

        # Tokens for context cleanup
        self._request_id_token = None
        self._user_id_token = None
        self._trace_id_token = None

    def __enter__(self):
        """Set context variables."""
        self._request_id_token = request_id_var.set(self.request_id)
        # Always set user_id (even if None) so a later set_user_id() cannot
        # leak across requests.
        self._user_id_token = user_id_var.set(self.user_id)
        self._trace_id_token = trace_id_var.set(self.trace_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Reset context variables."""
        if self._request_id_token is not None:
            request_id_var.reset(self._request_id_token)
        if self._user_id_token is not None:
            user_id_var.reset(self._user_id_token)
        if self._trace_id_token is not None:
            trace_id_var.reset(self._trace_id_token)


class OperationContext:
    """
    Context manager for operation-level logging with timing.

    Usage:
        with OperationContext("expire_lapsed_premium"):
            await db.expire_lapsed_premium()
        # Logs: "expire_lapsed_premium completed" with latency_ms
    """

    def __init__(self, operation: str, **kwargs):
        self.operation = operation
        self.context = kwargs
        self.logger = get_logger(f"operation.{operation}")
        self.start_time = None

    def __enter__(self):
        """Log operation start and begin timing."""
        self.start_time = time.perf_counter()
        self.logger.debug(f"{self.operation} started", **self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Log operation completion with latency."""
        duration_ms = (time.perf_counter() - self.start_time) * 1000

        if exc_type is None:
            self.logger.info(
                f"{self.operation} completed",
                latency_ms=round(duration_ms, 2),
                **self.context,
            )
        else:
            self.logger.error(
                f"{self.operation} failed",
                latency_ms=round(duration_ms, 2),
                exception_type=exc_type.__name__,
                **self.context,
                exc_info=True,
            )


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def set_request_id(request_id: str) -> None:
    """Set request ID for current context."""
    request_id_var.set(request_id)


def set_user_id(user_id: str) -> None:
    """Set user ID for current context."""
    user_id_var.set(user_id)


def get_request_id() -> str | None:
    """Get request ID from current context."""
    return request_id_var.get()


def get_user_id() -> str | None:
    """Get user ID from current context."""
    return user_id_var.get()


def get_trace_id() -> str | None:
    """Get trace ID from current context."""
    return trace_id_var.get()
