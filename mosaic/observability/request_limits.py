"""
Request size limiting middleware for DoS protection.

Provider webhook bodies are a few kilobytes; anything far larger is rejected
before it is buffered.
"""

import logging
from collections.abc import Callable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """
    Middleware to enforce request body size limits.

    Configuration:
        max_body_size: Maximum request body size in bytes (default: 1MB)
    """

    def __init__(self, app, max_body_size: int = 1 * 1024 * 1024):
        """
        Initialize request size limit middleware.

        Args:
            app: FastAPI application
            max_body_size: Maximum request body size in bytes
        """
        super().__init__(app)
        self.max_body_size = max_body_size

        logger.info(
            f"Request size limit middleware enabled (max: {max_body_size / 1024 / 1024:.1f}MB)"
        )

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Check request body size before processing.

        Args:
            request: Incoming request
            call_next: Next middleware in chain

        Returns:
            Response: Either error response or result from next middleware
        """
        content_length = request.headers.get("content-length")

        if content_length:
            try:
                content_length_int = int(content_length)
            except ValueError:
                return JSONResponse(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    content={"detail": "Invalid Content-Length header"},
                )

            if content_length_int > self.max_body_size:
                logger.warning(
                    "Request body too large",
                    extra={
                        "path": request.url.path,
                        "method": request.method,
                        "content_length": content_length_int,
                        "max_allowed": self.max_body_size,
                    },
                )

                return JSONResponse(
                    status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    content={
                        "detail": "Request body too large",
                        "max_size_bytes": self.max_body_size,
                        "received_size_bytes": content_length_int,
                    },
                )

        return await call_next(request)
