"""
Rate limiting configuration (slowapi).

Listen-credit consumption is limited per user (the user_id path parameter);
everything else falls back to the client IP.
"""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from mosaic.config import get_settings


def get_user_id_for_rate_limit(request: Request) -> str:
    """
    Extract the rate limit key.

    Falls back to IP address when the route has no user_id.
    """
    user_id = request.path_params.get("user_id")
    if user_id:
        return f"user:{user_id}"
    return get_remote_address(request)


def consume_rate_limit() -> str:
    """slowapi limit string for listen-credit consumption (e.g. '60/minute')."""
    return get_settings().service.consume_rate_limit


limiter = Limiter(key_func=get_user_id_for_rate_limit)
