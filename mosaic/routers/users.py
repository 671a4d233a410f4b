"""
User ledger API endpoints.

Provides the small user surface the billing ledger needs:
- Signup row creation, lookup and account deletion
- Derived subscription status
- Listen-credit consumption (atomic, never below zero)
- Admin sweep that clears lapsed premium

Security:
- Admin endpoints require the X-Admin-Key header
- Consumption is rate limited per user
"""

import hmac
import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from pydantic import BaseModel

from mosaic.config import Settings, get_settings
from mosaic.models.user import User, UserCreate
from mosaic.observability.logging import OperationContext, set_user_id
from mosaic.observability.metrics import (
    track_listen_credit_consumed,
    track_premium_expired,
)
from mosaic.rate_limits import consume_rate_limit, limiter
from mosaic.storage.database import UserDatabase, get_user_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["Users"])
admin_router = APIRouter(prefix="/admin", tags=["Admin"])


# Response models
class UserResponse(BaseModel):
    """Ledger row as exposed to the app."""

    user_id: str
    email: str
    name: str | None
    is_premium: bool
    premium_expires_at: str | None
    is_paused: bool
    is_cancelled: bool
    billing_issue: bool
    listen_credits: int
    active_subscription_id: str | None
    active_product_id: str | None
    created_at: str


class SubscriptionStatusResponse(BaseModel):
    """Derived entitlement state."""

    user_id: str
    state: str
    has_premium_access: bool
    premium_expires_at: str | None
    is_cancelled: bool
    is_paused: bool
    billing_issue: bool
    active_product_id: str | None
    listen_credits: int


class ListenCreditResponse(BaseModel):
    user_id: str
    listen_credits: int


class ExpireLapsedResponse(BaseModel):
    expired: int
    user_ids: list[str]


def _to_response(user: User) -> UserResponse:
    return UserResponse(
        user_id=user.user_id,
        email=user.email,
        name=user.name,
        is_premium=user.is_premium,
        premium_expires_at=user.premium_expires_at.isoformat() if user.premium_expires_at else None,
        is_paused=user.is_paused,
        is_cancelled=user.is_cancelled,
        billing_issue=user.billing_issue,
        listen_credits=user.listen_credits,
        active_subscription_id=user.active_subscription_id,
        active_product_id=user.active_product_id,
        created_at=user.created_at.isoformat(),
    )


async def _get_user_or_404(db: UserDatabase, user_id: str) -> User:
    user = await db.get_user(user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"User '{user_id}' not found",
        )
    set_user_id(user_id)
    return user


# Dependency: Admin authentication
async def verify_admin_key(
    x_admin_key: str = Header(...),
    settings: Settings = Depends(get_settings),
) -> bool:
    """
    Verify admin API key.

    Admin access is disabled entirely when ADMIN_API_KEY is unset.
    """
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin access is not configured",
        )
    if not hmac.compare_digest(x_admin_key.encode(), settings.admin_api_key.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin API key",
        )
    return True


@router.post("", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    user_data: UserCreate,
    db: UserDatabase = Depends(get_user_db),
    settings: Settings = Depends(get_settings),
) -> UserResponse:
    """
    Create the ledger row for a new account.

    New users start without premium and with the configured starter credits.

    Raises:
        409: Email already registered
    """
    user = await db.create_user(user_data, starter_credits=settings.credits.starter_credits)

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A user with this email already exists",
        )

    return _to_response(user)


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: str,
    db: UserDatabase = Depends(get_user_db),
) -> UserResponse:
    """Get a user's ledger row."""
    return _to_response(await _get_user_or_404(db, user_id))


@router.get("/{user_id}/subscription", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    user_id: str,
    db: UserDatabase = Depends(get_user_db),
) -> SubscriptionStatusResponse:
    """
    Get the derived subscription state.

    A cancelled or billing-issue subscription keeps premium access until its
    expiry passes.
    """
    user = await _get_user_or_404(db, user_id)
    now = datetime.now(UTC)

    return SubscriptionStatusResponse(
        user_id=user.user_id,
        state=user.entitlement_state(now).value,
        has_premium_access=user.has_premium_access(now),
        premium_expires_at=user.premium_expires_at.isoformat() if user.premium_expires_at else None,
        is_cancelled=user.is_cancelled,
        is_paused=user.is_paused,
        billing_issue=user.billing_issue,
        active_product_id=user.active_product_id,
        listen_credits=user.listen_credits,
    )


@router.post("/{user_id}/listen-credits/consume", response_model=ListenCreditResponse)
@limiter.limit(consume_rate_limit)
async def consume_listen_credit(
    request: Request,  # Required by slowapi
    user_id: str,
    db: UserDatabase = Depends(get_user_db),
) -> ListenCreditResponse:
    """
    Spend one listen credit.

    Raises:
        404: Unknown user
        403: No listen credits remaining
    """
    await _get_user_or_404(db, user_id)

    remaining = await db.consume_listen_credit(user_id)
    if remaining is None:
        logger.info("Listen credit refused: balance exhausted", extra={"user_id": user_id})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No listen credits remaining",
        )

    track_listen_credit_consumed()
    return ListenCreditResponse(user_id=user_id, listen_credits=remaining)


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(
    user_id: str,
    db: UserDatabase = Depends(get_user_db),
) -> Response:
    """Delete a user's ledger row (explicit account deletion)."""
    deleted = await db.delete_user(user_id)

    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"User '{user_id}' not found",
        )

    logger.info(f"Deleted user: {user_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Admin endpoints


@admin_router.post(
    "/billing/expire-lapsed",
    response_model=ExpireLapsedResponse,
    dependencies=[Depends(verify_admin_key)],
)
async def expire_lapsed_premium(
    db: UserDatabase = Depends(get_user_db),
) -> ExpireLapsedResponse:
    """
    Clear premium for every user whose stored expiry has passed (admin only).

    Covers cancelled subscriptions whose EXPIRATION webhook never arrived.
    """
    with OperationContext("expire_lapsed_premium"):
        user_ids = await db.expire_lapsed_premium()

    track_premium_expired(len(user_ids))

    return ExpireLapsedResponse(expired=len(user_ids), user_ids=user_ids)
