"""
Billing webhook endpoints.

Routes:
- POST /billing/stripe/webhook
- POST /billing/revenuecat/webhook
- POST /billing/appstore/notifications

Every route reads the raw body (signatures cover the exact bytes) and answers
plain-text "ok" once the delivery is durably handled. Non-2xx responses make
the provider retry.
"""

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import PlainTextResponse

from mosaic.billing.webhooks import (
    BillingWebhookProcessor,
    WebhookError,
    get_webhook_processor,
)
from mosaic.models.billing import BillingProvider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


async def _handle_webhook(
    provider: BillingProvider,
    request: Request,
    processor: BillingWebhookProcessor,
) -> PlainTextResponse:
    body = await request.body()

    try:
        await processor.process(provider, body, dict(request.headers))

    except WebhookError as e:
        logger.warning(
            f"{provider.value} webhook rejected: {e}",
            extra={"provider": provider.value, "status_code": e.status_code},
        )
        return PlainTextResponse(str(e), status_code=e.status_code)

    except Exception as e:
        logger.error(
            f"{provider.value} webhook failed: {e}",
            exc_info=True,
            extra={"provider": provider.value},
        )
        return PlainTextResponse(
            "server error", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
        )

    return PlainTextResponse("ok")


@router.post("/stripe/webhook", response_class=PlainTextResponse)
async def stripe_webhook(
    request: Request,
    processor: BillingWebhookProcessor = Depends(get_webhook_processor),
) -> PlainTextResponse:
    """
    Stripe webhook endpoint.

    Verified with the Stripe-Signature header. Handles payment_intent.succeeded
    (credit packs), customer.subscription.* and invoice.* events.
    """
    return await _handle_webhook(BillingProvider.STRIPE, request, processor)


@router.post("/revenuecat/webhook", response_class=PlainTextResponse)
async def revenuecat_webhook(
    request: Request,
    processor: BillingWebhookProcessor = Depends(get_webhook_processor),
) -> PlainTextResponse:
    """
    RevenueCat webhook endpoint.

    Verified with the dashboard Authorization header and/or an HMAC signature
    header (x-revenuecat-signature).
    """
    return await _handle_webhook(BillingProvider.REVENUECAT, request, processor)


@router.post("/appstore/notifications", response_class=PlainTextResponse)
async def appstore_notifications(
    request: Request,
    processor: BillingWebhookProcessor = Depends(get_webhook_processor),
) -> PlainTextResponse:
    """
    App Store Server Notifications (V1 and V2).

    The raw notification is stored for diagnostics before it is applied.
    Apple treats any 200 as delivered.
    """
    return await _handle_webhook(BillingProvider.APPSTORE, request, processor)
