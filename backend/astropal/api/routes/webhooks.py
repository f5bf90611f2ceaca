"""
Stripe Webhook Handler

Receives Stripe webhook deliveries for the subscription and payment
endpoints. Each endpoint is signed with its own secret; everything after
signature verification (idempotency, retries, tier transitions) lives in
BillingService.

Responses:
- 200 {"received": true, "processed": true} for processed and duplicate events
- 400 text body for missing/invalid signatures and events that failed
  every attempt (Stripe then redelivers)
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from astropal.api.dependencies import get_billing_service
from astropal.domain.billing import WebhookType
from astropal.infrastructure.services.billing_service import BillingService


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/stripe/webhook/{webhook_type}")
async def stripe_webhook(
    webhook_type: WebhookType,
    request: Request,
    billing: BillingService = Depends(get_billing_service),
):
    """
    Handle one Stripe webhook delivery.

    The raw body is passed through untouched; the signature covers the
    exact bytes Stripe sent.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    result = await billing.process_webhook(payload, signature, webhook_type)

    if result.status_code != 200:
        return PlainTextResponse(result.error or "Webhook Error", status_code=result.status_code)

    return JSONResponse({"received": result.received, "processed": result.processed})
