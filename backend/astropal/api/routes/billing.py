"""
Billing API Routes

Public billing information for the pricing page and reminder emails.
"""

from fastapi import APIRouter, Depends

from astropal.api.dependencies import get_stripe_service
from astropal.domain.billing import PaymentLinks
from astropal.infrastructure.payments.stripe_service import StripeService


router = APIRouter(prefix="/billing", tags=["Billing"])


@router.get("/payment-links", response_model=PaymentLinks)
async def get_payment_links(
    stripe_service: StripeService = Depends(get_stripe_service),
) -> PaymentLinks:
    """Upgrade offers with their Stripe payment links."""
    return stripe_service.get_payment_links()
