"""
Stripe Payment Service

Infrastructure service around the Stripe SDK: webhook signature checks,
customer lookup, tier resolution from subscription objects, and the
static upgrade offers.
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

import stripe
from stripe import StripeError

from astropal.config.settings import Settings
from astropal.domain.billing import (
    PaymentLinks,
    PaymentOffer,
    UserTier,
    WebhookType,
)
from astropal.infrastructure.exceptions import (
    StripeServiceError,
    WebhookPayloadError,
    WebhookSignatureError,
)


logger = logging.getLogger(__name__)


BASIC_FEATURES = [
    "2 personalized emails daily",
    "Weekly cosmic weather",
    "Monthly forecast",
]

PRO_FEATURES = [
    "3 personalized emails daily",
    "News analysis with cosmic interpretation",
    "Advanced astrological insights",
    "Priority support",
]


def extract_price_id(subscription: Dict[str, Any]) -> Optional[str]:
    """Price id of the first subscription item, if any."""
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    item = items[0] or {}
    price = item.get("price") or item.get("plan") or {}
    return price.get("id")


def parse_signature_timestamp(signature: str) -> Optional[int]:
    """The t= element of a Stripe-Signature header."""
    for element in signature.split(","):
        key, _, value = element.strip().partition("=")
        if key == "t":
            try:
                return int(value)
            except ValueError:
                return None
    return None


class StripeService:
    """
    Stripe payment processing service.

    Network calls go through asyncio.to_thread; the SDK is blocking.
    """

    def __init__(
        self,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize Stripe with API key from settings."""
        self._settings = settings
        self._clock = clock
        self._tolerance = settings.stripe_webhook_tolerance_seconds

        if settings.stripe_secret_key:
            stripe.api_key = settings.stripe_secret_key

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: str,
        webhook_type: WebhookType,
    ) -> Dict[str, Any]:
        """
        Verify webhook signature and decode the event.

        The HMAC-SHA256 over "{t}.{body}" must match one of the v1
        signatures, and t must lie within the tolerance window on either
        side of now.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header
            webhook_type: Endpoint the event arrived on; selects the secret

        Returns:
            The event as a plain dict

        Raises:
            WebhookSignatureError if the signature is invalid or stale, or the
                body is not UTF-8 text
            WebhookPayloadError if the verified body is not an event
        """
        secret = self._settings.webhook_secret_for(webhook_type.value)
        if not secret:
            raise WebhookSignatureError(
                f"No signing secret configured for {webhook_type.value} webhooks"
            )

        timestamp = parse_signature_timestamp(signature)
        if timestamp is None:
            raise WebhookSignatureError("Signature header has no timestamp")
        if timestamp - self._clock() > self._tolerance:
            raise WebhookSignatureError("Signature timestamp is in the future")

        # Stripe signs UTF-8 text; anything else cannot carry a valid signature
        try:
            payload_text = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise WebhookSignatureError("Webhook body is not UTF-8", original_error=e)

        try:
            stripe.WebhookSignature.verify_header(
                payload_text,
                signature,
                secret,
                self._tolerance,
            )
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Invalid signature: {e}", original_error=e)

        try:
            event = json.loads(payload_text)
        except json.JSONDecodeError as e:
            raise WebhookPayloadError(f"Invalid payload: {e}", original_error=e)

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise WebhookPayloadError("Webhook body is not a Stripe event")

        return event

    # =========================================================================
    # Customer Lookup
    # =========================================================================

    async def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        """
        Retrieve a customer by ID.

        Raises:
            StripeServiceError if Stripe cannot return the customer
        """
        try:
            customer = await asyncio.to_thread(stripe.Customer.retrieve, customer_id)
        except StripeError as e:
            logger.error(f"Failed to retrieve Stripe customer {customer_id}: {e}")
            raise StripeServiceError(
                f"Failed to retrieve customer {customer_id}",
                details={"customer_id": customer_id},
                original_error=e,
            )
        return customer

    # =========================================================================
    # Tier Resolution
    # =========================================================================

    def resolve_tier(self, subscription: Dict[str, Any]) -> Tuple[UserTier, bool]:
        """
        Tier purchased by a subscription object.

        Order: configured price map, then metadata.tier, then the configured
        default tier.

        Returns:
            (tier, defaulted) where defaulted marks the ambiguous fallback
        """
        price_id = extract_price_id(subscription)
        mapped = self._settings.stripe_price_tiers.get(price_id or "")
        if mapped:
            return UserTier(mapped), False

        metadata_tier = ((subscription.get("metadata") or {}).get("tier") or "").lower()
        if metadata_tier in (UserTier.BASIC.value, UserTier.PRO.value):
            return UserTier(metadata_tier), False

        default_tier = UserTier(self._settings.stripe_default_tier)
        logger.warning(
            f"Could not resolve tier for subscription {subscription.get('id')} "
            f"(price={price_id}), defaulting to {default_tier.value}"
        )
        return default_tier, True

    # =========================================================================
    # Payment Links
    # =========================================================================

    def get_payment_links(self) -> PaymentLinks:
        """Static upgrade offers carried by reminder emails."""
        return PaymentLinks(
            basic=PaymentOffer(
                name="Astropal Basic",
                description="Daily horoscope + evening reflection",
                price=799,
                payment_link=self._settings.stripe_basic_payment_link,
                features=BASIC_FEATURES,
            ),
            pro=PaymentOffer(
                name="Astropal Pro",
                description="Complete cosmic guidance",
                price=1499,
                payment_link=self._settings.stripe_pro_payment_link,
                features=PRO_FEATURES,
            ),
        )
