"""
Payments Infrastructure Module

Stripe webhook verification, customer lookup and tier resolution.
"""

from astropal.infrastructure.payments.stripe_service import StripeService

__all__ = ["StripeService"]
