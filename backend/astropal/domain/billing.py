"""
Billing Domain Models

Enums, value objects and pure rules for the billing bounded context:
user tiers, subscription status, webhook outcomes and payment offers.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class UserTier(str, Enum):
    """Subscriber tier stored on the user record."""
    TRIAL = "trial"
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"

    @classmethod
    def from_stripe(cls, stripe_status: Optional[str]) -> "SubscriptionStatus":
        """Collapse Stripe's subscription statuses onto ours."""
        return _STRIPE_STATUS_MAP.get(stripe_status or "", cls.ACTIVE)


_STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "incomplete": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.UNPAID,
}


class WebhookType(str, Enum):
    """Webhook endpoints, each signed with its own secret."""
    SUBSCRIPTION = "subscription"
    PAYMENT = "payment"


class EmailType(str, Enum):
    """Email jobs the billing core can enqueue."""
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    RECOVERY = "recovery"
    TRIAL = "trial"
    UPGRADE_REMINDER = "upgrade_reminder"
    DAILY_NEWSLETTER = "daily_newsletter"


class EmailTemplate(str, Enum):
    """Templates recorded in the email log."""
    UPGRADE_CONFIRMATION = "upgrade_confirmation"
    DOWNGRADE_NOTIFICATION = "downgrade_notification"
    TRIAL_ENDING = "trial_ending"
    UPGRADE_REMINDER = "upgrade_reminder"


class RecoveryStage(str, Enum):
    """Payment recovery email, keyed by failed attempt number."""
    FIRST_ATTEMPT = "first_attempt"
    SECOND_ATTEMPT = "second_attempt"
    THIRD_ATTEMPT = "third_attempt"
    FINAL_ATTEMPT = "final_attempt"


class TierChange(str, Enum):
    """Direction of a tier change."""
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    UNCHANGED = "unchanged"


# =============================================================================
# Business Rules
# =============================================================================

TIER_LEVELS = {
    UserTier.FREE: 0,
    UserTier.TRIAL: 1,
    UserTier.BASIC: 2,
    UserTier.PRO: 3,
}

# Stripe gives up on the invoice after the fourth failed attempt
FINAL_PAYMENT_ATTEMPT = 4


def classify_tier_change(old: UserTier, new: UserTier) -> TierChange:
    """Compare two tiers by level."""
    old_level = TIER_LEVELS[old]
    new_level = TIER_LEVELS[new]
    if new_level > old_level:
        return TierChange.UPGRADE
    if new_level < old_level:
        return TierChange.DOWNGRADE
    return TierChange.UNCHANGED


def recovery_stage_for(attempt_count: int) -> RecoveryStage:
    """Recovery email for the given Stripe invoice attempt count."""
    if attempt_count >= FINAL_PAYMENT_ATTEMPT:
        return RecoveryStage.FINAL_ATTEMPT
    if attempt_count <= 1:
        return RecoveryStage.FIRST_ATTEMPT
    if attempt_count == 2:
        return RecoveryStage.SECOND_ATTEMPT
    return RecoveryStage.THIRD_ATTEMPT


def content_tier_for(tier: UserTier) -> UserTier:
    """Content tier served to a user; trial users read the basic edition."""
    if tier == UserTier.TRIAL:
        return UserTier.BASIC
    return tier


# =============================================================================
# DTOs
# =============================================================================

class PaymentOffer(BaseModel):
    """One purchasable plan."""
    name: str
    description: str
    price: int = Field(description="Price in cents per interval")
    interval: str = "month"
    payment_link: str
    features: list[str]


class PaymentLinks(BaseModel):
    """Both upgrade offers, as carried by reminder emails."""
    basic: PaymentOffer
    pro: PaymentOffer


class WebhookResult(BaseModel):
    """Outcome of one webhook delivery."""
    status_code: int = 200
    received: bool = True
    processed: bool = True
    duplicate: bool = False
    error: Optional[str] = None


class JobResult(BaseModel):
    """Summary of one cron job run."""
    job: str
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
