"""
Subscription Database Model

One Stripe billing relationship. Rows are never deleted; a canceled row
stays canceled and a resubscription creates a new row.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger
from sqlmodel import Field

from astropal.infrastructure.db.models.base import IdMixin, TimestampMixin


class SubscriptionModel(IdMixin, TimestampMixin, table=True):
    """Maps to the 'subscriptions' table."""

    __tablename__ = "subscriptions"

    user_id: str = Field(foreign_key="users.id", index=True, max_length=36)

    # Stripe IDs
    stripe_customer_id: Optional[str] = Field(default=None, index=True, max_length=255)
    stripe_subscription_id: str = Field(unique=True, index=True, max_length=255)

    status: str = Field(default="active", max_length=16)
    current_period_end: Optional[datetime] = Field(default=None)
    cancel_at_period_end: bool = Field(default=False)

    # Stripe `created` timestamp of the newest event applied to this row
    last_event_created: Optional[int] = Field(default=None, sa_type=BigInteger)
