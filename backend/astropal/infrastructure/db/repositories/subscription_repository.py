"""
Subscription Repository

Data access layer for Stripe subscription rows.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from astropal.domain.billing import SubscriptionStatus
from astropal.infrastructure.db.models import SubscriptionModel
from astropal.infrastructure.db.repositories.base_repository import BaseRepository


logger = logging.getLogger(__name__)


class SubscriptionRepository(BaseRepository[SubscriptionModel]):
    """Repository for subscription rows."""

    def __init__(self, session: AsyncSession):
        super().__init__(SubscriptionModel, session)

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get_by_stripe_subscription_id(
        self,
        stripe_subscription_id: str,
    ) -> Optional[SubscriptionModel]:
        statement = select(SubscriptionModel).where(
            SubscriptionModel.stripe_subscription_id == stripe_subscription_id
        )
        result = await self._session.execute(statement)
        return result.scalar_one_or_none()

    async def has_active_for_user(self, user_id: str) -> bool:
        """True if the user holds a subscription that is not canceled."""
        statement = select(SubscriptionModel.id).where(
            SubscriptionModel.user_id == user_id,
            SubscriptionModel.status.in_([
                SubscriptionStatus.ACTIVE.value,
                SubscriptionStatus.PAST_DUE.value,
            ]),
        ).limit(1)
        result = await self._session.execute(statement)
        return result.scalar_one_or_none() is not None

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def create(
        self,
        user_id: str,
        stripe_subscription_id: str,
        stripe_customer_id: Optional[str],
        status: SubscriptionStatus,
        current_period_end: Optional[datetime],
        cancel_at_period_end: bool = False,
        last_event_created: Optional[int] = None,
    ) -> SubscriptionModel:
        model = SubscriptionModel(
            user_id=user_id,
            stripe_subscription_id=stripe_subscription_id,
            stripe_customer_id=stripe_customer_id,
            status=status.value,
            current_period_end=current_period_end,
            cancel_at_period_end=cancel_at_period_end,
            last_event_created=last_event_created,
        )
        await self.add(model)
        logger.info(
            f"Created subscription {stripe_subscription_id} for user {user_id}"
        )
        return model
