"""
User Repository

Data access for subscriber records. Tier writes are conditional updates
so two concurrent writers cannot both apply the same transition.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import update, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from astropal.domain.billing import UserTier
from astropal.infrastructure.db.models import User, utc_now
from astropal.infrastructure.db.repositories.base_repository import BaseRepository


logger = logging.getLogger(__name__)


class UserRepository(BaseRepository[User]):
    """Repository for subscriber records."""

    def __init__(self, session: AsyncSession):
        super().__init__(User, session)

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get_by_email(self, email: str) -> Optional[User]:
        statement = select(User).where(User.email == email.strip().lower())
        result = await self._session.execute(statement)
        return result.scalar_one_or_none()

    async def list_expired_trials(self, now: datetime) -> List[User]:
        """Trial users whose trial ended before `now`."""
        statement = select(User).where(
            User.tier == UserTier.TRIAL.value,
            User.trial_end.is_not(None),
            User.trial_end < now,
        )
        result = await self._session.execute(statement)
        return list(result.scalars().all())

    async def list_trials_ending_between(
        self,
        start: datetime,
        end: datetime,
    ) -> List[User]:
        """Trial users not yet reminded whose trial ends inside [start, end]."""
        statement = select(User).where(
            User.tier == UserTier.TRIAL.value,
            User.trial_end.between(start, end),
            User.trial_reminder_sent.is_(False),
        )
        result = await self._session.execute(statement)
        return list(result.scalars().all())

    async def list_upgrade_reminder_candidates(
        self,
        now: datetime,
        interval: timedelta,
    ) -> List[User]:
        """Free users older than `interval` who were not reminded within it."""
        cutoff = now - interval
        statement = select(User).where(
            User.tier == UserTier.FREE.value,
            User.email_status == "active",
            User.created_at < cutoff,
            or_(
                User.last_upgrade_reminder.is_(None),
                User.last_upgrade_reminder < cutoff,
            ),
        )
        result = await self._session.execute(statement)
        return list(result.scalars().all())

    async def list_active_by_tiers(self, tiers: Sequence[UserTier]) -> List[User]:
        """Deliverable users in any of the given tiers."""
        statement = select(User).where(
            User.tier.in_([tier.value for tier in tiers]),
            User.email_status == "active",
        )
        result = await self._session.execute(statement)
        return list(result.scalars().all())

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def set_tier(self, user_id: str, tier: UserTier) -> bool:
        """
        Set a user's tier. Leaving trial clears trial_end.

        Returns:
            True if a row was updated
        """
        values = {"tier": tier.value, "updated_at": utc_now()}
        if tier != UserTier.TRIAL:
            values["trial_end"] = None

        result = await self._session.execute(
            update(User).where(User.id == user_id).values(**values)
        )
        return result.rowcount == 1

    async def expire_trial(self, user_id: str, now: datetime) -> bool:
        """Move a user from an ended trial to free; False if no longer applicable."""
        result = await self._session.execute(
            update(User)
            .where(
                User.id == user_id,
                User.tier == UserTier.TRIAL.value,
                User.trial_end < now,
            )
            .values(tier=UserTier.FREE.value, trial_end=None, updated_at=utc_now())
        )
        return result.rowcount == 1

    async def claim_trial_reminder(self, user_id: str) -> bool:
        """Flip trial_reminder_sent only if it was unset."""
        result = await self._session.execute(
            update(User)
            .where(User.id == user_id, User.trial_reminder_sent.is_(False))
            .values(trial_reminder_sent=True, updated_at=utc_now())
        )
        return result.rowcount == 1

    async def claim_upgrade_reminder(
        self,
        user_id: str,
        now: datetime,
        interval: timedelta,
    ) -> bool:
        """Stamp last_upgrade_reminder only if the user is still due one."""
        cutoff = now - interval
        result = await self._session.execute(
            update(User)
            .where(
                User.id == user_id,
                or_(
                    User.last_upgrade_reminder.is_(None),
                    User.last_upgrade_reminder < cutoff,
                ),
            )
            .values(last_upgrade_reminder=now, updated_at=utc_now())
        )
        return result.rowcount == 1
