"""
Email Log Repository
"""

from typing import List

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from astropal.domain.billing import EmailTemplate
from astropal.infrastructure.db.models import EmailLog
from astropal.infrastructure.db.repositories.base_repository import BaseRepository


class EmailLogRepository(BaseRepository[EmailLog]):
    """Repository for email audit rows."""

    def __init__(self, session: AsyncSession):
        super().__init__(EmailLog, session)

    async def log_pending(self, user_id: str, template: EmailTemplate) -> EmailLog:
        return await self.add(EmailLog(user_id=user_id, template=template.value))

    async def list_for_user(self, user_id: str) -> List[EmailLog]:
        statement = (
            select(EmailLog)
            .where(EmailLog.user_id == user_id)
            .order_by(EmailLog.created_at)
        )
        result = await self._session.execute(statement)
        return list(result.scalars().all())
