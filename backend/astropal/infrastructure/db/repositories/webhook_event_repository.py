"""
Webhook Event Repository

Idempotency ledger for Stripe deliveries. An event id is written only
after its handler succeeded, in the same unit of work as its effects.
"""

import logging
from datetime import timedelta

from sqlalchemy import bindparam, delete, text
from sqlalchemy.ext.asyncio import AsyncSession

from astropal.infrastructure.db.models import WebhookEvent, utc_now
from astropal.infrastructure.db.repositories.base_repository import BaseRepository


logger = logging.getLogger(__name__)


class WebhookEventRepository(BaseRepository[WebhookEvent]):
    """Repository for the processed-event ledger."""

    def __init__(self, session: AsyncSession):
        super().__init__(WebhookEvent, session)

    async def is_processed(self, event_id: str) -> bool:
        """Check if a webhook event has already been processed."""
        result = await self._session.execute(
            text("SELECT 1 FROM webhook_events WHERE event_id = :eid"),
            {"eid": event_id},
        )
        return result.scalar_one_or_none() is not None

    async def mark_processed(self, event_id: str, event_type: str) -> bool:
        """
        Record a processed webhook event.

        Returns:
            False if another delivery recorded the same id first
        """
        result = await self._session.execute(
            text(
                "INSERT INTO webhook_events (event_id, event_type, processed_at) "
                "VALUES (:eid, :etype, :processed_at) "
                "ON CONFLICT (event_id) DO NOTHING"
            ).bindparams(
                bindparam("processed_at", type_=WebhookEvent.__table__.c.processed_at.type)
            ),
            {"eid": event_id, "etype": event_type, "processed_at": utc_now()},
        )
        return result.rowcount == 1

    async def prune_older_than(self, days: int) -> int:
        """Delete ledger entries older than `days`; returns rows removed."""
        cutoff = utc_now() - timedelta(days=days)
        result = await self._session.execute(
            delete(WebhookEvent).where(WebhookEvent.processed_at < cutoff)
        )
        logger.info(f"Pruned {result.rowcount} webhook events older than {days} days")
        return result.rowcount
