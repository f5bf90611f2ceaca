"""
Webhook Event Ledger Model

Append-only record of Stripe events that were fully processed.
"""

from datetime import datetime

from sqlmodel import Field, SQLModel

from astropal.infrastructure.db.models.base import utc_now


class WebhookEvent(SQLModel, table=True):
    """Maps to the 'webhook_events' table."""

    __tablename__ = "webhook_events"

    event_id: str = Field(primary_key=True, max_length=255)
    event_type: str = Field(max_length=100)
    processed_at: datetime = Field(default_factory=utc_now, index=True)
