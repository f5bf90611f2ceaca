"""
SQLModel ORM Models for Astropal

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from astropal.infrastructure.db.models.base import (
    IdMixin,
    TimestampMixin,
    new_id,
    utc_now,
)
from astropal.infrastructure.db.models.user import User
from astropal.infrastructure.db.models.subscription import SubscriptionModel
from astropal.infrastructure.db.models.webhook_event import WebhookEvent
from astropal.infrastructure.db.models.email_log import EmailLog


__all__ = [
    # Base
    "IdMixin",
    "TimestampMixin",
    "new_id",
    "utc_now",
    # Tables
    "User",
    "SubscriptionModel",
    "WebhookEvent",
    "EmailLog",
]
