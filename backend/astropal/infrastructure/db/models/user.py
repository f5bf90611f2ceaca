"""
User Database Model

One newsletter subscriber. The tier is owned by the billing state machine.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, JSON
from sqlmodel import Field

from astropal.infrastructure.db.models.base import IdMixin, TimestampMixin


class User(IdMixin, TimestampMixin, table=True):
    """
    Subscriber record.

    trial_end is set exactly while tier == "trial".
    """

    __tablename__ = "users"

    email: str = Field(unique=True, index=True, max_length=320)
    tier: str = Field(default="trial", index=True, max_length=16)
    trial_end: Optional[datetime] = Field(default=None, index=True)
    trial_reminder_sent: bool = Field(default=False)
    last_upgrade_reminder: Optional[datetime] = Field(default=None)

    perspective: str = Field(default="calm", max_length=16)
    locale: str = Field(default="en-US", max_length=16)
    focus_areas: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    sun_sign: Optional[str] = Field(default=None, max_length=16)
    rising_sign: Optional[str] = Field(default=None, max_length=16)
    birth_location: str = Field(default="Unknown", max_length=255)
    timezone: str = Field(default="UTC", max_length=64)

    # active | bounced | unsubscribed; users are soft-disabled, never deleted
    email_status: str = Field(default="active", max_length=16)
