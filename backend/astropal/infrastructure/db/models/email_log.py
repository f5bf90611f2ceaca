"""
Email Log Model

Audit row written alongside billing transitions that notify the user.
"""

from sqlmodel import Field

from astropal.infrastructure.db.models.base import IdMixin, TimestampMixin


class EmailLog(IdMixin, TimestampMixin, table=True):
    """Maps to the 'email_logs' table."""

    __tablename__ = "email_logs"

    user_id: str = Field(foreign_key="users.id", index=True, max_length=36)
    template: str = Field(max_length=64)
    # pending | sent | failed
    status: str = Field(default="pending", max_length=16)
