"""
Base Model for SQLModel ORM

Provides common fields and behavior for all database models.
Timestamps are timezone-aware UTC on the way in and on the way out.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    """Current time as aware UTC."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class TimestampMixin(SQLModel):
    """Mixin providing timestamp fields for models."""

    created_at: datetime = Field(
        default_factory=utc_now,
        nullable=False,
        description="Record creation timestamp (UTC)"
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        nullable=False,
        sa_column_kwargs={"onupdate": utc_now},
        description="Last update timestamp (UTC)"
    )


class IdMixin(SQLModel):
    """Mixin providing a string UUID primary key."""

    id: str = Field(
        default_factory=new_id,
        primary_key=True,
        max_length=36,
        description="Unique identifier (UUID v4)"
    )
