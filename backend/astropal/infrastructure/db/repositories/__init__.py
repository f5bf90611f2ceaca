"""
Repository Layer for Astropal

Exports all repository classes for dependency injection.
"""

from astropal.infrastructure.db.repositories.base_repository import BaseRepository
from astropal.infrastructure.db.repositories.user_repository import UserRepository
from astropal.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
)
from astropal.infrastructure.db.repositories.webhook_event_repository import (
    WebhookEventRepository,
)
from astropal.infrastructure.db.repositories.email_log_repository import (
    EmailLogRepository,
)


__all__ = [
    # Base
    "BaseRepository",
    # Repositories
    "UserRepository",
    "SubscriptionRepository",
    "WebhookEventRepository",
    "EmailLogRepository",
]
