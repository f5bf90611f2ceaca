"""
API Dependencies

Composition root: builds the services once per process and hands them to
routes through FastAPI dependency injection. Tests override these with
app.dependency_overrides.
"""

import logging
import secrets
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from astropal.config.settings import Settings, get_settings
from astropal.infrastructure.ai.gemini_client import GeminiClient
from astropal.infrastructure.ai.grok_client import GrokClient
from astropal.infrastructure.db.database import get_db_manager
from astropal.infrastructure.exceptions import AuthorizationError
from astropal.infrastructure.kv import KeyValueStore, create_key_value_store
from astropal.infrastructure.payments.stripe_service import StripeService
from astropal.infrastructure.services.billing_service import BillingService
from astropal.infrastructure.services.content_generation_service import ContentGenerationService
from astropal.infrastructure.services.email_queue import EmailQueue
from astropal.infrastructure.services.metrics_service import MetricsSink
from astropal.infrastructure.services.scheduler import JobScheduler


logger = logging.getLogger(__name__)


@lru_cache
def get_key_value_store() -> KeyValueStore:
    return create_key_value_store(get_settings().redis_url)


@lru_cache
def get_metrics_sink() -> MetricsSink:
    return MetricsSink(get_key_value_store())


@lru_cache
def get_email_queue() -> EmailQueue:
    return EmailQueue(get_key_value_store())


@lru_cache
def get_stripe_service() -> StripeService:
    return StripeService(get_settings())


@lru_cache
def get_billing_service() -> BillingService:
    return BillingService(
        settings=get_settings(),
        db=get_db_manager(),
        stripe_service=get_stripe_service(),
        metrics=get_metrics_sink(),
        email_queue=get_email_queue(),
    )


@lru_cache
def get_content_service() -> ContentGenerationService:
    """One pipeline per process, so both breakers see every generation."""
    settings = get_settings()
    return ContentGenerationService(
        settings=settings,
        store=get_key_value_store(),
        metrics=get_metrics_sink(),
        primary=GrokClient(settings.grok_api_key or "", settings.grok_base_url),
        fallback=GeminiClient(settings.gemini_api_key or "", settings.fallback_model),
    )


@lru_cache
def get_job_scheduler() -> JobScheduler:
    return JobScheduler(
        settings=get_settings(),
        db=get_db_manager(),
        store=get_key_value_store(),
        billing=get_billing_service(),
        content=get_content_service(),
        email_queue=get_email_queue(),
    )


async def verify_admin_token(
    x_admin_token: Optional[str] = Header(None, description="Admin token for job triggers"),
    settings: Settings = Depends(get_settings),
) -> bool:
    """Check the X-Admin-Token header against ADMIN_TOKEN."""
    if not settings.admin_token:
        logger.error("ADMIN_TOKEN is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin authentication not configured",
        )

    # Constant-time comparison
    if not x_admin_token or not secrets.compare_digest(x_admin_token, settings.admin_token):
        logger.warning("Invalid admin token attempt")
        raise AuthorizationError("Invalid admin token")

    return True
