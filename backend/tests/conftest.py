"""
Test configuration and fixtures for Astropal.

Provides an in-memory SQLite database, an in-process key/value store,
test settings with known webhook secrets, and Stripe signing helpers.
"""

import hashlib
import hmac
import json
import time
from typing import Any, AsyncGenerator, Dict, List, Optional
from unittest.mock import AsyncMock

import httpx
import pytest

from astropal.config.settings import Settings
from astropal.domain.billing import WebhookResult, WebhookType
from astropal.infrastructure.db.database import DatabaseManager
from astropal.infrastructure.db.models import User
from astropal.infrastructure.kv import MemoryKeyValueStore
from astropal.infrastructure.payments.stripe_service import StripeService
from astropal.infrastructure.services.billing_service import BillingService
from astropal.infrastructure.services.email_queue import EmailQueue
from astropal.infrastructure.services.metrics_service import MetricsSink


SUBSCRIPTION_SECRET = "whsec_test_subscription"
PAYMENT_SECRET = "whsec_test_payment"
ADMIN_TOKEN = "test-admin-token"


# =============================================================================
# Settings & Infrastructure
# =============================================================================

@pytest.fixture
def settings() -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        environment="testing",
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url=None,
        stripe_webhook_secret_subscription=SUBSCRIPTION_SECRET,
        stripe_webhook_secret_payment=PAYMENT_SECRET,
        stripe_price_tiers={
            "price_basic_monthly": "basic",
            "price_pro_monthly": "pro",
        },
        stripe_default_tier="basic",
        admin_token=ADMIN_TOKEN,
    )


@pytest.fixture
async def db() -> AsyncGenerator[DatabaseManager, None]:
    """Fresh in-memory database per test."""
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await manager.create_tables()
    yield manager
    await manager.close()


@pytest.fixture
def kv_store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def metrics(kv_store) -> MetricsSink:
    return MetricsSink(kv_store)


@pytest.fixture
def email_queue(kv_store) -> EmailQueue:
    return EmailQueue(kv_store)


# =============================================================================
# Billing Fixtures
# =============================================================================

@pytest.fixture
def stripe_service(settings) -> StripeService:
    """Real signature checks; customer lookup is mocked."""
    service = StripeService(settings)
    service.retrieve_customer = AsyncMock(
        return_value={"id": "cus_test", "email": "u@example.com"}
    )
    return service


@pytest.fixture
def fake_sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def billing_service(settings, db, stripe_service, metrics, email_queue, fake_sleep) -> BillingService:
    return BillingService(
        settings=settings,
        db=db,
        stripe_service=stripe_service,
        metrics=metrics,
        email_queue=email_queue,
        sleep=fake_sleep,
    )


@pytest.fixture
def create_user(db):
    """Insert a user row and return it."""
    async def _create(email: str = "u@example.com", tier: str = "trial", **fields) -> User:
        async with db.session_context() as session:
            user = User(email=email, tier=tier, **fields)
            session.add(user)
        return user

    return _create


def sign_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header for a payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode("utf-8") + payload
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def sign():
    return sign_payload


@pytest.fixture
def deliver(billing_service):
    """Sign an event with the endpoint's secret and process it."""
    async def _deliver(
        event: Dict[str, Any],
        webhook_type: WebhookType = WebhookType.SUBSCRIPTION,
    ) -> WebhookResult:
        secret = PAYMENT_SECRET if webhook_type == WebhookType.PAYMENT else SUBSCRIPTION_SECRET
        payload = json.dumps(event).encode("utf-8")
        return await billing_service.process_webhook(
            payload, sign_payload(payload, secret), webhook_type
        )

    return _deliver


# =============================================================================
# Stripe Event Builders
# =============================================================================

def subscription_event(
    event_id: str,
    event_type: str,
    subscription_id: str = "sub_test",
    price_id: str = "price_basic_monthly",
    status: str = "active",
    created: int = 1_700_000_000,
    metadata: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    return {
        "id": event_id,
        "type": event_type,
        "created": created,
        "livemode": False,
        "data": {
            "object": {
                "id": subscription_id,
                "object": "subscription",
                "customer": "cus_test",
                "status": status,
                "current_period_end": created + 30 * 24 * 3600,
                "cancel_at_period_end": False,
                "metadata": metadata or {},
                "items": {"data": [{"price": {"id": price_id}}]},
            }
        },
    }


def invoice_event(
    event_id: str,
    event_type: str,
    subscription_id: str = "sub_test",
    attempt_count: int = 1,
    created: int = 1_700_000_100,
) -> Dict[str, Any]:
    return {
        "id": event_id,
        "type": event_type,
        "created": created,
        "livemode": False,
        "data": {
            "object": {
                "id": f"in_{event_id}",
                "object": "invoice",
                "subscription": subscription_id,
                "attempt_count": attempt_count,
                "amount_paid": 799,
            }
        },
    }


@pytest.fixture
def make_subscription_event():
    return subscription_event


@pytest.fixture
def make_invoice_event():
    return invoice_event


# =============================================================================
# Key/Value Inspection
# =============================================================================

@pytest.fixture
def queued_jobs(kv_store):
    """Email jobs currently queued under a prefix, oldest first."""
    async def _queued(email_type: str) -> List[Dict[str, Any]]:
        keys = await kv_store.keys(f"email_queue:{email_type}:")
        jobs = [json.loads(await kv_store.get(key)) for key in keys]
        return sorted(jobs, key=lambda job: job["timestamp"])

    return _queued


@pytest.fixture
def stored_records(kv_store):
    """Decoded JSON records under a key prefix."""
    async def _records(prefix: str) -> List[Dict[str, Any]]:
        keys = await kv_store.keys(prefix)
        return [json.loads(await kv_store.get(key)) for key in keys]

    return _records


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def app():
    """Get the FastAPI application, with overrides cleared afterwards."""
    from astropal.main import app

    yield app
    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Async test client sharing the test's event loop (no lifespan)."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
