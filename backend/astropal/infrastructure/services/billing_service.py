"""
Billing Service

Stripe webhook state machine and the billing cron jobs.

Webhook delivery:
1. Verify the Stripe-Signature header (per-endpoint secret, 300s window)
2. Skip events already in the webhook_events ledger
3. Dispatch by event type, retrying with exponential backoff
4. Record the ledger entry in the same transaction as the handler's writes

Each handler attempt is one unit of work, so a failed attempt leaves no
partial writes behind and the ledger is only written with a success.
Emails are enqueued after commit.

Subscription status: none -> active -> {past_due, canceled};
past_due -> {active, canceled}; canceled is terminal for its row.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from astropal.config.settings import Settings
from astropal.domain.billing import (
    EmailTemplate,
    EmailType,
    JobResult,
    PaymentLinks,
    RecoveryStage,
    SubscriptionStatus,
    TierChange,
    UserTier,
    WebhookResult,
    WebhookType,
    classify_tier_change,
    recovery_stage_for,
)
from astropal.infrastructure.db.database import DatabaseManager
from astropal.infrastructure.db.models import SubscriptionModel, utc_now
from astropal.infrastructure.db.repositories import (
    EmailLogRepository,
    SubscriptionRepository,
    UserRepository,
    WebhookEventRepository,
)
from astropal.infrastructure.exceptions import (
    DataIntegrityError,
    WebhookPayloadError,
    WebhookSignatureError,
)
from astropal.infrastructure.payments.stripe_service import StripeService, extract_price_id
from astropal.infrastructure.services.email_queue import EmailQueue
from astropal.infrastructure.services.metrics_service import MetricsSink


logger = logging.getLogger(__name__)


TRIAL_REMINDER_LEAD = timedelta(days=1)
TRIAL_REMINDER_WINDOW = timedelta(hours=12)
UPGRADE_REMINDER_INTERVAL = timedelta(days=7)


@dataclass
class EmailJob:
    """Email to enqueue once the handler's transaction has committed."""
    user_id: str
    email_type: EmailType
    payload: Dict[str, Any] = field(default_factory=dict)


class _AlreadyProcessed(Exception):
    """A concurrent delivery recorded the event first; roll back ours."""


# =============================================================================
# Stripe Object Helpers
# =============================================================================

def _from_unix(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def period_end_of(subscription: Dict[str, Any]) -> Optional[datetime]:
    """current_period_end, which newer API versions moved onto the items."""
    value = subscription.get("current_period_end")
    if not value:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            value = (items[0] or {}).get("current_period_end")
    return _from_unix(value)


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """Subscription an invoice belongs to, across API versions."""
    subscription_id = invoice.get("subscription")
    if isinstance(subscription_id, dict):
        subscription_id = subscription_id.get("id")
    if subscription_id:
        return subscription_id
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return details.get("subscription")


def is_stale(row: SubscriptionModel, event_created: Optional[int]) -> bool:
    """True if a newer event has already been applied to this row."""
    if event_created is None or row.last_event_created is None:
        return False
    return event_created < row.last_event_created


def _advance_event_marker(row: SubscriptionModel, event_created: Optional[int]) -> None:
    if event_created is None:
        return
    if row.last_event_created is None or event_created > row.last_event_created:
        row.last_event_created = event_created


class BillingService:
    """
    Billing state machine over Stripe webhooks, plus trial and reminder jobs.

    Args:
        settings: Application settings
        db: Database manager providing units of work
        stripe_service: Signature checks, customer lookup, tier resolution
        metrics: Webhook metrics and dead letters
        email_queue: Outbound email jobs
        sleep: Backoff sleep, replaceable in tests
    """

    def __init__(
        self,
        settings: Settings,
        db: DatabaseManager,
        stripe_service: StripeService,
        metrics: MetricsSink,
        email_queue: EmailQueue,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._settings = settings
        self._db = db
        self._stripe = stripe_service
        self._metrics = metrics
        self._email_queue = email_queue
        self._sleep = sleep

        self._handlers = {
            "customer.subscription.created": self._handle_subscription_created,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_payment_succeeded,
            "invoice.payment_failed": self._handle_payment_failed,
        }
        # Network lookups that must finish before a unit of work opens
        self._lookups = {
            "customer.subscription.created": self._lookup_customer_email,
        }

    def get_payment_links(self) -> PaymentLinks:
        return self._stripe.get_payment_links()

    # =========================================================================
    # Webhook Entry Point
    # =========================================================================

    async def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
        webhook_type: WebhookType,
    ) -> WebhookResult:
        """
        Process one Stripe webhook delivery.

        Returns:
            WebhookResult; status 200 for processed and duplicate events,
            400 for signature failures and events that exhausted retries
        """
        if not signature:
            logger.error(f"Missing Stripe signature on {webhook_type.value} webhook")
            return WebhookResult(status_code=400, processed=False, error="Missing signature")

        try:
            event = self._stripe.verify_webhook_signature(payload, signature, webhook_type)
        except WebhookSignatureError as e:
            logger.error(
                f"Invalid {webhook_type.value} webhook signature "
                f"({signature[:8]}...): {e.message}"
            )
            return WebhookResult(status_code=400, processed=False, error="Invalid signature")
        except WebhookPayloadError as e:
            logger.error(f"Malformed {webhook_type.value} webhook: {e.message}")
            await self._metrics.record_failed_webhook(
                "unknown", "unknown", e.message, payload.decode("utf-8", "replace")
            )
            return WebhookResult(status_code=400, processed=False, error="Webhook Error")

        event_id = event["id"]
        event_type = event["type"]
        logger.info(
            f"Stripe webhook received: {event_type} ({event_id}), "
            f"livemode={event.get('livemode', False)}, endpoint={webhook_type.value}"
        )

        started = time.monotonic()
        attempts = 0
        try:
            if await self._is_processed(event_id):
                logger.info(f"Event {event_id} already processed, skipping")
                await self._metrics.record_webhook(
                    event_id, event_type, webhook_type.value,
                    success=True, duration_ms=self._elapsed_ms(started),
                    attempts=0, duplicate=True,
                )
                return WebhookResult(duplicate=True)

            attempts, duplicate = await self._dispatch_with_retry(event)

        except Exception as e:
            duration_ms = self._elapsed_ms(started)
            logger.error(f"Webhook {event_type} ({event_id}) failed: {e}")
            await self._metrics.record_webhook(
                event_id, event_type, webhook_type.value,
                success=False, duration_ms=duration_ms,
                attempts=attempts or self._settings.webhook_max_attempts,
            )
            await self._metrics.record_failed_webhook(
                event_id, event_type, str(e), payload.decode("utf-8", "replace")
            )
            return WebhookResult(status_code=400, processed=False, error="Webhook Error")

        await self._metrics.record_webhook(
            event_id, event_type, webhook_type.value,
            success=True, duration_ms=self._elapsed_ms(started),
            attempts=attempts, duplicate=duplicate,
        )
        if not duplicate:
            logger.info(f"Stripe webhook {event_type} ({event_id}) processed")
        return WebhookResult(duplicate=duplicate)

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    async def _is_processed(self, event_id: str) -> bool:
        async with self._db.session_context() as session:
            return await WebhookEventRepository(session).is_processed(event_id)

    def _retry_delay(self, attempt: int) -> float:
        """Backoff before the next attempt: base * 2^(attempt-1), capped."""
        return min(
            self._settings.webhook_retry_base_delay * (2 ** (attempt - 1)),
            self._settings.webhook_retry_max_delay,
        )

    async def _dispatch_with_retry(self, event: Dict[str, Any]) -> tuple[int, bool]:
        """
        Run the handler until it succeeds or attempts run out.

        Returns:
            (attempts used, whether a concurrent delivery won the race)

        Raises:
            The last handler error once all attempts failed
        """
        max_attempts = self._settings.webhook_max_attempts
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            try:
                email_jobs = await self._apply_event(event)
            except _AlreadyProcessed:
                logger.info(f"Event {event['id']} recorded by a concurrent delivery")
                return attempt, True
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Webhook {event['id']} attempt {attempt}/{max_attempts} failed: {e}"
                )
                if attempt < max_attempts:
                    await self._sleep(self._retry_delay(attempt))
                continue

            await self._send_emails(email_jobs)
            return attempt, False

        raise last_error

    async def _apply_event(self, event: Dict[str, Any]) -> List[EmailJob]:
        """One handler attempt plus the ledger write, as a single unit of work."""
        event_id = event["id"]
        event_type = event["type"]
        handler = self._handlers.get(event_type)
        lookup = self._lookups.get(event_type)
        prefetched = [await lookup(event)] if lookup else []

        async with self._db.session_context() as session:
            ledger = WebhookEventRepository(session)
            if await ledger.is_processed(event_id):
                raise _AlreadyProcessed()

            email_jobs: List[EmailJob] = []
            if handler is None:
                logger.info(f"Unhandled webhook event type: {event_type}")
            else:
                email_jobs = await handler(session, event, *prefetched)

            if not await ledger.mark_processed(event_id, event_type):
                raise _AlreadyProcessed()

        return email_jobs

    async def _send_emails(self, email_jobs: List[EmailJob]) -> None:
        """Enqueue post-commit notifications. The state change already happened."""
        for job in email_jobs:
            try:
                await self._email_queue.enqueue(job.user_id, job.email_type, job.payload)
            except Exception as e:
                logger.error(
                    f"Failed to queue {job.email_type.value} email "
                    f"for user {job.user_id}: {e}"
                )

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _resolve_tier(self, subscription: Dict[str, Any]) -> UserTier:
        tier, defaulted = self._stripe.resolve_tier(subscription)
        if defaulted:
            await self._metrics.record_tier_resolution_fallback(
                subscription.get("id", "unknown"),
                extract_price_id(subscription),
                tier.value,
            )
        return tier

    async def _lookup_customer_email(self, event: Dict[str, Any]) -> str:
        """Email of the subscription's Stripe customer."""
        customer_id = event["data"]["object"].get("customer")
        customer = await self._stripe.retrieve_customer(customer_id)
        email = customer.get("email") if customer else None
        if not email or customer.get("deleted"):
            raise DataIntegrityError(
                "Stripe customer has no email",
                event_id=event["id"],
                reference=customer_id,
            )
        return email

    async def _handle_subscription_created(
        self,
        session: AsyncSession,
        event: Dict[str, Any],
        email: str,
    ) -> List[EmailJob]:
        """
        New subscription: upgrade the user, record the row and a pending
        upgrade_confirmation email.
        """
        subscription = event["data"]["object"]
        subscription_id = subscription["id"]
        customer_id = subscription.get("customer")
        event_created = event.get("created")

        users = UserRepository(session)
        user = await users.get_by_email(email)
        if user is None:
            raise DataIntegrityError(
                f"User not found for email: {email}",
                event_id=event["id"],
                reference=subscription_id,
            )

        old_tier = UserTier(user.tier)
        new_tier = await self._resolve_tier(subscription)
        status = SubscriptionStatus.from_stripe(subscription.get("status"))

        subscriptions = SubscriptionRepository(session)
        row = await subscriptions.get_by_stripe_subscription_id(subscription_id)
        if row is None:
            await subscriptions.create(
                user_id=user.id,
                stripe_subscription_id=subscription_id,
                stripe_customer_id=customer_id,
                status=status,
                current_period_end=period_end_of(subscription),
                cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
                last_event_created=event_created,
            )
        elif row.status == SubscriptionStatus.CANCELED.value or is_stale(row, event_created):
            logger.info(
                f"Subscription {subscription_id} already moved past creation, "
                f"ignoring created event"
            )
            return []
        else:
            # Redelivery after an earlier attempt committed the row
            row.status = status.value
            row.current_period_end = period_end_of(subscription)
            _advance_event_marker(row, event_created)
            await subscriptions.add(row)

        await users.set_tier(user.id, new_tier)
        await EmailLogRepository(session).log_pending(
            user.id, EmailTemplate.UPGRADE_CONFIRMATION
        )

        logger.info(
            f"Subscription {subscription_id} created, user {user.id} "
            f"{old_tier.value} -> {new_tier.value}"
        )
        return [
            EmailJob(
                user.id,
                EmailType.UPGRADE,
                {"tier": new_tier.value, "previousTier": old_tier.value,
                 "template": EmailTemplate.UPGRADE_CONFIRMATION.value},
            )
        ]

    async def _handle_subscription_updated(
        self,
        session: AsyncSession,
        event: Dict[str, Any],
    ) -> List[EmailJob]:
        """Sync status and period; re-derive the tier and notify on changes."""
        subscription = event["data"]["object"]
        subscription_id = subscription["id"]
        event_created = event.get("created")

        subscriptions = SubscriptionRepository(session)
        row = await subscriptions.get_by_stripe_subscription_id(subscription_id)
        if row is None:
            logger.warning(f"Update for unknown subscription {subscription_id}, ignoring")
            return []
        if row.status == SubscriptionStatus.CANCELED.value:
            logger.info(f"Subscription {subscription_id} is canceled, ignoring update")
            return []
        if is_stale(row, event_created):
            logger.warning(
                f"Stale update for subscription {subscription_id} "
                f"(event {event_created} < applied {row.last_event_created}), ignoring"
            )
            return []

        status = SubscriptionStatus.from_stripe(subscription.get("status"))
        row.status = status.value
        row.current_period_end = period_end_of(subscription) or row.current_period_end
        row.cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))
        _advance_event_marker(row, event_created)
        await subscriptions.add(row)

        users = UserRepository(session)
        user = await users.get_by_id(row.user_id)
        if user is None:
            raise DataIntegrityError(
                f"Subscription {subscription_id} references missing user {row.user_id}",
                event_id=event["id"],
                reference=subscription_id,
            )

        old_tier = UserTier(user.tier)
        if status == SubscriptionStatus.CANCELED:
            new_tier = UserTier.FREE
        else:
            new_tier = await self._resolve_tier(subscription)
        await users.set_tier(user.id, new_tier)

        change = classify_tier_change(old_tier, new_tier)
        logger.info(
            f"Subscription {subscription_id} updated ({status.value}), user {user.id} "
            f"{old_tier.value} -> {new_tier.value} ({change.value})"
        )

        if change == TierChange.UPGRADE:
            return [EmailJob(user.id, EmailType.UPGRADE,
                             {"tier": new_tier.value, "previousTier": old_tier.value})]
        if change == TierChange.DOWNGRADE:
            return [EmailJob(user.id, EmailType.DOWNGRADE,
                             {"newTier": new_tier.value, "oldTier": old_tier.value})]
        return []

    async def _handle_subscription_deleted(
        self,
        session: AsyncSession,
        event: Dict[str, Any],
    ) -> List[EmailJob]:
        """Cancel the row and drop the user to free."""
        subscription = event["data"]["object"]
        subscription_id = subscription["id"]

        subscriptions = SubscriptionRepository(session)
        row = await subscriptions.get_by_stripe_subscription_id(subscription_id)
        if row is None:
            logger.warning(f"Deletion for unknown subscription {subscription_id}, ignoring")
            return []

        row.status = SubscriptionStatus.CANCELED.value
        _advance_event_marker(row, event.get("created"))
        await subscriptions.add(row)

        await self._downgrade_unless_subscribed(session, row.user_id)
        logger.info(f"Subscription {subscription_id} canceled, user {row.user_id} -> free")
        return []

    async def _handle_payment_succeeded(
        self,
        session: AsyncSession,
        event: Dict[str, Any],
    ) -> List[EmailJob]:
        """A paid invoice brings a past_due subscription back to active."""
        invoice = event["data"]["object"]
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return []

        subscriptions = SubscriptionRepository(session)
        row = await subscriptions.get_by_stripe_subscription_id(subscription_id)
        if row is None:
            logger.warning(f"Payment for unknown subscription {subscription_id}, ignoring")
            return []
        if row.status == SubscriptionStatus.CANCELED.value or is_stale(row, event.get("created")):
            logger.info(f"Ignoring payment success for subscription {subscription_id}")
            return []

        row.status = SubscriptionStatus.ACTIVE.value
        _advance_event_marker(row, event.get("created"))
        await subscriptions.add(row)

        logger.info(
            f"Payment succeeded for subscription {subscription_id}, "
            f"amount={invoice.get('amount_paid')}"
        )
        return []

    async def _handle_payment_failed(
        self,
        session: AsyncSession,
        event: Dict[str, Any],
    ) -> List[EmailJob]:
        """
        Mark past_due and start recovery; the fourth failed attempt cancels
        the subscription and drops the user to free.
        """
        invoice = event["data"]["object"]
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return []

        subscriptions = SubscriptionRepository(session)
        row = await subscriptions.get_by_stripe_subscription_id(subscription_id)
        if row is None:
            logger.warning(f"Payment failure for unknown subscription {subscription_id}, ignoring")
            return []
        if row.status == SubscriptionStatus.CANCELED.value or is_stale(row, event.get("created")):
            logger.info(f"Ignoring payment failure for subscription {subscription_id}")
            return []

        attempt_count = int(invoice.get("attempt_count") or 1)
        stage = recovery_stage_for(attempt_count)
        _advance_event_marker(row, event.get("created"))

        if stage == RecoveryStage.FINAL_ATTEMPT:
            row.status = SubscriptionStatus.CANCELED.value
            await subscriptions.add(row)
            await self._downgrade_unless_subscribed(session, row.user_id)
            await EmailLogRepository(session).log_pending(
                row.user_id, EmailTemplate.DOWNGRADE_NOTIFICATION
            )
        else:
            row.status = SubscriptionStatus.PAST_DUE.value
            await subscriptions.add(row)

        logger.warning(
            f"Payment failed for subscription {subscription_id} "
            f"(attempt {attempt_count}), recovery stage {stage.value}"
        )
        return [
            EmailJob(
                row.user_id,
                EmailType.RECOVERY,
                {"recoveryType": stage.value, "invoiceId": invoice.get("id"),
                 "attemptCount": attempt_count},
            )
        ]

    async def _downgrade_unless_subscribed(self, session: AsyncSession, user_id: str) -> None:
        """Set the user to free unless another live subscription still pays."""
        if await SubscriptionRepository(session).has_active_for_user(user_id):
            logger.info(f"User {user_id} keeps another active subscription, tier unchanged")
            return
        await UserRepository(session).set_tier(user_id, UserTier.FREE)

    # =========================================================================
    # Cron Jobs
    # =========================================================================

    async def process_expired_trials(self, now: Optional[datetime] = None) -> JobResult:
        """
        Move every ended trial to free.

        Each user is its own unit of work; one failing row does not stop
        the rest.
        """
        now = now or utc_now()
        result = JobResult(job="expire_trials", started_at=now)

        async with self._db.session_context() as session:
            expired = await UserRepository(session).list_expired_trials(now)
        logger.info(f"Processing {len(expired)} expired trials")

        for user in expired:
            try:
                async with self._db.session_context() as session:
                    if await SubscriptionRepository(session).has_active_for_user(user.id):
                        logger.warning(
                            f"User {user.id} is on trial with an active subscription, skipping"
                        )
                        result.skipped += 1
                        continue
                    if await UserRepository(session).expire_trial(user.id, now):
                        result.processed += 1
                        logger.info(f"Trial expired, user {user.id} downgraded to free")
                    else:
                        result.skipped += 1
            except Exception as e:
                result.failed += 1
                logger.error(f"Failed to expire trial for user {user.id}: {e}")

        result.finished_at = utc_now()
        return result

    async def send_trial_ending_reminders(self, now: Optional[datetime] = None) -> JobResult:
        """
        Remind trial users whose trial ends 24 to 36 hours from now.

        The reminder flag flip and the enqueue share one transaction: the
        flip only succeeds once, and a failed enqueue rolls it back.
        """
        now = now or utc_now()
        result = JobResult(job="trial_reminders", started_at=now)
        window_start = now + TRIAL_REMINDER_LEAD
        window_end = window_start + TRIAL_REMINDER_WINDOW

        async with self._db.session_context() as session:
            candidates = await UserRepository(session).list_trials_ending_between(
                window_start, window_end
            )
        logger.info(f"Sending {len(candidates)} trial ending reminders")

        links = self.get_payment_links()
        for user in candidates:
            try:
                async with self._db.session_context() as session:
                    if not await UserRepository(session).claim_trial_reminder(user.id):
                        result.skipped += 1
                        continue
                    await EmailLogRepository(session).log_pending(
                        user.id, EmailTemplate.TRIAL_ENDING
                    )
                    await self._email_queue.enqueue(
                        user.id,
                        EmailType.TRIAL,
                        {
                            "template": EmailTemplate.TRIAL_ENDING.value,
                            "trialEnd": user.trial_end.isoformat() if user.trial_end else None,
                            "paymentLinks": {
                                "basic": links.basic.payment_link,
                                "pro": links.pro.payment_link,
                            },
                        },
                    )
                result.processed += 1
            except Exception as e:
                result.failed += 1
                logger.error(f"Failed to send trial reminder to user {user.id}: {e}")

        result.finished_at = utc_now()
        return result

    async def send_weekly_upgrade_reminders(self, now: Optional[datetime] = None) -> JobResult:
        """Nudge free users, at most once every seven days, to upgrade."""
        now = now or utc_now()
        result = JobResult(job="upgrade_reminders", started_at=now)

        async with self._db.session_context() as session:
            candidates = await UserRepository(session).list_upgrade_reminder_candidates(
                now, UPGRADE_REMINDER_INTERVAL
            )
        logger.info(f"Sending {len(candidates)} weekly upgrade reminders")

        links = self.get_payment_links().model_dump()
        for user in candidates:
            try:
                async with self._db.session_context() as session:
                    claimed = await UserRepository(session).claim_upgrade_reminder(
                        user.id, now, UPGRADE_REMINDER_INTERVAL
                    )
                    if not claimed:
                        result.skipped += 1
                        continue
                    await EmailLogRepository(session).log_pending(
                        user.id, EmailTemplate.UPGRADE_REMINDER
                    )
                    await self._email_queue.enqueue(
                        user.id,
                        EmailType.UPGRADE_REMINDER,
                        {"paymentLinks": links},
                    )
                result.processed += 1
            except Exception as e:
                result.failed += 1
                logger.error(f"Failed to send upgrade reminder to user {user.id}: {e}")

        result.finished_at = utc_now()
        return result

    async def prune_webhook_ledger(self, retention_days: int = 90) -> int:
        """Drop ledger entries older than any delivery Stripe would retry."""
        async with self._db.session_context() as session:
            return await WebhookEventRepository(session).prune_older_than(retention_days)
