"""
Tests for the billing cron jobs: trial expiry, trial ending reminders and
weekly upgrade reminders.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from astropal.infrastructure.db.models import SubscriptionModel, utc_now
from astropal.infrastructure.db.repositories import EmailLogRepository, UserRepository


async def reload(db, user):
    async with db.session_context() as session:
        return await UserRepository(session).get_by_id(user.id)


async def templates_for(db, user):
    async with db.session_context() as session:
        return [log.template for log in await EmailLogRepository(session).list_for_user(user.id)]


async def add_subscription(db, user, status="active", subscription_id="sub_active"):
    async with db.session_context() as session:
        session.add(SubscriptionModel(
            user_id=user.id,
            stripe_subscription_id=subscription_id,
            status=status,
        ))


# =============================================================================
# Trial Expiry
# =============================================================================

class TestExpiredTrials:

    async def test_expired_trial_moves_to_free(self, billing_service, create_user, db):
        now = utc_now()
        expired = await create_user("old@example.com", trial_end=now - timedelta(hours=1))
        running = await create_user("new@example.com", trial_end=now + timedelta(days=2))

        result = await billing_service.process_expired_trials(now)

        assert result.job == "expire_trials"
        assert result.processed == 1
        assert result.failed == 0

        expired = await reload(db, expired)
        assert expired.tier == "free"
        assert expired.trial_end is None
        assert (await reload(db, running)).tier == "trial"

    async def test_trial_with_active_subscription_is_skipped(
        self, billing_service, create_user, db
    ):
        now = utc_now()
        user = await create_user(trial_end=now - timedelta(hours=1))
        await add_subscription(db, user)

        result = await billing_service.process_expired_trials(now)

        assert result.processed == 0
        assert result.skipped == 1
        assert (await reload(db, user)).tier == "trial"

    async def test_canceled_subscription_does_not_block_expiry(
        self, billing_service, create_user, db
    ):
        now = utc_now()
        user = await create_user(trial_end=now - timedelta(hours=1))
        await add_subscription(db, user, status="canceled")

        result = await billing_service.process_expired_trials(now)

        assert result.processed == 1
        assert (await reload(db, user)).tier == "free"

    async def test_one_failing_row_does_not_stop_the_job(
        self, billing_service, create_user, db
    ):
        now = utc_now()
        bad = await create_user("bad@example.com", trial_end=now - timedelta(hours=2))
        good = await create_user("good@example.com", trial_end=now - timedelta(hours=1))

        original = UserRepository.expire_trial

        async def flaky_expire(self, user_id, when):
            if user_id == bad.id:
                raise RuntimeError("row locked")
            return await original(self, user_id, when)

        with patch.object(UserRepository, "expire_trial", flaky_expire):
            result = await billing_service.process_expired_trials(now)

        assert result.processed == 1
        assert result.failed == 1
        assert (await reload(db, bad)).tier == "trial"
        assert (await reload(db, good)).tier == "free"

    async def test_no_trials_is_a_clean_run(self, billing_service):
        result = await billing_service.process_expired_trials()

        assert result.processed == 0
        assert result.failed == 0
        assert result.finished_at is not None


# =============================================================================
# Trial Ending Reminders
# =============================================================================

class TestTrialReminders:

    async def test_reminds_trials_ending_in_window(
        self, billing_service, create_user, db, queued_jobs
    ):
        now = utc_now()
        due = await create_user("due@example.com", trial_end=now + timedelta(hours=30))
        soon = await create_user("soon@example.com", trial_end=now + timedelta(hours=10))
        later = await create_user("later@example.com", trial_end=now + timedelta(hours=40))

        result = await billing_service.send_trial_ending_reminders(now)

        assert result.job == "trial_reminders"
        assert result.processed == 1

        jobs = await queued_jobs("trial")
        assert len(jobs) == 1
        assert jobs[0]["userId"] == due.id
        payload = jobs[0]["payload"]
        assert payload["template"] == "trial_ending"
        assert payload["paymentLinks"]["basic"] == "https://buy.stripe.com/astropal-basic"
        assert payload["paymentLinks"]["pro"] == "https://buy.stripe.com/astropal-pro"

        assert (await reload(db, due)).trial_reminder_sent is True
        assert (await reload(db, soon)).trial_reminder_sent is False
        assert (await reload(db, later)).trial_reminder_sent is False
        assert await templates_for(db, due) == ["trial_ending"]

    async def test_reminder_sent_only_once(self, billing_service, create_user, queued_jobs):
        now = utc_now()
        await create_user(trial_end=now + timedelta(hours=30))

        first = await billing_service.send_trial_ending_reminders(now)
        second = await billing_service.send_trial_ending_reminders(now + timedelta(minutes=5))

        assert first.processed == 1
        assert second.processed == 0
        assert len(await queued_jobs("trial")) == 1

    async def test_enqueue_failure_keeps_user_eligible(
        self, billing_service, create_user, email_queue, db
    ):
        now = utc_now()
        user = await create_user(trial_end=now + timedelta(hours=30))
        email_queue.enqueue = AsyncMock(side_effect=ConnectionError("queue down"))

        result = await billing_service.send_trial_ending_reminders(now)

        assert result.failed == 1
        assert result.processed == 0
        assert (await reload(db, user)).trial_reminder_sent is False
        assert await templates_for(db, user) == []


# =============================================================================
# Weekly Upgrade Reminders
# =============================================================================

class TestUpgradeReminders:

    @pytest.fixture
    async def free_users(self, create_user):
        now = utc_now()
        return {
            "never": await create_user(
                "never@example.com", tier="free", created_at=now - timedelta(days=10)
            ),
            "stale": await create_user(
                "stale@example.com", tier="free", created_at=now - timedelta(days=30),
                last_upgrade_reminder=now - timedelta(days=8),
            ),
            "recent": await create_user(
                "recent@example.com", tier="free", created_at=now - timedelta(days=30),
                last_upgrade_reminder=now - timedelta(days=3),
            ),
            "new": await create_user(
                "new@example.com", tier="free", created_at=now - timedelta(days=2)
            ),
            "bounced": await create_user(
                "bounced@example.com", tier="free", created_at=now - timedelta(days=30),
                email_status="bounced",
            ),
            "paying": await create_user(
                "paying@example.com", tier="basic", created_at=now - timedelta(days=30)
            ),
        }

    async def test_reminds_due_free_users(self, billing_service, free_users, queued_jobs):
        result = await billing_service.send_weekly_upgrade_reminders(utc_now())

        assert result.job == "upgrade_reminders"
        assert result.processed == 2

        jobs = await queued_jobs("upgrade_reminder")
        assert {job["userId"] for job in jobs} == {
            free_users["never"].id,
            free_users["stale"].id,
        }
        links = jobs[0]["payload"]["paymentLinks"]
        assert links["basic"]["price"] == 799
        assert links["pro"]["payment_link"] == "https://buy.stripe.com/astropal-pro"

    async def test_reminders_respect_interval(self, billing_service, free_users, db):
        now = utc_now()
        await billing_service.send_weekly_upgrade_reminders(now)

        again = await billing_service.send_weekly_upgrade_reminders(now + timedelta(days=1))
        next_week = await billing_service.send_weekly_upgrade_reminders(now + timedelta(days=8))

        assert again.processed == 0
        # "recent" and "new" have become due by then too
        assert next_week.processed == 4
        assert await templates_for(db, free_users["never"]) == [
            "upgrade_reminder",
            "upgrade_reminder",
        ]
