"""
Scheduled Jobs

Cron-driven billing maintenance and daily newsletter generation on an
APScheduler AsyncIOScheduler sharing the application's event loop.

Jobs:
- trial_maintenance: expire ended trials, send trial-ending reminders
- upgrade_reminders: weekly upgrade nudges for free users
- content_free / content_basic / content_pro: generate and queue the
  day's newsletter for every active user of the tier
- ledger_prune: drop old webhook ledger entries
"""

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from astropal.config.settings import Settings
from astropal.domain.billing import EmailType, JobResult, UserTier
from astropal.domain.content import ContentTier, EphemerisContext, Perspective, UserContext
from astropal.infrastructure.db.database import DatabaseManager
from astropal.infrastructure.db.models import User, utc_now
from astropal.infrastructure.db.repositories import UserRepository
from astropal.infrastructure.exceptions import NotFoundError
from astropal.infrastructure.kv import KeyValueStore
from astropal.infrastructure.services.billing_service import BillingService
from astropal.infrastructure.services.content_generation_service import (
    ContentGenerationService,
    content_cache_key,
)
from astropal.infrastructure.services.email_queue import EmailQueue


logger = logging.getLogger(__name__)


# Content edition -> user tiers that receive it
CONTENT_AUDIENCES: Dict[ContentTier, Tuple[UserTier, ...]] = {
    ContentTier.FREE: (UserTier.FREE,),
    ContentTier.BASIC: (UserTier.BASIC, UserTier.TRIAL),
    ContentTier.PRO: (UserTier.PRO,),
}


def ephemeris_key(date: str) -> str:
    return f"ephemeris:{date}"


def news_key(date: str) -> str:
    return f"news:{date}"


def user_context_for(user: User, tier: ContentTier) -> UserContext:
    return UserContext(
        user_id=user.id,
        perspective=Perspective(user.perspective),
        tier=tier,
        focus_areas=list(user.focus_areas or []),
        sun_sign=user.sun_sign,
        rising_sign=user.rising_sign,
        birth_location=user.birth_location or "Unknown",
        timezone=user.timezone or "UTC",
    )


class JobScheduler:
    """
    Owns the AsyncIOScheduler and the job registry.

    Jobs can also be run on demand through run_job, which the admin
    endpoint uses.
    """

    def __init__(
        self,
        settings: Settings,
        db: DatabaseManager,
        store: KeyValueStore,
        billing: BillingService,
        content: ContentGenerationService,
        email_queue: EmailQueue,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self._settings = settings
        self._db = db
        self._store = store
        self._billing = billing
        self._content = content
        self._email_queue = email_queue
        self._scheduler = scheduler or AsyncIOScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,  # Combine missed runs
                "max_instances": 1,
                "misfire_grace_time": 3600,
            },
        )

        self._jobs: Dict[str, Tuple[str, Callable[[], Awaitable[List[JobResult]]]]] = {
            "trial_maintenance": (settings.cron_trial_maintenance, self.run_trial_maintenance),
            "upgrade_reminders": (settings.cron_upgrade_reminders, self.run_upgrade_reminders),
            "content_free": (settings.cron_content_free, lambda: self.run_content_job(ContentTier.FREE)),
            "content_basic": (settings.cron_content_basic, lambda: self.run_content_job(ContentTier.BASIC)),
            "content_pro": (settings.cron_content_pro, lambda: self.run_content_job(ContentTier.PRO)),
            "ledger_prune": (settings.cron_ledger_prune, self.run_ledger_prune),
        }

    @property
    def job_names(self) -> List[str]:
        return list(self._jobs)

    @property
    def running(self) -> bool:
        return self._scheduler.running

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Register every job and start the scheduler (needs a running loop)."""
        if self._scheduler.running:
            logger.warning("Scheduler already running")
            return

        for name, (crontab, _) in self._jobs.items():
            self._scheduler.add_job(
                self.run_job,
                trigger=CronTrigger.from_crontab(crontab, timezone="UTC"),
                args=[name],
                id=name,
                name=name,
                replace_existing=True,
            )
            logger.info(f"Registered job {name} ({crontab})")

        self._scheduler.start()
        logger.info("Background scheduler started")

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Background scheduler stopped")

    async def run_job(self, name: str) -> List[JobResult]:
        """
        Run one job now.

        Raises:
            NotFoundError for an unknown job name
        """
        if name not in self._jobs:
            raise NotFoundError(f"Unknown job: {name}", details={"job": name})

        _, job = self._jobs[name]
        logger.info(f"Starting job {name}")
        results = await job()
        for result in results:
            logger.info(
                f"Job {result.job} finished: processed={result.processed}, "
                f"failed={result.failed}, skipped={result.skipped}"
            )
        return results

    # =========================================================================
    # Jobs
    # =========================================================================

    async def run_trial_maintenance(self) -> List[JobResult]:
        expired = await self._billing.process_expired_trials()
        reminders = await self._billing.send_trial_ending_reminders()
        return [expired, reminders]

    async def run_upgrade_reminders(self) -> List[JobResult]:
        return [await self._billing.send_weekly_upgrade_reminders()]

    async def run_ledger_prune(self) -> List[JobResult]:
        result = JobResult(job="ledger_prune", started_at=utc_now())
        result.processed = await self._billing.prune_webhook_ledger(
            self._settings.webhook_ledger_retention_days
        )
        result.finished_at = utc_now()
        return [result]

    async def run_content_job(
        self,
        tier: ContentTier,
        date: Optional[str] = None,
    ) -> List[JobResult]:
        """Generate and queue today's newsletter for every user of the edition."""
        date = date or datetime.now(timezone.utc).date().isoformat()
        result = JobResult(job=f"content_{tier.value}", started_at=utc_now())

        raw_ephemeris = await self._store.get(ephemeris_key(date))
        if raw_ephemeris is None:
            logger.warning(f"No ephemeris data for {date}, skipping {tier.value} content")
            result.finished_at = utc_now()
            return [result]
        ephemeris = EphemerisContext.model_validate_json(raw_ephemeris)
        news_context = await self._store.get(news_key(date))

        async with self._db.session_context() as session:
            users = await UserRepository(session).list_active_by_tiers(CONTENT_AUDIENCES[tier])
        logger.info(f"Generating {tier.value} content for {len(users)} users")

        for user in users:
            try:
                context = user_context_for(user, tier)
                content = await self._content.generate_content(context, ephemeris, news_context)
                # The job carries the body; the cache entry may not exist
                await self._email_queue.enqueue(
                    user.id,
                    EmailType.DAILY_NEWSLETTER,
                    {
                        **content.model_dump(mode="json", by_alias=True),
                        "contentKey": content_cache_key(
                            context.perspective.value, tier.value, ephemeris.date
                        ),
                        "date": ephemeris.date,
                    },
                )
                result.processed += 1
            except Exception as e:
                result.failed += 1
                logger.error(f"Failed to queue {tier.value} newsletter for user {user.id}: {e}")

        result.finished_at = utc_now()
        return [result]
