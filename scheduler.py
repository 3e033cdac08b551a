import logging
from datetime import date
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from cache import AggregateCache, get_default_cache
from config import get_settings
from database import session_scope
from errors import TransientStoreError
from rollover import RolloverResult, local_today, users_with_live_templates
from services import RolloverService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def run_rollover_for_all_users(
    today: date,
    *,
    scope=session_scope,
    cache: Optional[AggregateCache] = None,
) -> dict[int, RolloverResult]:
    """Roll every user's templates over; one user's failure does not stop the rest.

    Raises TransientStoreError after all users were attempted if any failed,
    so the scheduler records the run as failed and the next run retries.
    """
    with scope() as session:
        user_ids = users_with_live_templates(session)

    results: dict[int, RolloverResult] = {}
    failed_users: list[int] = []
    for user_id in user_ids:
        try:
            with scope() as session:
                results[user_id] = RolloverService(
                    session, user_id, cache=cache
                ).run(today)
        except TransientStoreError:
            logger.exception(f"rollover_user_failed: user_id={user_id}")
            failed_users.append(user_id)

    if failed_users:
        raise TransientStoreError(
            f"Rollover failed for users {failed_users}; will retry on next run"
        )
    return results


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.settings = settings
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        today = local_today()
        logger.info(f"scheduler_run: source={source} today={today.isoformat()}")
        results = run_rollover_for_all_users(today, cache=get_default_cache())
        created = sum(r.snapshots_created for r in results.values())
        logger.info(
            f"scheduler_run: source={source} users={len(results)} snapshots_created={created}"
        )

    def start(self) -> None:
        if not self.settings.rollover_enabled:
            logger.info("Scheduler disabled by SUBTRACK_ROLLOVER_ENABLED")
            return

        try:
            self._run_job("startup")
        except TransientStoreError:
            logger.exception("scheduler_run: source=startup failed")

        trigger = CronTrigger(hour=0, minute=5)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_00:05"],
            id="rollover_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="rollover_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 00:05 and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
