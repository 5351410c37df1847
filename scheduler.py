import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Settings, get_settings
from errors import StorageError
from services import Coordinator


logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self, coordinator: Coordinator, settings: Optional[Settings] = None
    ) -> None:
        self.coordinator = coordinator
        self.settings = settings or get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def run_job(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: source={source}")
        try:
            created = self.coordinator.generate_due_expenses()
        except StorageError as exc:
            # Nothing was committed; the next trigger retries from the same watermarks.
            logger.error(f"scheduler_run_failed: source={source} error={exc}")
            return 0
        logger.info(f"scheduler_run: source={source} occurrences_posted={len(created)}")
        return len(created)

    def start(self) -> None:
        self.run_job("startup")

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self.run_job,
            trigger,
            args=["daily_03:15"],
            id="recurring_daily",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )

        minutes = self.settings.recurring_interval_minutes
        trigger = IntervalTrigger(minutes=minutes)
        self.scheduler.add_job(
            self.run_job,
            trigger,
            args=["interval_safety_net"],
            id="recurring_interval_safety",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with daily 03:15 and {minutes}-minute safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
