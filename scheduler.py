import logging
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

import jobs
from container import Container


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, container: Container) -> None:
        self.container = container
        self.scheduler = BackgroundScheduler(timezone=container.settings.timezone)

    def _run_job(self, name: str, job: Callable[[Container], int]) -> None:
        logger.info(f"scheduler_run: job={name}")
        try:
            result = job(self.container)
        except Exception:
            logger.exception(f"scheduler_run_failed: job={name}")
            return
        logger.info(f"scheduler_run: job={name} result={result}")

    def _drain_events(self) -> None:
        if self.container.bus.pending():
            processed = self.container.bus.drain()
            logger.info(f"event_bus_drain: processed={processed}")

    def start(self) -> None:
        self.scheduler.add_job(
            self._run_job,
            CronTrigger(hour=0, minute=0),
            args=["recurring_discovery", jobs.trigger_recurring_transactions],
            id="recurring_discovery",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._run_job,
            CronTrigger(day=1, hour=0, minute=0),
            args=["monthly_reports", jobs.generate_monthly_reports],
            id="monthly_reports",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._run_job,
            CronTrigger(hour="*/6", minute=0),
            args=["budget_alerts", jobs.check_budget_alerts],
            id="budget_alerts",
            replace_existing=True,
            misfire_grace_time=600,
        )
        self.scheduler.add_job(
            self._drain_events,
            IntervalTrigger(seconds=5),
            id="event_bus_drain",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        logger.info(
            "Scheduler started with daily recurring discovery, monthly reports "
            "and 6-hourly budget alerts"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
