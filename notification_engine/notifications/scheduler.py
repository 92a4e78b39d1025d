"""Periodic triggers for the reminder checks and the schedule queue.

Both periodic ticks and manual API calls go through :class:`JobGuard`, so a
job never runs twice at once. A periodic tick that finds its job busy is
skipped; a manual call gets :class:`JobAlreadyRunning`.
"""

import logging
import threading
from collections.abc import Callable
from contextlib import contextmanager
from typing import TypeVar

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .exceptions import JobAlreadyRunning

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEADLINE_JOB = "deadline_reminders"
OVERDUE_JOB = "overdue_check"
QUEUE_JOB = "schedule_queue"


class JobGuard:
    """Per-job non-blocking mutual exclusion."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, job: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(job, threading.Lock())

    def is_running(self, job: str) -> bool:
        return self._lock_for(job).locked()

    @contextmanager
    def hold(self, job: str):
        lock = self._lock_for(job)
        if not lock.acquire(blocking=False):
            raise JobAlreadyRunning(job)
        try:
            yield
        finally:
            lock.release()

    def run(self, job: str, func: Callable[[], T]) -> T:
        with self.hold(job):
            return func()


class NotificationScheduler:
    def __init__(
        self,
        guard: JobGuard,
        daily_jobs: dict[str, Callable[[], object]],
        hourly_jobs: dict[str, Callable[[], object]],
        timezone: str = "UTC",
        daily_hour: int = 9,
        daily_minute: int = 0,
        hourly_minute: int = 0,
    ) -> None:
        self.guard = guard
        self.daily_jobs = daily_jobs
        self.hourly_jobs = hourly_jobs
        self.timezone = timezone
        self.daily_hour = daily_hour
        self.daily_minute = daily_minute
        self.hourly_minute = hourly_minute
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self._scheduler is not None:
            logger.info("Notification scheduler already running, skipping start")
            return

        scheduler = BackgroundScheduler(timezone=self.timezone)
        daily = CronTrigger(hour=self.daily_hour, minute=self.daily_minute, timezone=self.timezone)
        hourly = CronTrigger(minute=self.hourly_minute, timezone=self.timezone)

        for name, func in self.daily_jobs.items():
            self._add(scheduler, name, func, daily)
        for name, func in self.hourly_jobs.items():
            self._add(scheduler, name, func, hourly)

        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Notification scheduler started (%s): daily checks at %02d:%02d, queue hourly at :%02d",
            self.timezone, self.daily_hour, self.daily_minute, self.hourly_minute,
        )

    def _add(self, scheduler: BackgroundScheduler, name: str, func: Callable[[], object], trigger) -> None:
        scheduler.add_job(
            self.tick,
            trigger=trigger,
            args=[name, func],
            id=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def tick(self, name: str, func: Callable[[], object]) -> None:
        """Run one periodic job. Errors are logged, never raised into APScheduler."""
        try:
            self.guard.run(name, func)
        except JobAlreadyRunning:
            logger.warning("Skipping %s tick: previous run still in progress", name)
        except Exception:
            logger.exception("Scheduled job %s failed", name)

    def stop(self, wait: bool = True) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info("Notification scheduler stopped")
