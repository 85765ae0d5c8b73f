"""APScheduler wrapper driving periodic reconciliation cycles."""

from __future__ import annotations

import datetime as dt
import logging
import threading
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .runner import VuokraWatcherRunner
from .store import INACTIVITY_THRESHOLD

logger = logging.getLogger(__name__)

RECONCILE_JOB_ID = "vuokrawatch::reconcile"
PURGE_JOB_ID = "vuokrawatch::purge-inactive"
DEFAULT_INITIAL_DELAY = dt.timedelta(seconds=5)
DEFAULT_GRACE_PERIOD = dt.timedelta(seconds=30)
DEFAULT_PURGE_INTERVAL = dt.timedelta(days=1)


class PeriodicReconciler:
    """Run reconciliation on a fixed interval in a background thread.

    A single job with ``max_instances=1`` guarantees that a cycle still in
    progress finishes before the next one starts. A failed cycle is logged
    and the next tick acts as the retry.

    Purging inactive subscribers is off unless ``purge_interval`` is given.
    New subscribers start with a zero ``last_notified`` and would otherwise be
    dropped by the first purge.
    """

    def __init__(self,
                 runner: VuokraWatcherRunner,
                 interval: dt.timedelta,
                 initial_delay: dt.timedelta = DEFAULT_INITIAL_DELAY,
                 grace_period: dt.timedelta = DEFAULT_GRACE_PERIOD,
                 scheduler: Optional[BackgroundScheduler] = None,
                 purge_interval: Optional[dt.timedelta] = None) -> None:
        if interval.total_seconds() <= 0:
            raise ValueError("interval must be positive")
        self.runner = runner
        self.interval = interval
        self.initial_delay = initial_delay
        self.grace_period = grace_period
        self.purge_interval = purge_interval
        self.scheduler = scheduler or BackgroundScheduler()
        self.first_run_done = threading.Event()
        self.started = False

    def start(self) -> bool:
        """Start the scheduler and wait a bounded time for the first cycle.

        Returns True when the first cycle finished within the grace period.
        """
        if self.started:
            return self.first_run_done.is_set()

        first_run = dt.datetime.now(dt.timezone.utc) + self.initial_delay
        self.scheduler.add_job(
            self._reconcile_job,
            trigger=IntervalTrigger(seconds=self.interval.total_seconds()),
            id=RECONCILE_JOB_ID,
            next_run_time=first_run,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        if self.purge_interval is not None:
            self.scheduler.add_job(
                self._purge_job,
                trigger=IntervalTrigger(
                    seconds=self.purge_interval.total_seconds()),
                id=PURGE_JOB_ID,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        self.scheduler.start()
        self.started = True
        logger.info("Scheduler started; checking every %s", self.interval)

        timeout = (self.initial_delay + self.grace_period).total_seconds()
        if self.first_run_done.wait(timeout):
            logger.info("Initial update completed")
            return True
        logger.warning(
            "Initial update timed out, continuing with periodic updates")
        return False

    def shutdown(self) -> None:
        if self.started:
            self.scheduler.shutdown(wait=False)
            self.started = False
            logger.info("Scheduler stopped")

    def _reconcile_job(self) -> None:
        try:
            self.runner.run()
        except Exception:  # noqa: BLE001
            logger.exception("Error during periodic update")
        finally:
            self.first_run_done.set()

    def _purge_job(self) -> None:
        try:
            self.runner.store.purge_inactive(INACTIVITY_THRESHOLD)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to purge inactive subscribers")


__all__ = ["PeriodicReconciler"]
