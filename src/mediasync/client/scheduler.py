"""Background scheduler for automatic sync passes.

This module provides:
- BackgroundSyncScheduler: Periodic and on-demand passes with whole-pass
  retry (exponential backoff) for retryable failures

The engine only retries individual items. Retrying a whole pass is the
scheduler's job: a FAILED outcome schedules a one-off retry after
30s, 60s, 120s, ... (capped), and any other outcome resets the backoff.
FATAL outcomes are never retried.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from mediasync.client.sync.retry import PASS_RETRY_BASE_DELAY, PASS_RETRY_MAX_DELAY, backoff_delay

if TYPE_CHECKING:
    from mediasync.client.sync.types import SyncResult

logger = logging.getLogger(__name__)

PERIODIC_JOB_ID = "periodic_sync"
SYNC_NOW_JOB_ID = "sync_now"
RETRY_JOB_ID = "sync_retry"

DEFAULT_MAX_RETRY_ATTEMPTS = 8


class BackgroundSyncScheduler:
    """Schedules sync passes on an APScheduler background scheduler."""

    def __init__(
        self,
        run_pass: Callable[[bool], SyncResult],
        base_delay: float = PASS_RETRY_BASE_DELAY,
        max_delay: float = PASS_RETRY_MAX_DELAY,
        max_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS,
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            run_pass: Runs one pass; receives the auto_upload flag.
            base_delay: First retry delay in seconds.
            max_delay: Upper bound for retry delays in seconds.
            max_attempts: Consecutive retries before giving up until the next
                periodic run.
            scheduler: APScheduler instance (a new BackgroundScheduler when None).
        """
        self._run_pass = run_pass
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_attempts = max_attempts
        self._scheduler = scheduler or BackgroundScheduler()
        self._lock = threading.Lock()
        self._retry_attempt = 0
        self._require_unmetered = False
        self._interval_hours: float | None = None

    @property
    def retry_attempt(self) -> int:
        """Number of consecutive retries scheduled so far."""
        return self._retry_attempt

    @property
    def interval_hours(self) -> float | None:
        """Interval of the periodic job (None when not scheduled)."""
        return self._interval_hours

    @property
    def require_unmetered(self) -> bool:
        return self._require_unmetered

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        """Start the scheduler."""
        if self._scheduler.running:
            return  # Already running
        self._scheduler.start()
        logger.info("Sync scheduler started")

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Sync scheduler stopped")

    def next_run_time(self, job_id: str = PERIODIC_JOB_ID) -> datetime | None:
        """Next run time of a job, if scheduled."""
        job = self._scheduler.get_job(job_id)
        if job is None:
            return None
        return getattr(job, "next_run_time", None)

    def _remove_job(self, job_id: str) -> None:
        if self._scheduler.get_job(job_id) is not None:
            self._scheduler.remove_job(job_id)

    # === SyncScheduler protocol ===

    def schedule_periodic(
        self, interval_hours: float, require_unmetered: bool, auto_upload: bool = True
    ) -> None:
        """Run a pass every interval_hours, replacing any previous schedule."""
        self._interval_hours = interval_hours
        self._require_unmetered = require_unmetered
        self._scheduler.add_job(
            self._run_job,
            trigger=IntervalTrigger(hours=interval_hours),
            id=PERIODIC_JOB_ID,
            name="Periodic media sync",
            kwargs={"auto_upload": auto_upload},
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(
            "Periodic sync scheduled every %.1f hours (unmetered only: %s, auto upload: %s)",
            interval_hours,
            require_unmetered,
            auto_upload,
        )

    def sync_now(self, auto_upload: bool = True) -> None:
        """Run a single pass as soon as possible."""
        self._scheduler.add_job(
            self._run_job,
            trigger=DateTrigger(run_date=datetime.now()),
            id=SYNC_NOW_JOB_ID,
            name="Immediate media sync",
            kwargs={"auto_upload": auto_upload},
            replace_existing=True,
        )
        logger.info("Immediate sync requested (auto upload: %s)", auto_upload)

    def cancel(self) -> None:
        """Cancel periodic, pending and retry passes."""
        for job_id in (PERIODIC_JOB_ID, SYNC_NOW_JOB_ID, RETRY_JOB_ID):
            self._remove_job(job_id)
        self._interval_hours = None
        with self._lock:
            self._retry_attempt = 0
        logger.info("Scheduled syncs cancelled")

    # === Jobs ===

    def _run_job(self, auto_upload: bool = True) -> None:
        """Job function running one pass and handling whole-pass retry."""
        logger.info("Starting scheduled sync pass")
        try:
            result = self._run_pass(auto_upload)
        except Exception:
            logger.exception("Error during scheduled sync pass")
            return

        if result.should_retry:
            self._schedule_retry(auto_upload, result.error)
            return

        with self._lock:
            if self._retry_attempt:
                logger.info("Sync pass ended with %s, resetting backoff", result.outcome.value)
            self._retry_attempt = 0
        self._remove_job(RETRY_JOB_ID)

    def _schedule_retry(self, auto_upload: bool, error: str | None) -> None:
        with self._lock:
            if self._retry_attempt >= self._max_attempts:
                logger.warning(
                    "Sync pass failed %d times in a row, waiting for the next periodic run",
                    self._retry_attempt,
                )
                self._retry_attempt = 0
                return
            self._retry_attempt += 1
            attempt = self._retry_attempt

        delay = backoff_delay(attempt, self._base_delay, self._max_delay)
        self._scheduler.add_job(
            self._run_job,
            trigger=DateTrigger(run_date=datetime.now() + timedelta(seconds=delay)),
            id=RETRY_JOB_ID,
            name="Media sync retry",
            kwargs={"auto_upload": auto_upload},
            replace_existing=True,
        )
        logger.warning(
            "Sync pass failed (%s), retry %d scheduled in %.0fs",
            error,
            attempt,
            delay,
        )
