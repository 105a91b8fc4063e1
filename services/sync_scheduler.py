"""
Scheduled daily sync.

An APScheduler background job starts one full sync a day. When the feed or
the database is unreachable the run is retried with exponential backoff;
any other failure waits for the next day.
"""

import threading
from typing import Callable, Optional

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import settings
from exceptions import FeedUnavailableError, StorageUnavailableError, SyncAlreadyRunningError
from models.sync import SyncOptions, SyncRunResponse, SyncStatus
from services.cruise_sync_service import CruiseSyncService, get_cruise_sync_service

logger = structlog.get_logger(__name__)

JOB_ID = "daily_cruise_sync"

RETRYABLE_ERRORS = (FeedUnavailableError, StorageUnavailableError)


def backoff_delays(attempts: int, base_seconds: float) -> list[float]:
    """Waits between attempts: base, then doubling (300, 600, 1200...)."""
    return [base_seconds * 2 ** i for i in range(attempts - 1)]


class ScheduledSync:
    """
    Daily sync job with retries.

    wait(seconds) returns True when the scheduler is shutting down; tests
    pass their own to avoid sleeping.
    """

    def __init__(
        self,
        sync_service: Optional[CruiseSyncService] = None,
        wait: Optional[Callable[[float], bool]] = None,
    ):
        self.sync_service = sync_service or get_cruise_sync_service()
        self._stop = threading.Event()
        self._wait = wait or self._stop.wait
        self.scheduler: Optional[BackgroundScheduler] = None

    def run_once(self) -> Optional[SyncRunResponse]:
        """
        One scheduled sync, retried while the failure is transient.

        Returns:
            The last run, or None when another sync already held the slot
        """
        attempts = settings.sync_retry_attempts
        delays = backoff_delays(attempts, settings.sync_retry_base_seconds)
        result = None

        for attempt in range(1, attempts + 1):
            try:
                run = self.sync_service.start_run(SyncOptions())
            except SyncAlreadyRunningError:
                logger.warning("scheduled_sync_skipped", reason="sync_in_progress", attempt=attempt)
                return result

            logger.info("scheduled_sync_started", run_id=run.id, attempt=attempt, attempts=attempts)
            result = self.sync_service.execute(run)
            if result.status != SyncStatus.FAILED:
                logger.info("scheduled_sync_finished", run_id=run.id, status=result.status.value)
                return result

            retryable = isinstance(run.fatal_exception, RETRYABLE_ERRORS)
            if not retryable or attempt == attempts:
                logger.error(
                    "scheduled_sync_failed",
                    run_id=run.id,
                    attempt=attempt,
                    attempts=attempts,
                    retryable=retryable,
                    error=result.fatal_error
                )
                return result

            delay = delays[attempt - 1]
            logger.warning(
                "scheduled_sync_retrying",
                run_id=run.id,
                attempt=attempt,
                delay_seconds=delay,
                error=result.fatal_error
            )
            if self._wait(delay):
                logger.info("scheduled_sync_abandoned", reason="shutdown")
                return result

        return result

    def job(self) -> None:
        """Scheduler entry point. Errors are logged so the scheduler keeps running."""
        try:
            self.run_once()
        except Exception as e:
            logger.error("scheduled_sync_crashed", error=str(e), error_type=type(e).__name__)

    def start(self) -> BackgroundScheduler:
        """Register the daily job and start the background scheduler."""
        self._stop.clear()
        self.scheduler = BackgroundScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 3600,
            },
        )
        self.scheduler.add_job(
            self.job,
            trigger=CronTrigger(
                hour=settings.sync_schedule_hour_utc,
                minute=settings.sync_schedule_minute,
                timezone="UTC",
            ),
            id=JOB_ID,
            name="Daily cruise sync",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            "sync_scheduler_started",
            hour_utc=settings.sync_schedule_hour_utc,
            minute=settings.sync_schedule_minute,
            next_run=str(self.scheduler.get_job(JOB_ID).next_run_time)
        )
        return self.scheduler

    def shutdown(self) -> None:
        """Stop the scheduler and cut short any pending retry wait."""
        self._stop.set()
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
            logger.info("sync_scheduler_stopped")


# Singleton instance
_scheduled_sync: Optional[ScheduledSync] = None


def get_scheduled_sync() -> ScheduledSync:
    """Get or create ScheduledSync instance."""
    global _scheduled_sync
    if _scheduled_sync is None:
        _scheduled_sync = ScheduledSync()
    return _scheduled_sync
