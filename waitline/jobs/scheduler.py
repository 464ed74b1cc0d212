"""
Background jobs run with APScheduler.

Every API instance may run the same jobs: the outbox sweep claims messages
atomically and bucket cleanup is a plain DELETE, so overlapping runs across
instances only compete for rows.

Usage:
    scheduler = get_scheduler()
    register_default_jobs(scheduler)
    scheduler.start()
"""
import logging
from collections import Counter
from typing import Optional, Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED

from waitline.lib.db import get_db_context
from waitline.lib.settings import settings
from waitline.services.outbox_service import OutboxService
from waitline.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


OUTBOX_SWEEP_JOB_ID = "outbox_sweep"
RATE_LIMIT_CLEANUP_JOB_ID = "rate_limit_cleanup"

_scheduler: Optional["SchedulerManager"] = None


def outbox_sweep_job() -> int:
    """Deliver due outbox messages. Returns how many were attempted."""
    with get_db_context() as db:
        results = OutboxService(db).sweep(settings.outbox_sweep_limit)
    if results:
        outcome = Counter(result.status.value for result in results)
        logger.info(
            f"Outbox sweep processed {len(results)} message(s)",
            extra={"outcome": dict(outcome)},
        )
    return len(results)


def rate_limit_cleanup_job() -> int:
    """Drop rate-limit buckets past their window and grace period."""
    with get_db_context() as db:
        removed = RateLimiter(db).cleanup_expired()
    if removed:
        logger.info(f"Removed {removed} expired rate limit bucket(s)")
    return removed


class SchedulerManager:
    """
    Owns one BackgroundScheduler.

    Jobs coalesce missed runs and never overlap with themselves; a sweep that
    outlives its interval simply delays the next one.
    """

    def __init__(self):
        self.scheduler = BackgroundScheduler(
            timezone="UTC",
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': settings.outbox_sweep_interval_seconds,
            }
        )
        self.scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self.scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

    def _on_job_error(self, event):
        logger.error(
            f"Job {event.job_id} raised {event.exception.__class__.__name__}: "
            f"{event.exception}",
            exc_info=event.exception
        )

    def _on_job_missed(self, event):
        logger.warning(f"Job {event.job_id} missed its run at {event.scheduled_run_time}")

    def start(self) -> None:
        if self.scheduler.running:
            logger.warning("Scheduler already running")
            return
        self.scheduler.start()
        logger.info("Scheduler started", extra={"jobs": [job.id for job in self.get_jobs()]})

    def shutdown(self, wait: bool = True) -> None:
        """
        Stop the scheduler.

        Args:
            wait: Let a running sweep finish its batch first
        """
        if not self.scheduler.running:
            logger.warning("Scheduler not running")
            return
        self.scheduler.shutdown(wait=wait)
        logger.info("Scheduler shutdown")

    def add_cron_job(
        self,
        func: Callable,
        job_id: str,
        hour: Optional[str] = None,
        minute: Optional[str] = None,
        **kwargs
    ) -> None:
        self.scheduler.add_job(
            func,
            trigger=CronTrigger(hour=hour, minute=minute, timezone="UTC"),
            id=job_id,
            replace_existing=True,
            **kwargs
        )
        logger.info(f"Scheduled {job_id} (cron hour={hour}, minute={minute})")

    def add_interval_job(
        self,
        func: Callable,
        job_id: str,
        seconds: Optional[int] = None,
        minutes: Optional[int] = None,
        **kwargs
    ) -> None:
        """
        Schedule a job every `seconds` + `minutes`.

        Raises:
            ValueError: Neither interval component given
        """
        if not any([seconds, minutes]):
            raise ValueError("At least one of seconds or minutes must be specified")

        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds or 0, minutes=minutes or 0, timezone="UTC"),
            id=job_id,
            replace_existing=True,
            **kwargs
        )
        logger.info(f"Scheduled {job_id} (every {seconds or 0}s + {minutes or 0}m)")

    def remove_job(self, job_id: str) -> None:
        self.scheduler.remove_job(job_id)

    def get_jobs(self) -> list:
        return self.scheduler.get_jobs()


def register_default_jobs(manager: SchedulerManager) -> None:
    """Outbox sweep on an interval, bucket cleanup hourly."""
    manager.add_interval_job(
        outbox_sweep_job,
        job_id=OUTBOX_SWEEP_JOB_ID,
        seconds=settings.outbox_sweep_interval_seconds,
    )
    manager.add_cron_job(
        rate_limit_cleanup_job,
        job_id=RATE_LIMIT_CLEANUP_JOB_ID,
        hour="*",
        minute="7",
    )


def get_scheduler() -> SchedulerManager:
    """Process-wide scheduler, created on first use."""
    global _scheduler

    if _scheduler is None:
        _scheduler = SchedulerManager()

    return _scheduler
