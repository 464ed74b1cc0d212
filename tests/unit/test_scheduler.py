"""
Tests for the background scheduler and its jobs.
"""
from contextlib import contextmanager
from unittest.mock import MagicMock, patch

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from waitline.jobs.scheduler import (
    OUTBOX_SWEEP_JOB_ID,
    RATE_LIMIT_CLEANUP_JOB_ID,
    SchedulerManager,
    get_scheduler,
    outbox_sweep_job,
    rate_limit_cleanup_job,
    register_default_jobs,
)
from waitline.lib.settings import settings


@pytest.mark.unit
def test_scheduler_manager_initialization():
    """Test SchedulerManager initialization."""
    manager = SchedulerManager()

    assert manager.scheduler is not None
    assert not manager.scheduler.running


@pytest.mark.unit
def test_scheduler_manager_start_stop():
    """Test starting and stopping scheduler."""
    manager = SchedulerManager()

    manager.start()
    assert manager.scheduler.running

    manager.shutdown(wait=False)
    assert not manager.scheduler.running


@pytest.mark.unit
def test_add_interval_job_requires_interval():
    manager = SchedulerManager()

    with pytest.raises(ValueError):
        manager.add_interval_job(lambda: None, job_id="nothing")


@pytest.mark.unit
def test_register_default_jobs():
    """Sweep runs on an interval, bucket cleanup on a cron schedule."""
    manager = SchedulerManager()

    register_default_jobs(manager)

    jobs = {job.id: job for job in manager.get_jobs()}
    assert set(jobs) == {OUTBOX_SWEEP_JOB_ID, RATE_LIMIT_CLEANUP_JOB_ID}
    assert isinstance(jobs[OUTBOX_SWEEP_JOB_ID].trigger, IntervalTrigger)
    assert jobs[OUTBOX_SWEEP_JOB_ID].trigger.interval.total_seconds() == settings.outbox_sweep_interval_seconds
    assert isinstance(jobs[RATE_LIMIT_CLEANUP_JOB_ID].trigger, CronTrigger)


@pytest.mark.unit
def test_remove_job():
    manager = SchedulerManager()
    register_default_jobs(manager)

    manager.remove_job(OUTBOX_SWEEP_JOB_ID)

    assert [job.id for job in manager.get_jobs()] == [RATE_LIMIT_CLEANUP_JOB_ID]


@pytest.mark.unit
def test_get_scheduler_singleton():
    """Test that get_scheduler returns singleton."""
    assert get_scheduler() is get_scheduler()


def _fake_context(session):
    @contextmanager
    def _context():
        yield session
    return _context


@pytest.mark.unit
def test_outbox_sweep_job_uses_configured_limit():
    session = MagicMock()
    with patch("waitline.jobs.scheduler.get_db_context", _fake_context(session)), \
            patch("waitline.jobs.scheduler.OutboxService") as service_cls:
        service_cls.return_value.sweep.return_value = []

        processed = outbox_sweep_job()

    assert processed == 0
    service_cls.assert_called_once_with(session)
    service_cls.return_value.sweep.assert_called_once_with(settings.outbox_sweep_limit)


@pytest.mark.unit
def test_rate_limit_cleanup_job_reports_removed_rows():
    session = MagicMock()
    with patch("waitline.jobs.scheduler.get_db_context", _fake_context(session)), \
            patch("waitline.jobs.scheduler.RateLimiter") as limiter_cls:
        limiter_cls.return_value.cleanup_expired.return_value = 7

        assert rate_limit_cleanup_job() == 7

    limiter_cls.assert_called_once_with(session)
