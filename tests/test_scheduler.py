"""Tests for scheduler wiring."""

from datetime import timedelta
from unittest.mock import MagicMock

from staycal.scheduler import create_scheduler


def test_hold_sweep_job_registered():
    hold_manager = MagicMock()

    scheduler = create_scheduler(hold_manager=hold_manager)

    job = scheduler.get_job("hold_sweep")
    assert job is not None
    assert job.func == hold_manager.sweep_expired
    assert job.trigger.interval == timedelta(minutes=1)
    assert job.coalesce is True
    assert job.max_instances == 1


def test_scheduler_is_not_started():
    scheduler = create_scheduler(hold_manager=MagicMock())
    assert not scheduler.running
    assert len(scheduler.get_jobs()) == 1
