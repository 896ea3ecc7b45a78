"""APScheduler setup for periodic tasks."""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from staycal.config import settings
from staycal.modules.holds.manager import ReservationHoldManager

logger = logging.getLogger(__name__)


def create_scheduler(hold_manager: ReservationHoldManager | None = None) -> BackgroundScheduler:
    """Create and configure the background scheduler."""
    scheduler = BackgroundScheduler()
    sched_config = settings.get("scheduler") or {}
    hold_manager = hold_manager or ReservationHoldManager()

    # Lapsed holds already read as available; the sweep persists it.
    scheduler.add_job(
        hold_manager.sweep_expired,
        "interval",
        minutes=sched_config.get("hold_sweep_interval", 1),
        id="hold_sweep",
        name="Hold Expiry Sweep",
        coalesce=True,
        max_instances=1,
    )

    logger.info("Scheduler configured with %d jobs", len(scheduler.get_jobs()))
    return scheduler
