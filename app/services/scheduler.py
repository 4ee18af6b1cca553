"""Run the release sweep in the background on a fixed interval."""

from __future__ import annotations

import logging
from datetime import datetime

from apscheduler.schedulers.background import BackgroundScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]

from app.services.notifier import ReleaseNotifier

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "release_sweep"


def build_release_scheduler(
    notifier: ReleaseNotifier,
    *,
    interval_hours: int,
    run_immediately: bool = True,
) -> BackgroundScheduler:
    """Schedule ``notifier.run_sweep`` every ``interval_hours``, plus once at start."""

    job_options = {"next_run_time": datetime.now()} if run_immediately else {}
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        func=notifier.run_sweep,
        trigger=IntervalTrigger(hours=interval_hours),
        id=SWEEP_JOB_ID,
        max_instances=1,
        coalesce=True,
        **job_options,
    )
    logger.info("Release sweep scheduled every %d hour(s)", interval_hours)
    return scheduler
