"""
Scheduled jobs.

The daily reconciliation sweep runs on an APScheduler ``AsyncIOScheduler``
inside the API process. ``max_instances=1`` keeps a slow sweep from
overlapping the next tick; overlap would still be safe, just wasteful.
"""
from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from src.core.config import settings
from src.services.reconciliation import run_reconciliation

logger = logging.getLogger(__name__)

RECONCILIATION_JOB_ID = "daily_credit_reconciliation"

scheduler = AsyncIOScheduler(timezone=settings.scheduler.timezone)


async def reconciliation_tick() -> None:
    try:
        report = await run_reconciliation()
    except Exception as e:
        logger.error(f"[SCHEDULER] Reconciliation run failed: {e}", exc_info=True)
        return
    logger.info(f"[SCHEDULER] Reconciliation finished: {report.to_dict()}")


def start_scheduler() -> None:
    """Register the reconciliation job and start the scheduler."""

    cfg = settings.scheduler
    scheduler.add_job(
        reconciliation_tick,
        trigger=CronTrigger(
            hour=cfg.reconciliation_hour,
            minute=cfg.reconciliation_minute,
            timezone=cfg.timezone,
        ),
        id=RECONCILIATION_JOB_ID,
        name="Daily credit grant reconciliation",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=cfg.misfire_grace_seconds,
    )
    if not scheduler.running:
        scheduler.start()
    logger.info(
        f"[SCHEDULER] Started, reconciliation runs daily at "
        f"{cfg.reconciliation_hour:02d}:{cfg.reconciliation_minute:02d} {cfg.timezone}"
    )


def shutdown_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("[SCHEDULER] Shut down")
