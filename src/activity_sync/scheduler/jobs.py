"""
APScheduler jobs for automatic sync.

A single interval job wakes every SYNC_TICK_MINUTES and asks the
orchestrator to run whichever credentials are due under their own
sync_frequency. Ticks never overlap: a tick that is still running when the
next one fires causes that one to be skipped.
"""
import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from activity_sync.config import get_settings

logger = logging.getLogger(__name__)

TICK_JOB_ID = "auto_sync_tick"


def build_scheduler(orchestrator) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        orchestrator: SyncOrchestrator whose run_due() each tick calls.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _auto_sync_tick,
        trigger="interval",
        minutes=settings.sync_tick_minutes,
        id=TICK_JOB_ID,
        replace_existing=True,
        coalesce=True,
        max_instances=1,
        kwargs={"orchestrator": orchestrator},
    )

    return scheduler


async def _auto_sync_tick(orchestrator) -> None:
    """One tick. Every failure is logged here; the scheduler keeps running."""
    logger.info("Auto-sync tick at %s", datetime.utcnow().isoformat())
    try:
        results = await orchestrator.run_due()
    except Exception as exc:
        logger.error("Auto-sync tick failed: %s", exc)
        return
    contended = sum(1 for r in results if r.contended)
    logger.info("Auto-sync tick finished: %d job(s), %d already running", len(results), contended)
