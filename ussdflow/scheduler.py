"""
scheduler.py - Timer-driven expiry sweep.

One APScheduler interval job, registered by main.lifespan when
settings.sweep_interval_seconds > 0. Each run opens its own AsyncSession
(there is no request to borrow one from), runs ExpirySweeper.sweep() - the
same method behind POST /api/admin/sweep - and commits.
"""
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ussdflow.config import settings
from ussdflow.database import AsyncSessionLocal
from ussdflow.engine import ExpirySweeper
from ussdflow.gateway.dependencies import build_engine

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "ussd_session_expiry_sweep"


async def run_expiry_sweep(redis=None, session_factory=AsyncSessionLocal) -> int:
    """Run one sweep in a fresh transaction. Returns the number of sessions expired."""
    async with session_factory() as db:
        try:
            sweeper = ExpirySweeper(build_engine(db, redis=redis), batch_size=settings.sweep_batch_size)
            expired = await sweeper.sweep()
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("Scheduled expiry sweep failed")
            raise
    return expired


def build_scheduler(redis=None, interval_seconds: Optional[int] = None) -> Optional[AsyncIOScheduler]:
    """
    Build (not start) the sweep scheduler. Returns None when the timer is disabled.
    """
    interval = settings.sweep_interval_seconds if interval_seconds is None else interval_seconds
    if interval <= 0:
        logger.info("Expiry sweep timer disabled (sweep_interval_seconds=%d)", interval)
        return None

    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        run_expiry_sweep,
        "interval",
        seconds=interval,
        kwargs={"redis": redis},
        id=SWEEP_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    logger.info("Scheduled job: %s (every %d seconds)", SWEEP_JOB_ID, interval)
    return scheduler
