"""
APScheduler job for batch synchronization.

In batch mode the synchronizer replicates every allowlisted table on a fixed
interval. max_instances=1 means a run that outlasts the interval makes the
next tick skip instead of overlapping it.

The scheduler runs inside the same process as the sync service (wired in
DatabaseSynchronizer.start_sync).
"""
import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)

BATCH_SYNC_JOB_ID = "batch_sync"


def build_scheduler(synchronizer) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        synchronizer: DatabaseSynchronizer whose config.batch_interval sets
            the job interval.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _batch_sync,
        trigger="interval",
        minutes=synchronizer.config.batch_interval,
        id=BATCH_SYNC_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={"synchronizer": synchronizer},
    )

    return scheduler


async def _batch_sync(synchronizer) -> None:
    """
    Scheduled job: full sync of all allowlisted tables.

    Skips the run if the service was stopped. Never raises, so the scheduler
    stays alive.
    """
    if not synchronizer.is_running:
        return

    logger.info("Running scheduled batch synchronization at %s", datetime.now(timezone.utc).isoformat())
    try:
        result = await synchronizer.sync_all_tables()
        if not result.success:
            logger.warning(
                "Batch synchronization finished with %d failed tables",
                result.summary.failed,
            )
    except Exception as exc:
        logger.error("Batch synchronization failed: %s", exc)
