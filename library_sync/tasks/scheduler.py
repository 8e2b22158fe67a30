"""Background task scheduler for library syncs and playback polling."""

import logging
from datetime import UTC, datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from library_sync.config import get_settings
from library_sync.errors import SyncAlreadyRunningError
from library_sync.services.sync_control import SyncController, get_controller

logger = logging.getLogger(__name__)
settings = get_settings()

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def initial_full_sync_job(controller: SyncController | None = None) -> None:
    """Start a full sync if none has completed yet (first boot or interrupted)."""
    controller = controller or get_controller()
    try:
        if not await controller.needs_full_sync():
            logger.info("Full sync already completed, skipping initial sync")
            return
        run = await controller.start_full_sync()
        logger.info(f"Initial full sync started as run {run.id}")
    except SyncAlreadyRunningError as e:
        logger.info(f"Initial full sync skipped: {e}")
    except Exception as e:
        logger.error(f"Initial full sync failed to start: {e}", exc_info=True)


async def incremental_sync_job(controller: SyncController | None = None) -> None:
    """Background job running one incremental sync cycle."""
    controller = controller or get_controller()
    logger.info("Starting scheduled incremental sync")
    try:
        run = await controller.run_scheduled_sync()
        if run is not None:
            logger.info(f"Scheduled sync {run.id} ended: {run.status}")
    except Exception as e:
        logger.error(f"Scheduled sync failed: {e}", exc_info=True)


async def playback_poll_job(controller: SyncController | None = None) -> None:
    """Background job recording recently played tracks."""
    controller = controller or get_controller()
    try:
        count = await controller.poll_playback()
        if count:
            logger.info(f"Playback poll complete: {count} new plays")
    except Exception as e:
        logger.error(f"Playback poll failed: {e}", exc_info=True)


def setup_scheduler() -> AsyncIOScheduler:
    """Set up and start the background task scheduler."""
    global scheduler

    scheduler = AsyncIOScheduler()
    now = datetime.now(UTC)

    if settings.enable_initial_full_sync:
        scheduler.add_job(
            initial_full_sync_job,
            next_run_time=now + timedelta(seconds=5),
            id="initial_full_sync",
            name="Initial full library sync",
            replace_existing=True,
        )

    if settings.enable_incremental_sync:
        scheduler.add_job(
            incremental_sync_job,
            trigger=IntervalTrigger(minutes=settings.incremental_sync_interval_minutes),
            id="incremental_sync",
            name="Incremental library sync",
            replace_existing=True,
        )

    if settings.enable_playback_polling:
        scheduler.add_job(
            playback_poll_job,
            trigger=IntervalTrigger(minutes=settings.playback_poll_interval_minutes),
            next_run_time=now + timedelta(seconds=10),
            id="playback_poll",
            name="Record recently played tracks",
            replace_existing=True,
        )

    scheduler.start()
    logger.info("Scheduler started")

    return scheduler


def shutdown_scheduler() -> None:
    """Shut down the scheduler gracefully."""
    global scheduler

    if scheduler:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler shut down")
        scheduler = None
