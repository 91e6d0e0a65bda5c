"""Periodic batch processing and abandoned-lock sweeps."""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from voicenotes.config import settings
from voicenotes.processing.coordinator import get_coordinator

logger = logging.getLogger(__name__)

scheduler: Optional[AsyncIOScheduler] = None


async def scheduled_batch() -> None:
    """Scheduled job wrapper for batch processing."""
    logger.debug("Checking for pending notes...")
    result = await get_coordinator().process_batch(settings.BATCH_SIZE)

    if result.processed > 0:
        logger.info(f"Processed {result.processed} notes")

    if result.errors:
        logger.warning(f"Note processing errors: {result.errors}")


async def scheduled_lock_sweep() -> None:
    """Scheduled job wrapper for reclaiming abandoned locks."""
    logger.debug("Sweeping abandoned processing locks...")
    reclaimed = await get_coordinator().locks.reclaim_abandoned()
    if reclaimed > 0:
        logger.info(f"Reclaimed {reclaimed} abandoned locks")


def register_processing_jobs(target: AsyncIOScheduler) -> None:
    """
    Register note processing jobs with a scheduler.

    - Process a batch of eligible notes every BATCH_INTERVAL_MINUTES
    - Reclaim expired locks every LOCK_SWEEP_INTERVAL_MINUTES
    """
    target.add_job(
        scheduled_batch,
        "interval",
        minutes=settings.BATCH_INTERVAL_MINUTES,
        id="note_batch_process",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    target.add_job(
        scheduled_lock_sweep,
        "interval",
        minutes=settings.LOCK_SWEEP_INTERVAL_MINUTES,
        id="note_lock_sweep",
        replace_existing=True,
    )

    logger.info(
        f"Processing scheduler registered "
        f"(batch: {settings.BATCH_INTERVAL_MINUTES}min, "
        f"lock sweep: {settings.LOCK_SWEEP_INTERVAL_MINUTES}min)"
    )


def start_scheduler() -> None:
    """Start the processing scheduler."""
    global scheduler

    if not settings.PROCESSING_ENABLED:
        logger.info("Processing scheduler disabled (PROCESSING_ENABLED=false)")
        return

    scheduler = AsyncIOScheduler()
    register_processing_jobs(scheduler)
    scheduler.start()
    logger.info("Processing scheduler started")


def stop_scheduler() -> None:
    """Stop the processing scheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Processing scheduler stopped")
    scheduler = None
