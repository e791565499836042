import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import settings

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


def register_jobs():
    """Register periodic jobs enabled in settings."""
    from app.jobs.broadcast_email_flush import flush_broadcast_emails

    if settings.broadcast_flush_interval_minutes > 0:
        scheduler.add_job(
            flush_broadcast_emails,
            IntervalTrigger(minutes=settings.broadcast_flush_interval_minutes),
            id="broadcast_email_flush",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(
            "Broadcast email flush scheduled every %d minute(s)",
            settings.broadcast_flush_interval_minutes,
        )


def start_scheduler():
    """Start the background job scheduler."""
    if not scheduler.running:
        scheduler.start()
        logger.info("Background scheduler started")


def stop_scheduler():
    """Stop the background job scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background scheduler stopped")
