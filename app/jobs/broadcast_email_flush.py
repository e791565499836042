import logging

from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.database import SessionLocal
from app.services.broadcast_flusher import flush_email_queue

logger = logging.getLogger(__name__)


async def flush_broadcast_emails():
    """Periodic trigger for the broadcast email queue.

    Only one instance of this job may run at a time (see scheduler
    registration); flushes are not safe to run concurrently on the same rows.
    """
    logger.info("Running broadcast email flush...")

    db: Session = SessionLocal()
    try:
        report = flush_email_queue(
            db,
            limit=settings.broadcast_flush_batch_size,
            force=settings.broadcast_flush_force,
        )
        if report.count or report.skipped:
            logger.info(
                "Broadcast email flush: processed=%d skipped=%d",
                report.count, len(report.skipped),
            )
    except Exception as e:
        db.rollback()
        logger.error(f"Broadcast email flush job failed: {e}", exc_info=True)
    finally:
        db.close()
