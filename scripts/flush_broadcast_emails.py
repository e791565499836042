"""Flush queued broadcast emails from the command line (cron friendly).

Usage:
  python -m scripts.flush_broadcast_emails                 # reconcile only, nothing is sent
  python -m scripts.flush_broadcast_emails --force         # actually send via the email provider
  python -m scripts.flush_broadcast_emails --force --ids 12 15
"""
import argparse
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.logging_config import setup_logging
from app.core.config import settings
from app.db.database import SessionLocal
from app.services.broadcast_flusher import flush_email_queue


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--limit", type=int, default=settings.broadcast_flush_batch_size)
    parser.add_argument("--force", action="store_true", help="send email instead of only reconciling")
    parser.add_argument("--ids", type=int, nargs="*", help="only these broadcast ids")
    args = parser.parse_args(argv)

    setup_logging(
        app_name="carbontrack_flush",
        log_level=settings.log_level,
        environment=settings.environment,
        enable_file=settings.log_to_file,
    )

    db = SessionLocal()
    try:
        report = flush_email_queue(db, limit=args.limit, force=args.force, broadcast_ids=args.ids or None)
    finally:
        db.close()

    print(json.dumps({
        "processed": [item.to_dict() for item in report.processed],
        "skipped": report.skipped,
        "count": report.count,
    }, indent=2))
    return 1 if any(item.status == "failed" for item in report.processed) else 0


if __name__ == "__main__":
    sys.exit(main())
