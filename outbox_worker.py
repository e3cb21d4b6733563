"""Background worker: reminder sweep plus outbox delivery.

    python outbox_worker.py          # poll forever
    python outbox_worker.py --once   # one sweep and one drain, then exit
"""
import argparse
import logging
import time

from app.config import get_settings
from app.core.logging import setup_logging
from app.database import SessionLocal
from app.services.outbox_service import NotificationDispatcher, drain_outbox
from app.services.reminder_service import run_reminder_sweep

logger = logging.getLogger("outbox_worker")


def run_cycle(dispatcher: NotificationDispatcher) -> dict:
    db = SessionLocal()
    try:
        reminders = run_reminder_sweep(db)
        delivered = drain_outbox(db, dispatcher)
        return {"reminders": reminders, "outbox": delivered}
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description="Deliver queued notifications and appointment reminders")
    parser.add_argument("--once", action="store_true", help="run a single cycle and exit")
    parser.add_argument("--interval", type=int, default=None, help="seconds between cycles")
    args = parser.parse_args()

    setup_logging()
    settings = get_settings()
    interval = args.interval or settings.outbox_poll_seconds
    dispatcher = NotificationDispatcher()

    logger.info(f"Outbox worker started (interval={interval}s, once={args.once})")
    while True:
        try:
            stats = run_cycle(dispatcher)
            logger.info(f"Worker cycle complete: {stats}")
        except Exception as e:
            # keep polling after a failed cycle
            logger.error(f"Worker cycle failed: {e}", exc_info=True)
            if args.once:
                raise
        if args.once:
            break
        time.sleep(interval)


if __name__ == "__main__":
    main()
