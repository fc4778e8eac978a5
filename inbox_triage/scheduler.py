from __future__ import annotations
import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from sqlmodel import Session

from .settings import settings
from .sync import sync_all_users

logger = logging.getLogger(__name__)

JOB_ID = "sync-all-users"

_scheduler: Optional[BackgroundScheduler] = None


def run_sync_job(db_engine=None) -> None:
    from .db import engine

    with Session(db_engine or engine) as session:
        try:
            results = sync_all_users(session, settings.SYNC_MAX_PER_INBOX)
        except Exception as e:
            logger.error(f"Sync tick failed: {e}", exc_info=True)
            return
    ok = sum(1 for r in results if "inboxes" in r)
    failed = sum(1 for r in results if "error" in r)
    logger.info(f"Sync tick finished: ok={ok} failed={failed}")


def start_scheduler() -> Optional[BackgroundScheduler]:
    """Start the periodic sync if enabled; calling it again is a no-op."""
    global _scheduler
    if not settings.INTERNAL_SYNC_CRON_ENABLED:
        return None
    if _scheduler is not None and _scheduler.running:
        return _scheduler

    scheduler = BackgroundScheduler()
    # max_instances=1: a tick still running makes the next one skip.
    scheduler.add_job(
        run_sync_job,
        "interval",
        seconds=settings.INTERNAL_SYNC_CRON_INTERVAL_SECONDS,
        id=JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
        next_run_time=datetime.now(),  # first tick right away
    )
    scheduler.start()
    _scheduler = scheduler
    logger.info(f"Sync scheduler started (every {settings.INTERNAL_SYNC_CRON_INTERVAL_SECONDS}s)")
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Sync scheduler stopped")
    _scheduler = None
