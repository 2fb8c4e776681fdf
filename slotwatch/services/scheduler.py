from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .pipeline import Pipeline, get_pipeline

log = logging.getLogger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


def init_scheduler(pipeline: Pipeline | None = None) -> AsyncIOScheduler:
    """Initialize and configure the scheduler."""
    global scheduler

    if scheduler is not None:
        return scheduler

    pipeline = pipeline or get_pipeline()
    tz = pipeline.settings.TIMEZONE
    scheduler = AsyncIOScheduler(timezone=tz)

    # Scan, match, drain the queue, hot alerts and opportunity discovery
    scheduler.add_job(
        pipeline.run_auto_check,
        IntervalTrigger(minutes=pipeline.settings.AUTO_CHECK_INTERVAL_MINUTES),
        id="auto_check",
        name="Scan availability and deliver notifications",
        replace_existing=True,
        max_instances=1,
    )

    scheduler.add_job(
        pipeline.run_expiry_reminders,
        CronTrigger(hour=9, minute=0, timezone=tz),
        id="expiry_reminders",
        name="Remind users about subscriptions ending soon",
        replace_existing=True,
        max_instances=1,
    )

    scheduler.add_job(
        pipeline.run_inactivity,
        CronTrigger(hour=10, minute=0, timezone=tz),
        id="inactivity",
        name="Nudge inactive users",
        replace_existing=True,
        max_instances=1,
    )

    scheduler.add_job(
        pipeline.run_weekly_digest,
        CronTrigger(day_of_week="sun", hour=9, minute=0, timezone=tz),
        id="weekly_digest",
        name="Send the weekly availability digest",
        replace_existing=True,
        max_instances=1,
    )

    scheduler.add_job(
        pipeline.run_queue_cleanup,
        CronTrigger(hour=3, minute=0, timezone=tz),
        id="queue_cleanup",
        name="Delete old finished queue items",
        replace_existing=True,
        max_instances=1,
    )

    return scheduler


def start_scheduler(pipeline: Pipeline | None = None):
    """Start the scheduler."""
    global scheduler
    if scheduler is None:
        scheduler = init_scheduler(pipeline)

    if not scheduler.running:
        scheduler.start()
        log.info("[Scheduler] Started")


def stop_scheduler():
    """Stop the scheduler."""
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown()
        log.info("[Scheduler] Stopped")
    scheduler = None
