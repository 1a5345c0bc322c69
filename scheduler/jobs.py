"""
Scheduled jobs using APScheduler.

- Reaper: deletes stale unbooked and suspended slots of every active
  practitioner on a fixed interval.
- Reminders: every hour, sends a reminder for confirmed slots starting
  within ``settings.reminder_hours_before`` hours.
"""

from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import settings
from db import get_db_client
from notifications import NotificationKind, get_dispatcher
from scheduling.engine import SlotEngine, get_engine
from utils.exceptions import DatabaseError
from utils.logging_config import setup_logging

logger = setup_logging(name=__name__, log_file="scheduler.log")

scheduler = AsyncIOScheduler(timezone=settings.timezone)


async def run_reaper(engine: Optional[SlotEngine] = None) -> int:
    """
    Reap every active practitioner.

    Returns:
        Total number of deleted slots
    """
    engine = engine or get_engine()
    try:
        outcomes = await engine.reap_all()
    except Exception as e:
        logger.error(f"Unexpected error in reaper job: {e}", exc_info=True)
        return 0

    return sum(o.deleted_count for o in outcomes if o.success)


async def check_and_send_reminders() -> int:
    """
    Send reminders for upcoming confirmed slots.

    A slot is marked ``reminder_sent_at`` only after the message was
    delivered, so failed sends are retried on the next run.

    Returns:
        Number of reminders sent
    """
    db = get_db_client()
    dispatcher = get_dispatcher()

    try:
        slots = await db.get_slots_for_reminder(settings.reminder_hours_before)
    except DatabaseError as e:
        logger.error(f"Database error checking reminders: {e}", exc_info=True)
        return 0

    if not slots:
        logger.debug("No slots require reminders at this time")
        return 0

    logger.info(f"Processing {len(slots)} slot(s) for reminders")

    sent_count = 0
    failed_count = 0

    for slot in slots:
        if not await dispatcher.notify_client(slot, NotificationKind.REMINDER):
            failed_count += 1
            continue

        try:
            marked = await db.mark_reminder_sent(slot.id)
        except DatabaseError as e:
            logger.warning(f"Reminder sent but not recorded for slot {slot.id}: {e}")
            failed_count += 1
            continue

        if not marked:
            logger.warning(f"Failed to mark reminder as sent for slot {slot.id}")
        sent_count += 1

    logger.info(f"Reminder processing complete: {sent_count} sent, {failed_count} failed")
    return sent_count


def setup_scheduler(start: bool = True) -> AsyncIOScheduler:
    """
    Register the jobs and start the scheduler.

    Args:
        start: Start the scheduler right away (tests pass False)
    """
    scheduler.add_job(
        run_reaper,
        trigger=IntervalTrigger(minutes=settings.reaper_interval_minutes),
        id="reap_stale_slots",
        name="Delete stale unbooked and suspended slots",
        replace_existing=True,
    )

    scheduler.add_job(
        check_and_send_reminders,
        trigger=CronTrigger(minute=0),  # Every hour at minute 0
        id="check_reminders",
        name="Check and send appointment reminders",
        replace_existing=True,
    )

    if start:
        scheduler.start()
        logger.info("Scheduler started")
    return scheduler


def shutdown_scheduler() -> None:
    """Shutdown the scheduler."""
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler stopped")
