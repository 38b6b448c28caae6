from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
import logging

from labkeeper.config import settings


logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler()


def start_scheduler():
    """Register the daily reservation sweep and start the scheduler."""
    from labkeeper.jobs.auto_reject import run_daily_sweep

    if scheduler.running:
        return
    scheduler.add_job(
        run_daily_sweep,
        trigger=CronTrigger(hour=settings.SWEEPER_HOUR, minute=settings.SWEEPER_MINUTE),
        id="reservation_sweep",
        name="Reject expired requests and mark overdue borrows",
        replace_existing=True,
    )
    scheduler.start()
    logger.info(
        "Scheduler started, sweep runs daily at %02d:%02d",
        settings.SWEEPER_HOUR,
        settings.SWEEPER_MINUTE,
    )


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
