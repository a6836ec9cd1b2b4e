"""
APScheduler wrapper for the daily reminder sweep and one-off reminders.
"""

import logging
from datetime import datetime
from typing import Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from django.conf import settings
from django.db import close_old_connections

from .exceptions import BillingError

logger = logging.getLogger(__name__)

DAILY_JOB_ID = "billing_daily_reminders"

job_defaults = {
    'coalesce': True,  # Combine missed runs into one
    'max_instances': 1,
    'misfire_grace_time': 60,
}


def build_scheduler(blocking: bool = False):
    timezone = getattr(settings, "REMINDER_TIMEZONE", "UTC")
    if blocking:
        from apscheduler.schedulers.blocking import BlockingScheduler
        return BlockingScheduler(job_defaults=job_defaults, timezone=timezone)
    return BackgroundScheduler(job_defaults=job_defaults, timezone=timezone)


class ReminderScheduler:
    def __init__(self, reminder_service, scheduler=None):
        self.reminder_service = reminder_service
        self.scheduler = scheduler or build_scheduler()

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def run_daily_sweep(self):
        close_old_connections()
        try:
            self.reminder_service.process_daily_reminders()
        except Exception as e:
            logger.error(f"Daily reminder sweep failed: {e}")
        finally:
            close_old_connections()

    def run_custom_reminder(self, invoice_id, reminder_type: str):
        close_old_connections()
        try:
            self.reminder_service.invoice_service.send_reminder(invoice_id, reminder_type)
        except BillingError as e:
            logger.error(f"Scheduled {reminder_type} for invoice {invoice_id} failed: {e}")
        finally:
            close_old_connections()

    def register_daily_job(self):
        trigger = CronTrigger(
            hour=getattr(settings, "REMINDER_HOUR", 9),
            minute=getattr(settings, "REMINDER_MINUTE", 0),
            timezone=getattr(settings, "REMINDER_TIMEZONE", "UTC"),
        )
        return self.scheduler.add_job(
            self.run_daily_sweep,
            trigger,
            id=DAILY_JOB_ID,
            name="Daily invoice reminders",
            replace_existing=True,
        )

    def start(self):
        if self.scheduler.running:
            return
        self.register_daily_job()
        logger.info("Reminder scheduler starting")
        for job in self.scheduler.get_jobs():
            logger.info(f"Scheduled job: {job.name} - trigger: {job.trigger}")
        self.scheduler.start()

    def schedule_custom_reminder(self, invoice_id, run_at: datetime, reminder_type: str) -> str:
        job_id = f"billing_reminder_{invoice_id}_{int(run_at.timestamp())}"
        self.scheduler.add_job(
            self.run_custom_reminder,
            DateTrigger(run_date=run_at),
            args=[invoice_id, reminder_type],
            id=job_id,
            name=f"{reminder_type} for invoice {invoice_id}",
            replace_existing=True,
        )
        logger.info(f"Scheduled {reminder_type} for invoice {invoice_id} at {run_at.isoformat()}")
        return job_id

    def cancel_custom_reminder(self, job_id: str) -> bool:
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        logger.info(f"Cancelled scheduled reminder {job_id}")
        return True

    def get_job_status(self):
        # Jobs added before start() have no next_run_time yet.
        return [
            {
                'id': job.id,
                'name': job.name,
                'next_run_time': str(job.next_run_time) if getattr(job, "next_run_time", None) else None,
                'trigger': str(job.trigger),
            }
            for job in self.scheduler.get_jobs()
        ]

    def shutdown(self, wait: bool = True):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Reminder scheduler stopped")
