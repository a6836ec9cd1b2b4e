"""
Run the reminder scheduler in the foreground.

Usage:
    python manage.py run_reminder_scheduler
"""

import logging

from django.apps import apps
from django.core.management.base import BaseCommand

from billing.scheduler import ReminderScheduler, build_scheduler

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = 'Run the daily invoice reminder sweep on a blocking scheduler'

    def handle(self, *args, **options):
        services = apps.get_app_config('billing').services
        scheduler = ReminderScheduler(services.reminders, scheduler=build_scheduler(blocking=True))

        self.stdout.write(self.style.SUCCESS('Reminder scheduler running. Press Ctrl+C to stop.'))
        try:
            scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            scheduler.shutdown(wait=False)
            self.stdout.write('Reminder scheduler stopped')
