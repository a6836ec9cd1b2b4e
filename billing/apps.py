import atexit
import logging
import os

from django.apps import AppConfig
from django.conf import settings

logger = logging.getLogger(__name__)


class BillingConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "billing"
    verbose_name = "Billing"

    services = None
    scheduler = None

    def ready(self):
        from .container import build_services

        self.services = build_services()

        # The dev server's autoreloader imports the project twice; only the child runs jobs.
        if getattr(settings, "BILLING_SCHEDULER_AUTOSTART", False) and os.environ.get("RUN_MAIN", "true") == "true":
            self.start_scheduler()

    def start_scheduler(self):
        from .scheduler import ReminderScheduler

        if self.scheduler is None:
            self.scheduler = ReminderScheduler(self.services.reminders)
        self.scheduler.start()
        atexit.register(self.scheduler.shutdown, wait=False)
        logger.info("Billing reminder scheduler started in-process")
