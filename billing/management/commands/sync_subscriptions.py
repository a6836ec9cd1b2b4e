"""
Refresh local subscriptions from the payment gateway.

Usage:
    python manage.py sync_subscriptions                 # Sync every subscription that is not cancelled
    python manage.py sync_subscriptions --id SUB-2026-0001
"""

import logging

from django.apps import apps
from django.core.management.base import BaseCommand, CommandError

from billing.exceptions import BillingError

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = 'Pull subscription state from the payment gateway'

    def add_arguments(self, parser):
        parser.add_argument(
            '--id',
            dest='subscription_id',
            help='Sync a single subscription by id',
        )

    def handle(self, *args, **options):
        subscriptions = apps.get_app_config('billing').services.subscriptions

        if options['subscription_id']:
            try:
                subscription = subscriptions.sync_with_gateway(options['subscription_id'])
            except BillingError as e:
                raise CommandError(str(e))
            self.stdout.write(self.style.SUCCESS(
                f'{subscription.subscription_id} synced: {subscription.status}'
            ))
            return

        results = subscriptions.sync_all()
        self.stdout.write(self.style.SUCCESS(f"Synced {results['synced']} subscription(s)"))
        if results['failed']:
            self.stdout.write(self.style.WARNING(f"{results['failed']} subscription(s) failed to sync"))
