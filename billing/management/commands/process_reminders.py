"""
Management command to run one overdue-invoice reminder sweep.

Usage:
    python manage.py process_reminders           # Send every reminder that is due
    python manage.py process_reminders --dry-run # Show what would be sent
    python manage.py process_reminders --verbose # Show detailed output
"""

import logging

from django.apps import apps
from django.core.management.base import BaseCommand
from django.utils import timezone

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = 'Send escalating payment reminders for overdue invoices'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show which reminders would be sent without sending them',
        )
        parser.add_argument(
            '--verbose',
            action='store_true',
            help='Show detailed output',
        )
        parser.add_argument(
            '--limit',
            type=int,
            default=None,
            help='Maximum number of overdue invoices to examine',
        )

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        verbose = options['verbose']
        limit = options['limit']

        reminders = apps.get_app_config('billing').services.reminders
        now = timezone.now()

        if dry_run:
            self.stdout.write(self.style.WARNING('DRY RUN - No reminders will be sent'))
            due = 0
            for invoice, days_past_due, reminder_type in reminders.pending_reminders(now, limit):
                if reminder_type is None:
                    if verbose:
                        self.stdout.write(f'  - {invoice.invoice_number}: {days_past_due} days past due, nothing to send')
                    continue
                due += 1
                self.stdout.write(
                    f'  - {invoice.invoice_number} to {invoice.customer_email or "(no email)"}: '
                    f'{reminder_type} ({days_past_due} days past due)'
                )
            self.stdout.write(self.style.SUCCESS(f'{due} reminder(s) would be sent'))
            return

        if verbose:
            self.stdout.write('Processing reminders...')

        try:
            results = reminders.process_daily_reminders(now=now, limit=limit)
        except Exception as e:
            self.stdout.write(self.style.ERROR(f'Error processing reminders: {str(e)}'))
            logger.exception('Error in process_reminders command')
            raise

        if results['processed'] == 0:
            self.stdout.write(self.style.SUCCESS('No overdue invoices to process'))
            return

        self.stdout.write(self.style.SUCCESS(
            f"Processed {results['processed']} invoice(s): {results['sent']} sent, {results['skipped']} skipped"
        ))
        if results['failed'] > 0:
            self.stdout.write(self.style.WARNING(f"{results['failed']} reminder(s) failed"))
