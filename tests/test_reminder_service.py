from datetime import datetime, timedelta
from datetime import timezone as dt_timezone
from decimal import Decimal

import pytest
from django.utils import timezone

from billing.models import Invoice, ReminderLog
from billing.services.reminder_service import select_reminder_type
from tests.conftest import invoice_request
from tests.factories import InvoiceFactory

FIRST = ReminderLog.ReminderType.FIRST
SECOND = ReminderLog.ReminderType.SECOND
FINAL = ReminderLog.ReminderType.FINAL

NOW = datetime(2026, 10, 18, 9, 0, tzinfo=dt_timezone.utc)


class TestSelectReminderType:
    def test_not_yet_due(self):
        assert select_reminder_type(0, [], NOW) is None

    @pytest.mark.parametrize("days,expected", [(1, FIRST), (6, FIRST), (7, SECOND), (29, SECOND), (30, FINAL), (90, FINAL)])
    def test_tier_by_age_with_no_history(self, days, expected):
        assert select_reminder_type(days, [], NOW) == expected

    def test_each_tier_sent_once(self):
        log = [(FIRST, NOW - timedelta(days=2))]
        assert select_reminder_type(3, log, NOW) is None

    def test_escalates_after_first(self):
        log = [(FIRST, NOW - timedelta(days=8))]
        assert select_reminder_type(10, log, NOW) == SECOND

    def test_never_goes_back_down(self):
        log = [(FINAL, NOW - timedelta(days=5))]
        assert select_reminder_type(40, log, NOW) is None

    def test_twenty_four_hour_spacing(self):
        log = [(FIRST, NOW - timedelta(hours=23))]
        assert select_reminder_type(30, log, NOW) is None

        log = [(FIRST, NOW - timedelta(hours=24))]
        assert select_reminder_type(30, log, NOW) == FINAL

    def test_custom_reminders_count_for_spacing_only(self):
        log = [(ReminderLog.ReminderType.CUSTOM, NOW - timedelta(days=3))]
        assert select_reminder_type(2, log, NOW) == FIRST


@pytest.mark.django_db
class TestDailySweep:
    def test_escalation_over_time(self, services, transport):
        """Days 0, 2, 10 and 40 past due send first, second and final reminders exactly once."""
        start = timezone.now() - timedelta(days=40)
        due = timezone.localdate(start)
        invoice = services.invoices.create_invoice(invoice_request(issue_date=due - timedelta(days=30), due_date=due))
        services.invoices.send_invoice(invoice.pk)
        transport.sent.clear()

        sent_types = []
        for day in (0, 2, 10, 40):
            now = start + timedelta(days=day)
            services.reminders.process_daily_reminders(now=now)
            # a second run the same day sends nothing more
            repeat = services.reminders.process_daily_reminders(now=now + timedelta(hours=1))
            assert repeat["sent"] == 0
            sent_types.append([log.reminder_type for log in invoice.reminder_logs.order_by("sent_date")])

        assert sent_types == [[], [FIRST], [FIRST, SECOND], [FIRST, SECOND, FINAL]]
        assert len(transport.sent) == 3

    def test_sweep_results(self, services):
        today = timezone.localdate()
        InvoiceFactory(status=Invoice.Status.SENT, due_date=today - timedelta(days=3))
        InvoiceFactory(status=Invoice.Status.OVERDUE, due_date=today - timedelta(days=12))
        recent = InvoiceFactory(status=Invoice.Status.OVERDUE, due_date=today - timedelta(days=12))
        recent.reminder_logs.create(reminder_type=SECOND, recipient_email="ap@globex.test",
                                    sent_date=timezone.now() - timedelta(hours=2))
        InvoiceFactory(status=Invoice.Status.PAID, due_date=today - timedelta(days=3))
        InvoiceFactory(status=Invoice.Status.DRAFT, due_date=today - timedelta(days=3))

        results = services.reminders.process_daily_reminders()

        assert results == {"processed": 3, "sent": 2, "skipped": 1, "failed": 0}

    def test_delivery_failures_are_counted(self, services, transport):
        InvoiceFactory(status=Invoice.Status.SENT, due_date=timezone.localdate() - timedelta(days=3))
        transport.fail = True

        results = services.reminders.process_daily_reminders()

        assert results["failed"] == 1
        assert ReminderLog.objects.count() == 0

    def test_limit(self, services):
        for days in (3, 4, 5):
            InvoiceFactory(status=Invoice.Status.SENT, due_date=timezone.localdate() - timedelta(days=days))
        assert services.reminders.process_daily_reminders(limit=2)["processed"] == 2

    def test_pending_reminders_do_not_send(self, services, transport):
        InvoiceFactory(status=Invoice.Status.SENT, due_date=timezone.localdate() - timedelta(days=8))

        pending = list(services.reminders.pending_reminders())

        assert [(days, kind) for _, days, kind in pending] == [(8, SECOND)]
        assert transport.sent == []


@pytest.mark.django_db
class TestBulkReminders:
    def test_bulk_reminders_by_age_and_customer(self, services, transport):
        today = timezone.localdate()
        InvoiceFactory(status=Invoice.Status.OVERDUE, due_date=today - timedelta(days=20), customer_id="acme")
        InvoiceFactory(status=Invoice.Status.OVERDUE, due_date=today - timedelta(days=5), customer_id="acme")
        InvoiceFactory(status=Invoice.Status.OVERDUE, due_date=today - timedelta(days=20), customer_id="globex")

        results = services.reminders.process_bulk_reminders(14, ReminderLog.ReminderType.CUSTOM, customer_id="acme")

        assert results == {"processed": 1, "failed": 0}
        assert len(transport.sent) == 1

    def test_reminder_stats(self, services):
        invoice = InvoiceFactory(total_amount=Decimal("10"))
        invoice.reminder_logs.create(reminder_type=FIRST, recipient_email="a@b.test")
        invoice.reminder_logs.create(reminder_type=SECOND, recipient_email="a@b.test")

        stats = services.reminders.get_reminder_stats()

        assert stats["total_sent"] == 2
        assert stats["by_type"][FIRST] == 1
        assert stats["by_type"][FINAL] == 0
