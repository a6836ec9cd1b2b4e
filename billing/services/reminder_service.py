"""
Reminder Service - daily overdue sweep with escalating reminder tiers.

Tiers escalate first_reminder -> second_reminder -> final_notice as an
invoice ages past its due date. Each tier goes out at most once per invoice,
never after a more severe one, and no reminder of any type follows another
within 24 hours.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

from django.db.models import Count, Q
from django.utils import timezone

from ..exceptions import BillingError
from ..models import Invoice, ReminderLog
from ..repositories import ModelRepository
from ..types import DateRange

logger = logging.getLogger(__name__)

# (minimum days past due, reminder type), least to most severe.
ESCALATION: Tuple[Tuple[int, str], ...] = (
    (1, ReminderLog.ReminderType.FIRST),
    (7, ReminderLog.ReminderType.SECOND),
    (30, ReminderLog.ReminderType.FINAL),
)
SEVERITY = {reminder_type: rank for rank, (_, reminder_type) in enumerate(ESCALATION)}
MIN_INTERVAL = timedelta(hours=24)


def select_reminder_type(days_past_due: int, sent_log: Iterable[Tuple[str, datetime]],
                         now: datetime) -> Optional[str]:
    """Pick the tier to send today, or None.

    ``sent_log`` holds ``(reminder_type, sent_date)`` pairs for reminders
    already sent on the invoice.
    """
    sent_log = list(sent_log)
    if any(now - sent_date < MIN_INTERVAL for _, sent_date in sent_log):
        return None

    sent_types = {reminder_type for reminder_type, _ in sent_log}
    highest_sent = max((SEVERITY[t] for t in sent_types if t in SEVERITY), default=-1)

    candidates = [
        reminder_type
        for threshold, reminder_type in ESCALATION
        if days_past_due >= threshold and reminder_type not in sent_types and SEVERITY[reminder_type] > highest_sent
    ]
    return candidates[-1] if candidates else None


class ReminderService:
    # Draft invoices were never sent and refunded ones owe nothing.
    SWEEP_STATUSES = (
        Invoice.Status.SENT, Invoice.Status.VIEWED, Invoice.Status.OVERDUE, Invoice.Status.PARTIALLY_PAID,
    )

    def __init__(self, invoice_service, logs: Optional[ModelRepository] = None):
        self.invoice_service = invoice_service
        self.logs = logs or ModelRepository(ReminderLog)

    def _due_invoices(self, today, customer_id: Optional[str] = None, limit: Optional[int] = None) -> Sequence[Invoice]:
        query = Q(status__in=self.SWEEP_STATUSES, due_date__lt=today)
        if customer_id:
            query &= Q(customer_id=customer_id)
        return self.invoice_service.invoices.find(query, ordering=["due_date", "pk"], limit=limit)

    def pending_reminders(self, now: Optional[datetime] = None, limit: Optional[int] = None):
        """Yield ``(invoice, days_past_due, reminder_type)`` for every invoice the sweep would remind."""
        now = now or timezone.now()
        today = timezone.localdate(now)
        for invoice in self._due_invoices(today, limit=limit):
            days_past_due = (today - invoice.due_date).days
            sent_log = invoice.reminder_logs.values_list("reminder_type", "sent_date")
            yield invoice, days_past_due, select_reminder_type(days_past_due, sent_log, now)

    def process_daily_reminders(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> Dict[str, int]:
        now = now or timezone.now()
        results = {"processed": 0, "sent": 0, "skipped": 0, "failed": 0}

        for invoice, days_past_due, reminder_type in self.pending_reminders(now, limit):
            results["processed"] += 1
            if reminder_type is None:
                results["skipped"] += 1
                continue
            try:
                self.invoice_service.send_reminder(invoice.pk, reminder_type, now=now)
                results["sent"] += 1
            except BillingError:
                logger.exception(f"Failed to send {reminder_type} for invoice {invoice.invoice_number}")
                results["failed"] += 1

        logger.info(
            f"Reminder sweep complete: {results['processed']} processed, {results['sent']} sent, "
            f"{results['skipped']} skipped, {results['failed']} failed"
        )
        return results

    def process_bulk_reminders(self, days_past_due: int, reminder_type: str,
                               customer_id: Optional[str] = None) -> Dict[str, int]:
        """Send ``reminder_type`` to every open invoice at least ``days_past_due`` days late."""
        now = timezone.now()
        cutoff = timezone.localdate(now) - timedelta(days=days_past_due)
        results = {"processed": 0, "failed": 0}

        for invoice in self._due_invoices(cutoff + timedelta(days=1), customer_id=customer_id):
            try:
                self.invoice_service.send_reminder(invoice.pk, reminder_type, now=now)
                results["processed"] += 1
            except BillingError:
                logger.exception(f"Bulk reminder failed for invoice {invoice.invoice_number}")
                results["failed"] += 1

        logger.info(f"Bulk {reminder_type}: {results['processed']} sent, {results['failed']} failed")
        return results

    def get_reminder_stats(self, date_range: Optional[DateRange] = None) -> Dict[str, Any]:
        date_range = date_range or DateRange()
        rows = self.logs.aggregate(date_range.lookups("sent_date"), group_by=["reminder_type"], count=Count("id"))
        by_type = {row["reminder_type"]: row["count"] for row in rows}
        return {
            "total_sent": sum(by_type.values()),
            "by_type": {reminder_type: by_type.get(reminder_type, 0) for reminder_type in ReminderLog.ReminderType.values},
        }
