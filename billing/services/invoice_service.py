import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from django.conf import settings
from django.db import transaction
from django.db.models import Count, Q, Sum
from django.db.models.functions import TruncDate
from django.utils import timezone

from ..calculators import ZERO, build_tax_details, money, recompute_invoice
from ..exceptions import InvalidState, NotFound, ValidationFailure
from ..models import BillingActivity, Invoice, InvoiceLineItem, ReminderLog
from ..numbering import DocumentNumberAllocator
from ..repositories import ModelRepository
from ..types import CreateInvoiceRequest, DateRange, InvoiceFilters, LineItemInput, Page
from .common import (
    append_note,
    build_line_items,
    clone_line_items,
    log_activity,
    resolve_actor,
    save_line_items,
    validate_line_items,
)
from .tax_service import resolve_tax_details

logger = logging.getLogger(__name__)


class InvoiceService:
    UPDATABLE_FIELDS = (
        "customer_id", "company_id", "customer_name", "customer_email", "issue_date", "due_date",
        "currency", "discount_amount", "payment_terms", "notes", "terms", "private_notes", "metadata",
    )
    LOCKED_STATUSES = (Invoice.Status.PAID, Invoice.Status.CANCELLED, Invoice.Status.REFUNDED)
    # Statuses that still expect money from the customer.
    OPEN_STATUSES = (
        Invoice.Status.SENT, Invoice.Status.VIEWED, Invoice.Status.PARTIALLY_PAID, Invoice.Status.OVERDUE,
    )

    def __init__(self, repository: Optional[ModelRepository] = None,
                 numbering: Optional[DocumentNumberAllocator] = None,
                 pdf_renderer=None, mailer=None, default_due_days: Optional[int] = None, tax_rates=None):
        self.invoices = repository or ModelRepository(Invoice, lookup_field="invoice_number")
        self.tax_rates = tax_rates
        self.numbering = numbering or DocumentNumberAllocator()
        self.pdf_renderer = pdf_renderer
        self.mailer = mailer
        self.default_due_days = default_due_days or getattr(settings, "INVOICE_DEFAULT_DUE_DAYS", 30)

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _items(invoice: Invoice) -> List[InvoiceLineItem]:
        return list(invoice.line_items.all()) if invoice.pk else []

    def _persist(self, invoice: Invoice, items: Optional[Sequence[InvoiceLineItem]] = None,
                 actor=None, as_of: Optional[date] = None) -> Invoice:
        items = self._items(invoice) if items is None else list(items)
        recompute_invoice(invoice, items, as_of or timezone.localdate())
        if invoice.total_amount < 0:
            raise ValidationFailure({"discount_amount": ["Discount cannot exceed the invoice subtotal"]})
        actor = resolve_actor(actor)
        if actor:
            invoice.updated_by = actor
        self.invoices.save(invoice)
        save_line_items(items, "invoice", invoice)
        return invoice

    def _log(self, invoice: Invoice, actor, action: str, description: str = "", **metadata):
        log_activity(BillingActivity.DocumentType.INVOICE, invoice, actor, action, description, metadata)

    # ------------------------------------------------------------------
    # Creation and queries
    # ------------------------------------------------------------------

    def validate_request(self, request: CreateInvoiceRequest) -> Dict[str, List[str]]:
        errors = validate_line_items(request.line_items)
        if not (request.customer_id or "").strip():
            errors["customer_id"] = ["Customer is required"]
        if request.issue_date and request.due_date and request.due_date < request.issue_date:
            errors["due_date"] = ["Due date cannot be before issue date"]
        if request.discount_amount < 0:
            errors["discount_amount"] = ["Discount cannot be negative"]
        if not Decimal("0") <= request.tax_rate <= Decimal("100"):
            errors["tax_rate"] = ["Tax rate must be between 0 and 100"]
        return errors

    @transaction.atomic
    def create_invoice(self, request: CreateInvoiceRequest, actor=None) -> Invoice:
        errors = self.validate_request(request)
        if errors:
            raise ValidationFailure(errors)

        actor = resolve_actor(actor)
        issue_date = request.issue_date or timezone.localdate()
        invoice = Invoice(
            invoice_number=self.numbering.invoice_number(),
            customer_id=request.customer_id,
            company_id=request.company_id,
            customer_name=request.customer_name,
            customer_email=request.customer_email,
            status=Invoice.Status.DRAFT,
            issue_date=issue_date,
            due_date=request.due_date or issue_date + timedelta(days=self.default_due_days),
            currency=(request.currency or settings.DEFAULT_CURRENCY).upper(),
            tax_details=resolve_tax_details(self.tax_rates, request.tax_rate, request.tax_region),
            discount_amount=money(request.discount_amount),
            payment_terms=request.payment_terms,
            notes=request.notes,
            terms=request.terms,
            metadata=dict(request.metadata),
            created_by=actor,
            owner=actor,
            updated_by=actor,
        )
        self._persist(invoice, build_line_items(InvoiceLineItem, request.line_items), actor)
        self._log(invoice, actor, "created", f"Invoice {invoice.invoice_number} created")
        logger.info(f"Invoice {invoice.invoice_number} created for customer {invoice.customer_id} ({invoice.total_amount} {invoice.currency})")
        return invoice

    @transaction.atomic
    def create_from_lines(self, invoice: Invoice, line_items: Sequence[InvoiceLineItem], actor=None,
                          description: str = "") -> Invoice:
        """Save an unsaved draft with prepared line items, e.g. one built from an accepted quote."""
        if invoice.pk:
            raise InvalidState(f"Invoice {invoice.invoice_number} already exists")
        if not invoice.invoice_number:
            invoice.invoice_number = self.numbering.invoice_number()
        invoice.status = Invoice.Status.DRAFT
        self._persist(invoice, line_items, actor)
        self._log(invoice, actor, "created", description or f"Invoice {invoice.invoice_number} created")
        logger.info(f"Invoice {invoice.invoice_number} created for customer {invoice.customer_id} ({invoice.total_amount} {invoice.currency})")
        return invoice

    def get_invoice(self, identifier) -> Invoice:
        return self.invoices.get(identifier)

    def get_invoice_by_number(self, invoice_number: str) -> Invoice:
        invoice = self.invoices.find_one({"invoice_number": invoice_number})
        if invoice is None:
            raise NotFound.for_resource("Invoice", invoice_number)
        return invoice

    def list_invoices(self, filters: Optional[InvoiceFilters] = None) -> Page[Invoice]:
        filters = filters or InvoiceFilters()
        lookups = filters.to_lookups()
        items = self.invoices.find(lookups, ordering=[filters.ordering], offset=filters.offset, limit=filters.page_size)
        return Page(items=items, total=self.invoices.count(lookups), page=filters.page, page_size=filters.page_size)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @transaction.atomic
    def update_invoice(self, identifier, changes: Dict[str, Any], actor=None) -> Invoice:
        invoice = self.get_invoice(identifier)
        if invoice.status in self.LOCKED_STATUSES:
            raise InvalidState(f"Cannot update invoice in status '{invoice.status}'")

        unknown = set(changes) - set(self.UPDATABLE_FIELDS) - {"line_items", "tax_rate"}
        if unknown:
            raise ValidationFailure({name: ["This field cannot be updated"] for name in sorted(unknown)})

        for name in self.UPDATABLE_FIELDS:
            if name in changes:
                setattr(invoice, name, changes[name])
        if invoice.due_date < invoice.issue_date:
            raise ValidationFailure({"due_date": ["Due date cannot be before issue date"]})
        if money(invoice.discount_amount) < 0:
            raise ValidationFailure({"discount_amount": ["Discount cannot be negative"]})
        if "tax_rate" in changes:
            invoice.tax_details = build_tax_details(changes["tax_rate"])

        items = None
        if "line_items" in changes:
            inputs = [i if isinstance(i, LineItemInput) else LineItemInput.from_dict(i) for i in changes["line_items"]]
            errors = validate_line_items(inputs)
            if errors:
                raise ValidationFailure(errors)
            invoice.line_items.all().delete()
            items = build_line_items(InvoiceLineItem, inputs)

        self._persist(invoice, items, actor)
        self._log(invoice, actor, "updated", "Invoice updated", fields=sorted(changes))
        return invoice

    @transaction.atomic
    def send_invoice(self, identifier, recipient_email: Optional[str] = None, actor=None) -> Invoice:
        invoice = self.get_invoice(identifier)
        if invoice.status in (Invoice.Status.CANCELLED, Invoice.Status.REFUNDED):
            raise InvalidState(f"Cannot send invoice in status '{invoice.status}'")

        recipient = recipient_email or invoice.customer_email
        if not recipient:
            raise ValidationFailure({"recipient_email": ["A recipient email address is required"]})

        if not invoice.pdf_path:
            invoice.pdf_path = self.pdf_renderer.render_invoice(invoice)
        self.mailer.send_invoice(invoice, recipient)

        if invoice.status == Invoice.Status.DRAFT:
            invoice.status = Invoice.Status.SENT
        invoice.last_sent_date = timezone.now()
        self._persist(invoice, actor=actor)
        self._log(invoice, actor, "sent", f"Invoice sent to {recipient}", recipient=recipient)
        logger.info(f"Invoice {invoice.invoice_number} sent to {recipient}")
        return invoice

    @transaction.atomic
    def mark_as_viewed(self, identifier) -> Invoice:
        invoice = self.get_invoice(identifier)
        if invoice.status != Invoice.Status.SENT or invoice.viewed_date:
            return invoice
        invoice.status = Invoice.Status.VIEWED
        invoice.viewed_date = timezone.now()
        self._persist(invoice)
        self._log(invoice, None, "viewed", "Invoice viewed by customer")
        return invoice

    @transaction.atomic
    def mark_as_paid(self, identifier, amount, paid_date: Optional[datetime] = None, actor=None) -> Invoice:
        amount = money(amount)
        if amount <= 0:
            raise ValidationFailure({"amount": ["Payment amount must be greater than 0"]})

        invoice = self.get_invoice(identifier)
        if invoice.status in (Invoice.Status.CANCELLED, Invoice.Status.REFUNDED):
            raise InvalidState(f"Cannot record payment for invoice in status '{invoice.status}'")

        invoice.amount_paid = amount
        invoice.paid_date = paid_date or timezone.now()
        invoice.status = Invoice.Status.PAID if amount >= invoice.total_amount else Invoice.Status.PARTIALLY_PAID
        self._persist(invoice, actor=actor)
        self._log(invoice, actor, "payment_recorded", f"Amount paid set to {amount}", amount=str(amount))
        logger.info(f"Invoice {invoice.invoice_number} marked {invoice.status} ({amount} of {invoice.total_amount})")
        return invoice

    @transaction.atomic
    def record_refund(self, identifier, amount, actor=None) -> Invoice:
        """Reduce the paid amount after a refund; a fully refunded invoice becomes ``refunded``."""
        invoice = self.get_invoice(identifier)
        invoice.amount_paid = max(invoice.amount_paid - money(amount), ZERO)
        if invoice.amount_paid == 0 and invoice.status != Invoice.Status.CANCELLED:
            invoice.status = Invoice.Status.REFUNDED
        self._persist(invoice, actor=actor)
        self._log(invoice, actor, "refunded", f"Refund of {money(amount)} recorded", amount=str(money(amount)))
        return invoice

    @transaction.atomic
    def cancel_invoice(self, identifier, reason: Optional[str] = None, actor=None) -> Invoice:
        invoice = self.get_invoice(identifier)
        if invoice.status == Invoice.Status.PAID:
            raise InvalidState("Cannot cancel a paid invoice")
        if invoice.status == Invoice.Status.CANCELLED:
            raise InvalidState("Invoice is already cancelled")

        invoice.status = Invoice.Status.CANCELLED
        if reason:
            invoice.private_notes = append_note(invoice.private_notes, f"Cancelled: {reason}")
        self._persist(invoice, actor=actor)
        self._log(invoice, actor, "cancelled", reason or "Invoice cancelled")
        logger.info(f"Invoice {invoice.invoice_number} cancelled")
        return invoice

    @transaction.atomic
    def send_reminder(self, identifier, reminder_type: str, custom_email: Optional[str] = None,
                      now: Optional[datetime] = None, actor=None) -> Invoice:
        if reminder_type not in ReminderLog.ReminderType.values:
            raise ValidationFailure({"reminder_type": [f"Unknown reminder type '{reminder_type}'"]})

        invoice = self.get_invoice(identifier)
        if invoice.status in (Invoice.Status.PAID, Invoice.Status.CANCELLED):
            raise InvalidState(f"Cannot send reminder for {invoice.status} invoice")

        recipient = custom_email or invoice.customer_email
        if not recipient:
            raise ValidationFailure({"recipient_email": ["A recipient email address is required"]})

        now = now or timezone.now()
        today = timezone.localdate(now)
        days_past_due = max((today - invoice.due_date).days, 0)
        self.mailer.send_reminder(invoice, recipient, reminder_type, days_past_due)

        invoice.reminder_logs.create(
            reminder_type=reminder_type,
            sent_date=now,
            recipient_email=recipient,
            status="sent",
        )
        if invoice.due_date < today and invoice.status != Invoice.Status.OVERDUE:
            invoice.status = Invoice.Status.OVERDUE
        self._persist(invoice, actor=actor, as_of=today)
        self._log(invoice, actor, "reminder_sent", f"{reminder_type} sent to {recipient}",
                  reminder_type=reminder_type, days_past_due=days_past_due)
        logger.info(f"Reminder {reminder_type} sent for invoice {invoice.invoice_number} ({days_past_due} days past due)")
        return invoice

    def generate_pdf(self, identifier) -> Invoice:
        invoice = self.get_invoice(identifier)
        invoice.pdf_path = self.pdf_renderer.render_invoice(invoice)
        self.invoices.save(invoice, update_fields=["pdf_path"])
        return invoice

    @transaction.atomic
    def duplicate_invoice(self, identifier, customizations: Optional[Dict[str, Any]] = None, actor=None) -> Invoice:
        source = self.get_invoice(identifier)
        customizations = customizations or {}
        actor = resolve_actor(actor)
        issue_date = timezone.localdate()

        invoice = Invoice(
            invoice_number=self.numbering.invoice_number(),
            customer_id=customizations.get("customer_id") or source.customer_id,
            company_id=source.company_id,
            customer_name=source.customer_name,
            customer_email=customizations.get("customer_email") or source.customer_email,
            status=Invoice.Status.DRAFT,
            issue_date=issue_date,
            due_date=customizations.get("due_date") or issue_date + timedelta(days=self.default_due_days),
            currency=source.currency,
            tax_details=[dict(detail) for detail in source.tax_details],
            discount_amount=source.discount_amount,
            payment_terms=source.payment_terms,
            notes=customizations.get("notes", source.notes),
            terms=source.terms,
            metadata={"duplicated_from": source.invoice_number},
            created_by=actor,
            owner=actor,
            updated_by=actor,
        )
        self._persist(invoice, clone_line_items(InvoiceLineItem, self._items(source)), actor)
        self._log(invoice, actor, "duplicated", f"Duplicated from {source.invoice_number}", source=source.invoice_number)
        return invoice

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_overdue_invoices(self, customer_id: Optional[str] = None, as_of: Optional[date] = None) -> List[Invoice]:
        query = Q(due_date__lt=as_of or timezone.localdate())
        query &= ~Q(status__in=[Invoice.Status.PAID, Invoice.Status.CANCELLED])
        if customer_id:
            query &= Q(customer_id=customer_id)
        return self.invoices.find(query, ordering=["due_date"])

    def get_financial_summary(self, date_range: Optional[DateRange] = None) -> Dict[str, Any]:
        date_range = date_range or DateRange()
        query = Q(**date_range.lookups("issue_date")) & ~Q(status=Invoice.Status.CANCELLED)
        rows = self.invoices.aggregate(
            query,
            group_by=["status"],
            count=Count("id"),
            paid=Sum("amount_paid"),
            remaining=Sum("remaining_balance"),
        )
        by_status = {row["status"]: row for row in rows}

        def total(statuses, key):
            return sum((by_status[s][key] or ZERO for s in statuses if s in by_status), ZERO)

        def count(statuses):
            return sum(by_status[s]["count"] for s in statuses if s in by_status)

        return {
            "total_revenue": total(by_status.keys(), "paid"),
            "total_outstanding": total(self.OPEN_STATUSES, "remaining"),
            "total_overdue": total([Invoice.Status.OVERDUE], "remaining"),
            "paid_count": count([Invoice.Status.PAID]),
            "unpaid_count": count(self.OPEN_STATUSES),
            "overdue_count": count([Invoice.Status.OVERDUE]),
            "draft_count": count([Invoice.Status.DRAFT]),
            "invoice_count": sum(row["count"] for row in rows),
        }

    def get_revenue_report(self, date_range: Optional[DateRange] = None) -> List[Dict[str, Any]]:
        date_range = date_range or DateRange()
        query = Q(amount_paid__gt=0, paid_date__isnull=False) & ~Q(status__in=[Invoice.Status.CANCELLED, Invoice.Status.REFUNDED])
        query &= Q(**date_range.lookups("paid_date"))
        rows = self.invoices.aggregate(
            query,
            group_by={"day": TruncDate("paid_date")},
            revenue=Sum("amount_paid"),
            invoice_count=Count("id"),
        )
        return [
            {"date": row["day"].isoformat(), "revenue": row["revenue"] or ZERO, "invoice_count": row["invoice_count"]}
            for row in rows
        ]
