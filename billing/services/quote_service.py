import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from django.conf import settings
from django.db import transaction
from django.db.models import Count, Q, Sum
from django.utils import timezone

from ..calculators import ZERO, build_tax_details, money, recompute_quote
from ..exceptions import InvalidState, NotFound, ValidationFailure
from ..models import BillingActivity, Invoice, InvoiceLineItem, Quote, QuoteLineItem
from ..numbering import DocumentNumberAllocator
from ..repositories import ModelRepository
from ..types import CreateQuoteRequest, DateRange, LineItemInput, Page, QuoteFilters
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

DEFAULT_VALIDITY_DAYS = 30


class QuoteService:
    UPDATABLE_FIELDS = (
        "customer_id", "company_id", "customer_name", "customer_email", "issue_date", "expiration_date",
        "currency", "discount_amount", "notes", "terms", "private_notes", "metadata",
    )
    # Fields that change the quoted price and are frozen once the customer has decided.
    PRICING_FIELDS = ("line_items", "discount_amount", "tax_rate")

    def __init__(self, repository: Optional[ModelRepository] = None,
                 numbering: Optional[DocumentNumberAllocator] = None,
                 invoice_service=None, pdf_renderer=None, mailer=None, tax_rates=None):
        self.quotes = repository or ModelRepository(Quote, lookup_field="quote_number")
        self.tax_rates = tax_rates
        self.numbering = numbering or DocumentNumberAllocator()
        self.invoice_service = invoice_service
        self.pdf_renderer = pdf_renderer
        self.mailer = mailer

    @staticmethod
    def _items(quote: Quote) -> List[QuoteLineItem]:
        return list(quote.line_items.all()) if quote.pk else []

    def _persist(self, quote: Quote, items: Optional[Sequence[QuoteLineItem]] = None, actor=None) -> Quote:
        items = self._items(quote) if items is None else list(items)
        recompute_quote(quote, items, timezone.localdate())
        if quote.total_amount < 0:
            raise ValidationFailure({"discount_amount": ["Discount cannot exceed the quote subtotal"]})
        actor = resolve_actor(actor)
        if actor:
            quote.updated_by = actor
        self.quotes.save(quote)
        save_line_items(items, "quote", quote)
        return quote

    def _log(self, quote: Quote, actor, action: str, description: str = "", **metadata):
        log_activity(BillingActivity.DocumentType.QUOTE, quote, actor, action, description, metadata)

    @staticmethod
    def _ensure_editable(quote: Quote):
        if quote.is_locked:
            raise InvalidState(f"Cannot modify {quote.status} quote")

    # ------------------------------------------------------------------

    @transaction.atomic
    def create_quote(self, request: CreateQuoteRequest, actor=None) -> Quote:
        errors = validate_line_items(request.line_items)
        if not (request.customer_id or "").strip():
            errors["customer_id"] = ["Customer is required"]
        if request.discount_amount < 0:
            errors["discount_amount"] = ["Discount cannot be negative"]
        if not Decimal("0") <= request.tax_rate <= Decimal("100"):
            errors["tax_rate"] = ["Tax rate must be between 0 and 100"]
        issue_date = request.issue_date or timezone.localdate()
        expiration_date = request.expiration_date or issue_date + timedelta(days=DEFAULT_VALIDITY_DAYS)
        if expiration_date < issue_date:
            errors["expiration_date"] = ["Expiration date cannot be before issue date"]
        if errors:
            raise ValidationFailure(errors)

        actor = resolve_actor(actor)
        quote = Quote(
            quote_number=self.numbering.quote_number(),
            customer_id=request.customer_id,
            company_id=request.company_id,
            customer_name=request.customer_name,
            customer_email=request.customer_email,
            status=Quote.Status.DRAFT,
            issue_date=issue_date,
            expiration_date=expiration_date,
            currency=(request.currency or settings.DEFAULT_CURRENCY).upper(),
            tax_details=resolve_tax_details(self.tax_rates, request.tax_rate, request.tax_region),
            discount_amount=money(request.discount_amount),
            notes=request.notes,
            terms=request.terms,
            metadata=dict(request.metadata),
            created_by=actor,
            owner=actor,
            updated_by=actor,
        )
        self._persist(quote, build_line_items(QuoteLineItem, request.line_items), actor)
        self._log(quote, actor, "created", f"Quote {quote.quote_number} created")
        logger.info(f"Quote {quote.quote_number} created for customer {quote.customer_id} ({quote.total_amount} {quote.currency})")
        return quote

    def get_quote(self, identifier) -> Quote:
        return self.quotes.get(identifier)

    def get_quote_by_number(self, quote_number: str) -> Quote:
        quote = self.quotes.find_one({"quote_number": quote_number})
        if quote is None:
            raise NotFound.for_resource("Quote", quote_number)
        return quote

    def list_quotes(self, filters: Optional[QuoteFilters] = None) -> Page[Quote]:
        filters = filters or QuoteFilters()
        lookups = filters.to_lookups()
        items = self.quotes.find(lookups, ordering=[filters.ordering], offset=filters.offset, limit=filters.page_size)
        return Page(items=items, total=self.quotes.count(lookups), page=filters.page, page_size=filters.page_size)

    @transaction.atomic
    def update_quote(self, identifier, changes: Dict[str, Any], actor=None) -> Quote:
        quote = self.get_quote(identifier)
        if quote.is_locked and any(name in changes for name in self.PRICING_FIELDS):
            raise InvalidState(f"Cannot change pricing of {quote.status} quote")

        unknown = set(changes) - set(self.UPDATABLE_FIELDS) - {"line_items", "tax_rate"}
        if unknown:
            raise ValidationFailure({name: ["This field cannot be updated"] for name in sorted(unknown)})

        for name in self.UPDATABLE_FIELDS:
            if name in changes:
                setattr(quote, name, changes[name])
        if money(quote.discount_amount) < 0:
            raise ValidationFailure({"discount_amount": ["Discount cannot be negative"]})
        if "tax_rate" in changes:
            quote.tax_details = build_tax_details(changes["tax_rate"])

        items = None
        if "line_items" in changes:
            inputs = [i if isinstance(i, LineItemInput) else LineItemInput.from_dict(i) for i in changes["line_items"]]
            errors = validate_line_items(inputs)
            if errors:
                raise ValidationFailure(errors)
            quote.line_items.all().delete()
            items = build_line_items(QuoteLineItem, inputs)

        self._persist(quote, items, actor)
        self._log(quote, actor, "updated", "Quote updated", fields=sorted(changes))
        return quote

    @transaction.atomic
    def send_quote(self, identifier, recipient_email: Optional[str] = None, actor=None) -> Quote:
        quote = self.get_quote(identifier)
        if quote.is_locked:
            raise InvalidState(f"Cannot send {quote.status} quote")

        recipient = recipient_email or quote.customer_email
        if not recipient:
            raise ValidationFailure({"recipient_email": ["A recipient email address is required"]})

        if not quote.pdf_path:
            quote.pdf_path = self.pdf_renderer.render_quote(quote)
        self.mailer.send_quote(quote, recipient)

        if quote.status == Quote.Status.DRAFT:
            quote.status = Quote.Status.SENT
        quote.last_sent_date = timezone.now()
        self._persist(quote, actor=actor)
        self._log(quote, actor, "sent", f"Quote sent to {recipient}", recipient=recipient)
        logger.info(f"Quote {quote.quote_number} sent to {recipient}")
        return quote

    @transaction.atomic
    def accept_quote(self, identifier, actor=None) -> Quote:
        quote = self.get_quote(identifier)
        if quote.status in (Quote.Status.ACCEPTED, Quote.Status.REJECTED):
            raise InvalidState(f"Quote is already {quote.status}")
        if quote.is_expired:
            raise InvalidState("Quote has expired")

        quote.status = Quote.Status.ACCEPTED
        quote.accepted_date = timezone.now()
        self._persist(quote, actor=actor)
        self._log(quote, actor, "accepted", "Quote accepted")
        logger.info(f"Quote {quote.quote_number} accepted")
        return quote

    @transaction.atomic
    def reject_quote(self, identifier, reason: Optional[str] = None, actor=None) -> Quote:
        quote = self.get_quote(identifier)
        if quote.status in (Quote.Status.ACCEPTED, Quote.Status.REJECTED):
            raise InvalidState(f"Quote is already {quote.status}")

        quote.status = Quote.Status.REJECTED
        quote.rejected_date = timezone.now()
        if reason:
            quote.private_notes = append_note(quote.private_notes, f"Rejected: {reason}")
        self._persist(quote, actor=actor)
        self._log(quote, actor, "rejected", reason or "Quote rejected")
        logger.info(f"Quote {quote.quote_number} rejected")
        return quote

    @transaction.atomic
    def convert_to_invoice(self, identifier, due_date: Optional[date] = None, actor=None) -> Invoice:
        """Create a draft invoice carrying the accepted quote's line items, tax and discount."""
        quote = self.get_quote(identifier)
        if quote.is_converted:
            raise InvalidState(f"Quote {quote.quote_number} has already been converted")
        if quote.status != Quote.Status.ACCEPTED:
            raise InvalidState("Only accepted quotes can be converted to invoices")

        actor = resolve_actor(actor)
        issue_date = timezone.localdate()
        invoice = Invoice(
            customer_id=quote.customer_id,
            company_id=quote.company_id,
            customer_name=quote.customer_name,
            customer_email=quote.customer_email,
            status=Invoice.Status.DRAFT,
            issue_date=issue_date,
            due_date=due_date or issue_date + timedelta(days=self.invoice_service.default_due_days),
            currency=quote.currency,
            tax_details=[dict(detail) for detail in quote.tax_details],
            discount_amount=quote.discount_amount,
            notes=quote.notes,
            terms=quote.terms,
            metadata={"converted_from_quote": quote.quote_number},
            created_by=actor,
            owner=actor,
            updated_by=actor,
        )
        self.invoice_service.create_from_lines(invoice, clone_line_items(InvoiceLineItem, self._items(quote)), actor,
                                               f"Created from quote {quote.quote_number}")

        quote.converted_invoice = invoice
        self._persist(quote, actor=actor)
        self._log(quote, actor, "converted", f"Converted to invoice {invoice.invoice_number}",
                  invoice_number=invoice.invoice_number)
        logger.info(f"Quote {quote.quote_number} converted to invoice {invoice.invoice_number}")
        return invoice

    @transaction.atomic
    def duplicate_quote(self, identifier, actor=None) -> Quote:
        source = self.get_quote(identifier)
        actor = resolve_actor(actor)
        issue_date = timezone.localdate()
        validity = max((source.expiration_date - source.issue_date).days, 0) or DEFAULT_VALIDITY_DAYS

        quote = Quote(
            quote_number=self.numbering.quote_number(),
            customer_id=source.customer_id,
            company_id=source.company_id,
            customer_name=source.customer_name,
            customer_email=source.customer_email,
            status=Quote.Status.DRAFT,
            issue_date=issue_date,
            expiration_date=issue_date + timedelta(days=validity),
            currency=source.currency,
            tax_details=[dict(detail) for detail in source.tax_details],
            discount_amount=source.discount_amount,
            notes=source.notes,
            terms=source.terms,
            metadata={"duplicated_from": source.quote_number},
            created_by=actor,
            owner=actor,
            updated_by=actor,
        )
        self._persist(quote, clone_line_items(QuoteLineItem, self._items(source)), actor)
        self._log(quote, actor, "duplicated", f"Duplicated from {source.quote_number}", source=source.quote_number)
        return quote

    def generate_pdf(self, identifier) -> Quote:
        quote = self.get_quote(identifier)
        quote.pdf_path = self.pdf_renderer.render_quote(quote)
        self.quotes.save(quote, update_fields=["pdf_path"])
        return quote

    # ------------------------------------------------------------------
    # Line items
    # ------------------------------------------------------------------

    @transaction.atomic
    def add_line_item(self, identifier, item: LineItemInput, actor=None) -> Quote:
        quote = self.get_quote(identifier)
        self._ensure_editable(quote)
        errors = validate_line_items([item])
        if errors:
            raise ValidationFailure(errors)

        items = self._items(quote)
        position = max((i.position for i in items), default=-1) + 1
        items.extend(build_line_items(QuoteLineItem, [item], start=position))
        self._persist(quote, items, actor)
        self._log(quote, actor, "line_item_added", item.description)
        return quote

    @transaction.atomic
    def update_line_item(self, identifier, line_id: int, changes: Dict[str, Any], actor=None) -> Quote:
        quote = self.get_quote(identifier)
        self._ensure_editable(quote)

        items = self._items(quote)
        target = next((i for i in items if i.pk == int(line_id)), None)
        if target is None:
            raise NotFound.for_resource("Line item", line_id)

        merged = LineItemInput.from_dict({
            "description": target.description,
            "quantity": target.quantity,
            "unit_price": target.unit_price,
            "discount_percent": target.discount_percent,
            "discount_amount": target.discount_amount,
            "taxable": target.taxable,
            "product_id": target.product_id,
            **changes,
        })
        errors = validate_line_items([merged])
        if errors:
            raise ValidationFailure(errors)

        target.description = merged.description.strip()
        target.quantity = merged.quantity
        target.unit_price = merged.unit_price
        target.discount_percent = merged.discount_percent
        target.discount_amount = merged.discount_amount
        target.taxable = merged.taxable
        target.product_id = merged.product_id
        target.save()
        self._persist(quote, items, actor)
        self._log(quote, actor, "line_item_updated", target.description, line_id=target.pk)
        return quote

    @transaction.atomic
    def remove_line_item(self, identifier, line_id: int, actor=None) -> Quote:
        quote = self.get_quote(identifier)
        self._ensure_editable(quote)

        items = self._items(quote)
        target = next((i for i in items if i.pk == int(line_id)), None)
        if target is None:
            raise NotFound.for_resource("Line item", line_id)
        items.remove(target)
        target.delete()
        for position, item in enumerate(items):
            item.position = position
        self._persist(quote, items, actor)
        self._log(quote, actor, "line_item_removed", target.description, line_id=line_id)
        return quote

    @transaction.atomic
    def extend_expiration_date(self, identifier, new_date: date, actor=None) -> Quote:
        quote = self.get_quote(identifier)
        self._ensure_editable(quote)
        if new_date < timezone.localdate():
            raise ValidationFailure({"expiration_date": ["New expiration date must not be in the past"]})

        previous = quote.expiration_date
        quote.expiration_date = new_date
        if quote.status == Quote.Status.EXPIRED:
            quote.status = Quote.Status.SENT
        self._persist(quote, actor=actor)
        self._log(quote, actor, "extended", f"Expiration moved from {previous} to {new_date}")
        return quote

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_expiring_quotes(self, days: int = 7) -> List[Quote]:
        today = timezone.localdate()
        return self.quotes.find(
            Q(status__in=[Quote.Status.DRAFT, Quote.Status.SENT])
            & Q(expiration_date__gte=today, expiration_date__lte=today + timedelta(days=days)),
            ordering=["expiration_date"],
        )

    def get_quote_metrics(self, date_range: Optional[DateRange] = None) -> Dict[str, Any]:
        date_range = date_range or DateRange()
        rows = self.quotes.aggregate(
            date_range.lookups("issue_date"),
            group_by=["status"],
            count=Count("id"),
            value=Sum("total_amount"),
        )
        by_status = {row["status"]: {"count": row["count"], "value": row["value"] or ZERO} for row in rows}
        total = sum(row["count"] for row in rows)
        accepted = by_status.get(Quote.Status.ACCEPTED, {}).get("count", 0)
        rejected = by_status.get(Quote.Status.REJECTED, {}).get("count", 0)
        converted = self.quotes.count(Q(converted_invoice__isnull=False) & Q(**date_range.lookups("issue_date")))
        decided = accepted + rejected

        return {
            "total_quotes": total,
            "total_value": sum((s["value"] for s in by_status.values()), ZERO),
            "by_status": by_status,
            "acceptance_rate": round(accepted / decided * 100, 2) if decided else 0.0,
            "converted_count": converted,
            "conversion_rate": round(converted / total * 100, 2) if total else 0.0,
        }
