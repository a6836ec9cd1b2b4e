"""
Portal Service - what a customer can do with a document's share link.

Every public link carries the document's ``public_token``. Drafts are never
reachable through it and cancelled invoices disappear from the portal, so a
token alone reveals nothing the customer has not been sent.
"""

import logging
import os
from datetime import date
from typing import Any, Dict, Optional, Tuple

from django.db import transaction

from ..exceptions import InvalidState, NotFound, ValidationFailure
from ..models import Invoice, Payment, Quote
from ..types import CreatePaymentRequest

logger = logging.getLogger(__name__)

HIDDEN_INVOICE_STATUSES = (Invoice.Status.DRAFT, Invoice.Status.CANCELLED)


class PortalService:
    def __init__(self, invoice_service, quote_service, payment_service, payment_methods=None):
        self.invoice_service = invoice_service
        self.quote_service = quote_service
        self.payment_service = payment_service
        self.payment_methods = payment_methods

    # ------------------------------------------------------------------
    # Token lookups
    # ------------------------------------------------------------------

    def _invoice(self, token: str) -> Invoice:
        invoice = self.invoice_service.invoices.find_one({"public_token": token}) if token else None
        if invoice is None or invoice.status in HIDDEN_INVOICE_STATUSES:
            raise NotFound("Invoice not found")
        return invoice

    def _quote(self, token: str) -> Quote:
        quote = self.quote_service.quotes.find_one({"public_token": token}) if token else None
        if quote is None or quote.status == Quote.Status.DRAFT:
            raise NotFound("Quote not found")
        return quote

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def get_invoice(self, token: str) -> Invoice:
        """The invoice behind ``token``; the first visit marks a sent invoice as viewed."""
        invoice = self._invoice(token)
        return self.invoice_service.mark_as_viewed(invoice.pk)

    def pay_invoice(self, token: str, payment_method_id: str = "",
                    billing_details: Optional[Dict[str, Any]] = None) -> Tuple[Invoice, Payment]:
        """Charge the invoice's remaining balance.

        Without an explicit gateway payment method the customer's default saved
        method is charged.
        """
        invoice = self._invoice(token)
        if invoice.status in (Invoice.Status.PAID, Invoice.Status.REFUNDED) or invoice.remaining_balance <= 0:
            raise InvalidState("Invoice is already paid in full")
        if not payment_method_id and (
            self.payment_methods is None
            or self.payment_methods.get_default_payment_method(invoice.customer_id) is None
        ):
            raise ValidationFailure({"payment_method_id": ["A payment method is required"]})

        metadata: Dict[str, Any] = {"source": "payment_portal"}
        if billing_details:
            metadata["billing_details"] = dict(billing_details)
        payment = self.payment_service.process_payment(
            CreatePaymentRequest(
                customer_id=invoice.customer_id,
                amount=invoice.remaining_balance,
                currency=invoice.currency,
                invoice_id=invoice.pk,
                payment_method_id=payment_method_id,
                description=f"Payment for invoice {invoice.invoice_number}",
                metadata=metadata,
            )
        )
        logger.info(f"Portal payment {payment.payment_id} for invoice {invoice.invoice_number}: {payment.status}")
        invoice.refresh_from_db()
        return invoice, payment

    def invoice_pdf(self, token: str) -> Invoice:
        invoice = self._invoice(token)
        if not invoice.pdf_path or not os.path.exists(invoice.pdf_path):
            invoice = self.invoice_service.generate_pdf(invoice.pk)
        return invoice

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    def get_quote(self, token: str) -> Quote:
        return self._quote(token)

    @transaction.atomic
    def accept_quote(self, token: str, convert_to_invoice: bool = False,
                     due_date: Optional[date] = None) -> Tuple[Quote, Optional[Invoice]]:
        quote = self.quote_service.accept_quote(self._quote(token).pk)
        invoice = None
        if convert_to_invoice:
            invoice = self.quote_service.convert_to_invoice(quote.pk, due_date=due_date)
            quote.refresh_from_db()
        return quote, invoice

    def reject_quote(self, token: str, reason: Optional[str] = None) -> Quote:
        return self.quote_service.reject_quote(self._quote(token).pk, reason=reason)

    def quote_pdf(self, token: str) -> Quote:
        quote = self._quote(token)
        if not quote.pdf_path or not os.path.exists(quote.pdf_path):
            quote = self.quote_service.generate_pdf(quote.pk)
        return quote

    # ------------------------------------------------------------------
    # Share links (staff side)
    # ------------------------------------------------------------------

    def share_invoice_link(self, identifier, regenerate: bool = False) -> Dict[str, str]:
        invoice = self.invoice_service.get_invoice(identifier)
        if regenerate:
            invoice.regenerate_token()
            logger.info(f"Share link of invoice {invoice.invoice_number} regenerated")
        return {"url": invoice.get_portal_url(), "token": invoice.public_token}

    def share_quote_link(self, identifier, regenerate: bool = False) -> Dict[str, str]:
        quote = self.quote_service.get_quote(identifier)
        if regenerate:
            quote.regenerate_token()
            logger.info(f"Share link of quote {quote.quote_number} regenerated")
        return {"url": quote.get_portal_url(), "token": quote.public_token}
