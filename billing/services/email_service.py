"""
Email Service - outbound billing email.

Responsibilities:
- Transport abstraction: ``send(to, subject, html, attachments)``
- SendGrid delivery in production, Django's mail backend elsewhere
- Rendering of invoice, quote, reminder and payment confirmation emails
"""

from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Sequence

from django.conf import settings
from django.core.mail import EmailMessage
from django.template.loader import render_to_string
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Attachment, Disposition, FileContent, FileName, FileType, Mail

from ..exceptions import GatewayFailure

if TYPE_CHECKING:
    from ..models import Invoice, Payment, Quote

logger = logging.getLogger(__name__)


@dataclass
class EmailAttachment:
    path: str
    filename: str = ""
    mimetype: str = "application/pdf"

    def read(self) -> bytes:
        with open(self.path, "rb") as handle:
            return handle.read()

    @property
    def name(self) -> str:
        return self.filename or os.path.basename(self.path)


class SendGridTransport:
    def __init__(self, api_key: str, from_email: str, from_name: str = ""):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.client = SendGridAPIClient(api_key) if api_key else None

    def send(self, to: str, subject: str, html: str, attachments: Optional[Sequence[EmailAttachment]] = None) -> None:
        if self.client is None:
            raise GatewayFailure("SendGrid API key not configured. Email sending is disabled.", code="not_configured")

        message = Mail(
            from_email=(self.from_email, self.from_name) if self.from_name else self.from_email,
            to_emails=to,
            subject=subject,
            html_content=html,
        )
        for attachment in attachments or []:
            message.add_attachment(Attachment(
                FileContent(base64.b64encode(attachment.read()).decode()),
                FileName(attachment.name),
                FileType(attachment.mimetype),
                Disposition("attachment"),
            ))

        try:
            response = self.client.send(message)
        except Exception as exc:
            status_code = getattr(exc, "status_code", None)
            logger.error(f"SendGrid API error sending '{subject}' to {to}: {exc}")
            raise GatewayFailure(f"Email delivery failed: {exc}", status_code=status_code) from exc

        if 400 <= response.status_code < 600:
            logger.error(f"SendGrid returned error status: {response.status_code}")
            raise GatewayFailure(f"SendGrid error: {response.status_code}", status_code=response.status_code)
        logger.info(f"Email '{subject}' sent to {to}")


class DjangoMailTransport:
    """Delivers through EMAIL_BACKEND; the console or locmem backend outside production."""

    def __init__(self, from_email: str):
        self.from_email = from_email

    def send(self, to: str, subject: str, html: str, attachments: Optional[Sequence[EmailAttachment]] = None) -> None:
        message = EmailMessage(subject=subject, body=html, from_email=self.from_email, to=[to])
        message.content_subtype = "html"
        for attachment in attachments or []:
            message.attach(attachment.name, attachment.read(), attachment.mimetype)
        try:
            message.send(fail_silently=False)
        except Exception as exc:
            logger.error(f"Email delivery of '{subject}' to {to} failed: {exc}")
            raise GatewayFailure(f"Email delivery failed: {exc}") from exc
        logger.info(f"Email '{subject}' sent to {to}")


def build_transport():
    transport = getattr(settings, "BILLING_EMAIL_TRANSPORT", "django")
    from_email = settings.DEFAULT_FROM_EMAIL
    if transport == "sendgrid":
        return SendGridTransport(settings.SENDGRID_API_KEY, from_email, settings.COMPANY_NAME)
    return DjangoMailTransport(from_email)


class BillingMailer:
    REMINDER_SUBJECTS = {
        "first_reminder": "Payment Reminder: Invoice {number} from {company}",
        "second_reminder": "Second Notice: Invoice {number} Past Due - {company}",
        "final_notice": "FINAL NOTICE: Immediate Payment Required - Invoice {number}",
    }

    def __init__(self, transport, company_name: Optional[str] = None):
        self.transport = transport
        self.company_name = company_name or getattr(settings, "COMPANY_NAME", "BillingDesk")

    def _context(self, **extra) -> dict:
        return {"company_name": self.company_name, "frontend_url": getattr(settings, "FRONTEND_URL", ""), **extra}

    @staticmethod
    def _pdf(path: str, filename: str) -> List[EmailAttachment]:
        return [EmailAttachment(path=path, filename=filename)] if path else []

    def reminder_subject(self, invoice: "Invoice", reminder_type: str) -> str:
        template = self.REMINDER_SUBJECTS.get(reminder_type, "Payment Reminder: Invoice {number}")
        return template.format(number=invoice.invoice_number, company=self.company_name)

    def send_invoice(self, invoice: "Invoice", recipient: str) -> None:
        html = render_to_string(
            "billing/emails/invoice.html", self._context(invoice=invoice, portal_url=invoice.get_portal_url())
        )
        self.transport.send(
            recipient,
            f"Invoice {invoice.invoice_number} from {self.company_name}",
            html,
            self._pdf(invoice.pdf_path, f"invoice-{invoice.invoice_number}.pdf"),
        )

    def send_quote(self, quote: "Quote", recipient: str) -> None:
        html = render_to_string(
            "billing/emails/quote.html", self._context(quote=quote, portal_url=quote.get_portal_url())
        )
        self.transport.send(
            recipient,
            f"Quote {quote.quote_number} from {self.company_name}",
            html,
            self._pdf(quote.pdf_path, f"quote-{quote.quote_number}.pdf"),
        )

    def send_reminder(self, invoice: "Invoice", recipient: str, reminder_type: str, days_past_due: int) -> None:
        html = render_to_string("billing/emails/reminder.html", self._context(
            invoice=invoice,
            portal_url=invoice.get_portal_url(),
            reminder_type=reminder_type,
            days_past_due=days_past_due,
            is_final=reminder_type == "final_notice",
        ))
        self.transport.send(recipient, self.reminder_subject(invoice, reminder_type), html)

    def send_payment_confirmation(self, payment: "Payment", recipient: str) -> None:
        invoice = payment.invoice
        number = invoice.invoice_number if invoice else payment.payment_id
        html = render_to_string("billing/emails/payment_confirmation.html", self._context(payment=payment, invoice=invoice))
        self.transport.send(recipient, f"Payment Confirmation - Invoice {number}", html)
