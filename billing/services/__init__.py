from .email_service import BillingMailer, DjangoMailTransport, SendGridTransport, build_transport
from .invoice_service import InvoiceService
from .payment_method_service import PaymentMethodService
from .payment_service import PaymentService
from .pdf_service import PDFRenderer
from .portal_service import PortalService
from .quote_service import QuoteService
from .reminder_service import ReminderService, select_reminder_type
from .subscription_service import SubscriptionService
from .tax_service import TaxRateService
from .webhook_service import WebhookService

__all__ = [
    "BillingMailer",
    "DjangoMailTransport",
    "SendGridTransport",
    "build_transport",
    "InvoiceService",
    "PaymentMethodService",
    "PaymentService",
    "PDFRenderer",
    "PortalService",
    "QuoteService",
    "ReminderService",
    "select_reminder_type",
    "SubscriptionService",
    "TaxRateService",
    "WebhookService",
]
