"""
Service wiring.

build_services() constructs every billing service once, handing each its
collaborators explicitly. BillingConfig.ready() calls it at startup; tests
call it directly with fake gateway, transport and PDF renderer objects.
"""

from dataclasses import dataclass

from django.conf import settings

from .gateways import StripeGateway
from .numbering import DocumentNumberAllocator
from .services import (
    BillingMailer,
    InvoiceService,
    PaymentMethodService,
    PaymentService,
    PDFRenderer,
    PortalService,
    QuoteService,
    ReminderService,
    SubscriptionService,
    TaxRateService,
    WebhookService,
    build_transport,
)


@dataclass
class BillingServices:
    invoices: InvoiceService
    quotes: QuoteService
    payments: PaymentService
    subscriptions: SubscriptionService
    reminders: ReminderService
    webhooks: WebhookService
    payment_methods: PaymentMethodService
    tax_rates: TaxRateService
    portal: PortalService
    gateway: StripeGateway


def build_gateway() -> StripeGateway:
    return StripeGateway(
        secret_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        api_base=settings.STRIPE_API_BASE,
        tolerance=settings.STRIPE_WEBHOOK_TOLERANCE,
    )


def build_services(gateway=None, transport=None, pdf_renderer=None) -> BillingServices:
    gateway = gateway or build_gateway()
    mailer = BillingMailer(transport or build_transport())
    pdf_renderer = pdf_renderer or PDFRenderer()
    numbering = DocumentNumberAllocator()

    tax_rates = TaxRateService()
    payment_methods = PaymentMethodService(gateway=gateway)

    invoices = InvoiceService(numbering=numbering, pdf_renderer=pdf_renderer, mailer=mailer,
                              default_due_days=settings.INVOICE_DEFAULT_DUE_DAYS, tax_rates=tax_rates)
    quotes = QuoteService(numbering=numbering, invoice_service=invoices, pdf_renderer=pdf_renderer, mailer=mailer,
                          tax_rates=tax_rates)
    payments = PaymentService(numbering=numbering, gateway=gateway, invoice_service=invoices, mailer=mailer,
                              payment_methods=payment_methods)
    subscriptions = SubscriptionService(numbering=numbering, gateway=gateway)

    return BillingServices(
        invoices=invoices,
        quotes=quotes,
        payments=payments,
        subscriptions=subscriptions,
        reminders=ReminderService(invoices),
        webhooks=WebhookService(payments, subscriptions, payment_methods=payment_methods),
        payment_methods=payment_methods,
        tax_rates=tax_rates,
        portal=PortalService(invoices, quotes, payments, payment_methods),
        gateway=gateway,
    )
