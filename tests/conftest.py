import itertools
from decimal import Decimal
from pathlib import Path

import pytest
from django.apps import apps
from django.core.cache import cache
from rest_framework.test import APIClient

from billing.container import build_services
from billing.exceptions import GatewayFailure
from billing.gateways import StripeGateway
from billing.types import CreateInvoiceRequest, CreatePaymentRequest, CreateQuoteRequest, LineItemInput
from tests.factories import UserFactory

WEBHOOK_SECRET = "whsec_test_secret"


def remote_subscription(subscription_id="sub_123", price_id="price_basic", unit_amount=2000, status="active",
                        quantity=1, interval="month", period_start=1767225600, period_end=1769904000, **extra):
    """A Stripe subscription object as the API returns it."""
    remote = {
        "id": subscription_id,
        "object": "subscription",
        "customer": "cus_123",
        "status": status,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "cancel_at": None,
        "canceled_at": None,
        "ended_at": None,
        "trial_start": None,
        "trial_end": None,
        "pause_collection": None,
        "items": {
            "data": [
                {
                    "id": "si_123",
                    "quantity": quantity,
                    "price": {
                        "id": price_id,
                        "unit_amount": unit_amount,
                        "currency": "usd",
                        "recurring": {"interval": interval},
                    },
                }
            ]
        },
    }
    remote.update(extra)
    return remote


def remote_card(payment_method_id, brand="visa", last4="4242", exp_month=12, exp_year=2034, customer=None):
    """A Stripe card PaymentMethod object."""
    return {
        "id": payment_method_id,
        "object": "payment_method",
        "type": "card",
        "customer": customer,
        "card": {"brand": brand, "last4": last4, "exp_month": exp_month, "exp_year": exp_year},
        "billing_details": {
            "address": {"line1": "1 Main St", "city": "Springfield", "state": "IL", "postal_code": "62701", "country": "US"},
        },
    }


class FakeGateway(StripeGateway):
    """Stripe adapter with canned responses; webhook signature checks stay real."""

    def __init__(self):
        super().__init__("sk_test_fake", webhook_secret=WEBHOOK_SECRET)
        self.calls = []
        self.counter = itertools.count(1)
        self.intent_status = "succeeded"
        self.refund_status = "succeeded"
        self.fail_with = None
        self.fail_cancel = False
        self.prices = {"price_basic": 2000, "price_pro": 5000}
        self.subscriptions = {}
        self.payment_methods = {
            "pm_card_visa": remote_card("pm_card_visa"),
            "pm_card_mastercard": remote_card("pm_card_mastercard", brand="mastercard", last4="4444"),
        }

    def _record(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        if self.fail_with is not None:
            raise self.fail_with

    def calls_to(self, name):
        return [call for call in self.calls if call[0] == name]

    def create_payment_intent(self, amount, currency, **kwargs):
        self._record("create_payment_intent", amount, currency, **kwargs)
        return {"id": f"pi_{next(self.counter)}", "status": self.intent_status, "latest_charge": "ch_1"}

    def cancel_payment_intent(self, intent_id, reason="requested_by_customer"):
        self.calls.append(("cancel_payment_intent", (intent_id,), {}))
        if self.fail_cancel:
            raise GatewayFailure("No such payment_intent", code="resource_missing", status_code=404)
        return {"id": intent_id, "status": "canceled"}

    def create_refund(self, payment_intent_id, amount=None, reason="", metadata=None, idempotency_key=None):
        self._record("create_refund", payment_intent_id, amount, reason=reason, idempotency_key=idempotency_key)
        return {"id": f"re_{next(self.counter)}", "status": self.refund_status}

    def create_subscription(self, customer, price_id, **kwargs):
        self._record("create_subscription", customer, price_id, **kwargs)
        remote = remote_subscription(
            subscription_id=f"sub_{next(self.counter)}",
            price_id=price_id,
            unit_amount=self.prices[price_id],
            quantity=kwargs.get("quantity", 1),
            status="trialing" if kwargs.get("trial_days") else "active",
            customer=customer,
        )
        self.subscriptions[remote["id"]] = remote
        return remote

    def retrieve_subscription(self, subscription_id):
        self._record("retrieve_subscription", subscription_id)
        return self.subscriptions[subscription_id]

    def update_subscription(self, subscription_id, **changes):
        self._record("update_subscription", subscription_id, **changes)
        remote = self.subscriptions[subscription_id]
        item = remote["items"]["data"][0]
        if changes.get("price_id"):
            item["price"] = {**item["price"], "id": changes["price_id"], "unit_amount": self.prices[changes["price_id"]]}
        if changes.get("quantity"):
            item["quantity"] = changes["quantity"]
        if "pause_collection" in changes:
            remote["pause_collection"] = changes["pause_collection"] or None
        return remote

    def cancel_subscription(self, subscription_id, immediately=False):
        self._record("cancel_subscription", subscription_id, immediately=immediately)
        remote = self.subscriptions[subscription_id]
        if immediately:
            remote["status"] = "canceled"
            remote["canceled_at"] = remote["ended_at"] = remote["current_period_start"] + 86400
        else:
            remote["cancel_at"] = remote["current_period_end"]
            remote["canceled_at"] = remote["current_period_start"] + 86400
        return remote

    def retrieve_price(self, price_id):
        self._record("retrieve_price", price_id)
        return {"id": price_id, "unit_amount": self.prices[price_id], "currency": "usd"}

    def retrieve_payment_method(self, payment_method_id):
        self._record("retrieve_payment_method", payment_method_id)
        return self.payment_methods[payment_method_id]

    def attach_payment_method(self, payment_method_id, customer):
        self._record("attach_payment_method", payment_method_id, customer)
        remote = self.payment_methods[payment_method_id]
        remote["customer"] = customer
        return remote

    def detach_payment_method(self, payment_method_id):
        self._record("detach_payment_method", payment_method_id)
        remote = self.payment_methods[payment_method_id]
        remote["customer"] = None
        return remote


class FakeTransport:
    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, to, subject, html, attachments=None):
        if self.fail:
            raise GatewayFailure("SMTP connection refused")
        self.sent.append({"to": to, "subject": subject, "html": html, "attachments": list(attachments or [])})


class FakePDFRenderer:
    def __init__(self, directory: Path):
        self.directory = directory
        self.rendered = []

    def _write(self, filename):
        path = self.directory / filename
        path.write_bytes(b"%PDF-1.7 test")
        self.rendered.append(filename)
        return str(path)

    def render_invoice(self, invoice):
        return self._write(f"invoice-{invoice.invoice_number}.pdf")

    def render_quote(self, quote):
        return self._write(f"quote-{quote.quote_number}.pdf")


def line(description="Consulting", quantity="1", unit_price="100.00", **kwargs):
    return LineItemInput(description=description, quantity=Decimal(quantity), unit_price=Decimal(unit_price), **kwargs)


def invoice_request(**overrides):
    data = {
        "customer_id": "cust-1",
        "customer_name": "Acme Corp",
        "customer_email": "billing@acme.test",
        "line_items": [line("Widget", "2", "50.00"), line("Setup", "1", "100.00")],
        "tax_rate": Decimal("10"),
    }
    data.update(overrides)
    return CreateInvoiceRequest(**data)


def quote_request(**overrides):
    data = {
        "customer_id": "cust-1",
        "customer_name": "Acme Corp",
        "customer_email": "billing@acme.test",
        "line_items": [line("Widget", "2", "50.00"), line("Setup", "1", "100.00")],
        "tax_rate": Decimal("10"),
    }
    data.update(overrides)
    return CreateQuoteRequest(**data)


def payment_request(**overrides):
    data = {
        "customer_id": "cust-1",
        "amount": Decimal("220.00"),
        "payment_method_id": "pm_card_visa",
        "gateway_customer_id": "cus_123",
    }
    data.update(overrides)
    return CreatePaymentRequest(**data)


@pytest.fixture(autouse=True)
def billing_settings(settings, tmp_path):
    settings.PDF_STORAGE_PATH = str(tmp_path / "pdfs")
    settings.DEFAULT_CURRENCY = "USD"
    settings.INVOICE_DEFAULT_DUE_DAYS = 30
    settings.EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"
    settings.FRONTEND_URL = "https://billing.example.test"
    # Throttle counters live in the cache.
    cache.clear()
    return settings


@pytest.fixture
def user(db):
    return UserFactory()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def pdf_renderer(tmp_path):
    return FakePDFRenderer(tmp_path)


@pytest.fixture
def services(db, gateway, transport, pdf_renderer):
    return build_services(gateway=gateway, transport=transport, pdf_renderer=pdf_renderer)


@pytest.fixture
def api_client(user, services, monkeypatch):
    monkeypatch.setattr(apps.get_app_config("billing"), "services", services)
    client = APIClient()
    client.force_authenticate(user=user)
    return client


@pytest.fixture
def portal_client(services, monkeypatch):
    monkeypatch.setattr(apps.get_app_config("billing"), "services", services)
    return APIClient()


@pytest.fixture
def sent_invoice(services, user):
    invoice = services.invoices.create_invoice(invoice_request(), actor=user)
    return services.invoices.send_invoice(invoice.pk, actor=user)
