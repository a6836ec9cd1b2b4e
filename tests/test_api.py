from decimal import Decimal

import pytest
from rest_framework.test import APIClient

from billing.exceptions import GatewayFailure
from billing.models import Invoice, Payment, Quote
from billing.types import CreateSubscriptionRequest
from tests.factories import InvoiceFactory, PaymentFactory, PaymentMethodFactory, SubscriptionFactory, TaxRateFactory

INVOICE_PAYLOAD = {
    "customer_id": "cust-1",
    "customer_name": "Acme Corp",
    "customer_email": "billing@acme.test",
    "tax_rate": "10",
    "line_items": [
        {"description": "Widget", "quantity": "2", "unit_price": "50.00"},
        {"description": "Setup", "quantity": "1", "unit_price": "100.00"},
    ],
}


@pytest.mark.django_db
class TestInvoiceEndpoints:
    def test_create_returns_envelope(self, api_client):
        response = api_client.post("/api/v1/invoices/", INVOICE_PAYLOAD, format="json")

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Invoice created."
        assert body["data"]["status"] == Invoice.Status.DRAFT
        assert body["data"]["subtotal"] == "200.00"
        assert body["data"]["tax_amount"] == "20.00"
        assert body["data"]["total_amount"] == "220.00"
        assert len(body["data"]["line_items"]) == 2

    def test_list_has_pagination_meta(self, api_client):
        InvoiceFactory.create_batch(3)

        response = api_client.get("/api/v1/invoices/", {"page_size": 2})

        assert response.status_code == 200
        body = response.json()
        assert len(body["data"]) == 2
        assert body["meta"]["pagination"] == {"page": 1, "page_size": 2, "total": 3, "total_pages": 2}

    def test_retrieve_by_number(self, api_client, sent_invoice):
        response = api_client.get(f"/api/v1/invoices/{sent_invoice.invoice_number}/")
        assert response.json()["data"]["id"] == sent_invoice.pk

    def test_unknown_invoice_is_404(self, api_client):
        response = api_client.get("/api/v1/invoices/INV-1999-0001/")

        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "RESOURCE_NOT_FOUND"
        assert body["request_id"]

    def test_validation_errors_list_fields(self, api_client):
        payload = dict(INVOICE_PAYLOAD, line_items=[{"description": "", "quantity": "0", "unit_price": "5"}])

        response = api_client.post("/api/v1/invoices/", payload, format="json")

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        fields = {field["field"] for field in error["fields"]}
        assert {"line_items.0.description", "line_items.0.quantity"} <= fields

    def test_invalid_transition_is_409(self, api_client, services, sent_invoice):
        services.invoices.mark_as_paid(sent_invoice.pk, Decimal("220"))

        response = api_client.post(f"/api/v1/invoices/{sent_invoice.pk}/cancel/", {"reason": "oops"}, format="json")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVALID_STATE_TRANSITION"

    def test_send_and_mark_paid(self, api_client, transport):
        invoice_id = api_client.post("/api/v1/invoices/", INVOICE_PAYLOAD, format="json").json()["data"]["id"]

        sent = api_client.post(f"/api/v1/invoices/{invoice_id}/send/", {}, format="json")
        assert sent.json()["data"]["status"] == Invoice.Status.SENT
        assert transport.sent[0]["to"] == "billing@acme.test"

        paid = api_client.post(f"/api/v1/invoices/{invoice_id}/mark-paid/", {"amount": "100"}, format="json")
        assert paid.json()["data"]["status"] == Invoice.Status.PARTIALLY_PAID
        assert paid.json()["message"] == "Invoice marked partially_paid."

    def test_pdf_download(self, api_client, sent_invoice):
        response = api_client.get(f"/api/v1/invoices/{sent_invoice.pk}/pdf/")

        assert response.status_code == 200
        assert response["Content-Type"] == "application/pdf"
        assert f"invoice-{sent_invoice.invoice_number}.pdf" in response["Content-Disposition"]
        assert b"".join(response.streaming_content)

    def test_summary(self, api_client, sent_invoice):
        response = api_client.get("/api/v1/invoices/summary/")

        assert response.status_code == 200
        assert response.json()["data"]["invoice_count"] == 1

    def test_requires_authentication(self):
        response = APIClient().get("/api/v1/invoices/")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTHENTICATION_REQUIRED"


@pytest.mark.django_db
class TestQuoteEndpoints:
    def test_quote_lifecycle(self, api_client):
        quote_id = api_client.post("/api/v1/quotes/", INVOICE_PAYLOAD, format="json").json()["data"]["id"]

        api_client.post(f"/api/v1/quotes/{quote_id}/send/", {}, format="json")
        accepted = api_client.post(f"/api/v1/quotes/{quote_id}/accept/")
        assert accepted.json()["data"]["status"] == Quote.Status.ACCEPTED

        converted = api_client.post(f"/api/v1/quotes/{quote_id}/convert/", {}, format="json")
        assert converted.status_code == 201
        assert converted.json()["data"]["total_amount"] == "220.00"

        again = api_client.post(f"/api/v1/quotes/{quote_id}/convert/", {}, format="json")
        assert again.status_code == 409

    def test_line_item_routes(self, api_client):
        quote = api_client.post("/api/v1/quotes/", INVOICE_PAYLOAD, format="json").json()["data"]

        added = api_client.post(
            f"/api/v1/quotes/{quote['id']}/line-items/",
            {"description": "Training", "quantity": "1", "unit_price": "80"},
            format="json",
        )
        assert added.status_code == 201
        assert added.json()["data"]["subtotal"] == "280.00"

        line_id = added.json()["data"]["line_items"][-1]["id"]
        removed = api_client.delete(f"/api/v1/quotes/{quote['id']}/line-items/{line_id}/")
        assert removed.json()["data"]["subtotal"] == "200.00"


@pytest.mark.django_db
class TestPaymentEndpoints:
    def test_process_and_refund(self, api_client, sent_invoice):
        created = api_client.post("/api/v1/payments/", {
            "customer_id": "cust-1",
            "amount": "220.00",
            "invoice_id": sent_invoice.invoice_number,
            "payment_method_id": "pm_card_visa",
        }, format="json")

        assert created.status_code == 201
        payment = created.json()["data"]
        assert payment["status"] == Payment.Status.COMPLETED
        assert payment["invoice_number"] == sent_invoice.invoice_number

        refund = api_client.post(f"/api/v1/payments/{payment['payment_id']}/refund/", {"amount": "20"}, format="json")
        assert refund.status_code == 201
        assert refund.json()["data"]["amount"] == "20.00"

        excessive = api_client.post(f"/api/v1/payments/{payment['id']}/refund/", {"amount": "500"}, format="json")
        assert excessive.status_code == 409

    def test_gateway_failure_is_502(self, api_client, gateway):
        gateway.fail_with = GatewayFailure("Your card was declined.", code="card_declined", status_code=402)

        response = api_client.post("/api/v1/payments/", {"customer_id": "cust-1", "amount": "10"}, format="json")

        assert response.status_code == 502
        assert response.json()["error"]["message"] == "Your card was declined."

    def test_filter_by_status(self, api_client):
        PaymentFactory(status=Payment.Status.FAILED)
        PaymentFactory(status=Payment.Status.COMPLETED)

        response = api_client.get("/api/v1/payments/", {"status": Payment.Status.FAILED})

        assert response.json()["meta"]["pagination"]["total"] == 1


@pytest.mark.django_db
class TestSubscriptionEndpoints:
    def test_create_and_cancel(self, api_client):
        created = api_client.post("/api/v1/subscriptions/", {
            "customer_id": "cust-1",
            "gateway_customer_id": "cus_123",
            "plan_id": "price_basic",
        }, format="json")
        assert created.status_code == 201
        subscription_id = created.json()["data"]["subscription_id"]

        cancelled = api_client.post(f"/api/v1/subscriptions/{subscription_id}/cancel/",
                                    {"immediately": True}, format="json")
        assert cancelled.json()["data"]["status"] == "cancelled"

    def test_proration_estimate(self, api_client, services):
        subscription = services.subscriptions.create_subscription(
            CreateSubscriptionRequest(customer_id="cust-1", gateway_customer_id="cus_123", plan_id="price_basic")
        )

        response = api_client.get(f"/api/v1/subscriptions/{subscription.pk}/proration/", {"new_plan_id": "price_pro"})

        assert response.status_code == 200
        assert response.json()["data"]["new_amount"] == "50.00"

    def test_proration_requires_plan(self, api_client):
        subscription = SubscriptionFactory()
        response = api_client.get(f"/api/v1/subscriptions/{subscription.pk}/proration/")
        assert response.status_code == 400

    def test_metrics(self, api_client):
        SubscriptionFactory(amount=Decimal("20"))
        response = api_client.get("/api/v1/subscriptions/metrics/")
        assert response.json()["data"]["active_subscriptions"] == 1


@pytest.mark.django_db
class TestPaymentMethodEndpoints:
    def test_save_list_and_remove(self, api_client):
        created = api_client.post("/api/v1/payment-methods/", {
            "customer_id": "cust-1",
            "gateway_payment_method_id": "pm_card_visa",
            "gateway_customer_id": "cus_123",
        }, format="json")
        assert created.status_code == 201
        assert created.json()["data"]["display_name"] == "Visa ending in 4242"
        assert created.json()["data"]["is_default"] is True

        listed = api_client.get("/api/v1/payment-methods/", {"customer_id": "cust-1"})
        assert [m["gateway_payment_method_id"] for m in listed.json()["data"]] == ["pm_card_visa"]

        removed = api_client.delete("/api/v1/payment-methods/pm_card_visa/")
        assert removed.status_code == 200
        assert api_client.get("/api/v1/payment-methods/", {"customer_id": "cust-1"}).json()["data"] == []

    def test_list_requires_customer(self, api_client):
        assert api_client.get("/api/v1/payment-methods/").status_code == 400

    def test_make_default(self, api_client):
        PaymentMethodFactory(is_default=True)
        other = PaymentMethodFactory()

        response = api_client.post(f"/api/v1/payment-methods/{other.pk}/default/")

        assert response.status_code == 200
        assert response.json()["data"]["is_default"] is True


@pytest.mark.django_db
class TestTaxRateEndpoints:
    def test_create_and_filter_by_region(self, api_client):
        created = api_client.post("/api/v1/tax-rates/", {"name": "Texas Sales Tax", "rate": "8.25", "region": "tx"},
                                  format="json")
        assert created.status_code == 201
        assert created.json()["data"]["region"] == "TX"
        TaxRateFactory(region="CA")

        listed = api_client.get("/api/v1/tax-rates/", {"region": "TX"})

        assert [rate["display_name"] for rate in listed.json()["data"]] == ["Texas Sales Tax (8.25%)"]

    def test_deactivate_through_update(self, api_client):
        tax_rate = TaxRateFactory()

        response = api_client.patch(f"/api/v1/tax-rates/{tax_rate.pk}/", {"is_active": False}, format="json")

        assert response.json()["data"]["is_active"] is False
        assert api_client.get("/api/v1/tax-rates/").json()["data"] == []

    def test_invoice_created_with_tax_region(self, api_client):
        TaxRateFactory(name="Texas Sales Tax", rate=Decimal("8.25"), region="TX")
        payload = {**INVOICE_PAYLOAD, "tax_rate": "0", "tax_region": "TX"}

        response = api_client.post("/api/v1/invoices/", payload, format="json")

        assert response.status_code == 201
        assert response.json()["data"]["tax_amount"] == "16.50"

    def test_unknown_tax_region_is_400(self, api_client):
        payload = {**INVOICE_PAYLOAD, "tax_rate": "0", "tax_region": "ZZ"}

        response = api_client.post("/api/v1/invoices/", payload, format="json")

        assert response.status_code == 400
