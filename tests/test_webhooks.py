import json

import pytest
from django.urls import reverse
from rest_framework.test import APIClient

from billing.gateways.stripe import sign_payload
from billing.models import Invoice, Payment, PaymentMethod, ProcessedWebhook, Subscription
from billing.types import CreateSubscriptionRequest
from tests.conftest import WEBHOOK_SECRET, payment_request, remote_card


def event(event_id, event_type, obj):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


@pytest.fixture
def pending_payment(services, gateway, sent_invoice):
    gateway.intent_status = "processing"
    return services.payments.process_payment(payment_request(invoice_id=sent_invoice.pk))


@pytest.mark.django_db
class TestWebhookService:
    def test_payment_succeeded_completes_payment(self, services, pending_payment):
        handled = services.webhooks.handle_event(
            event("evt_1", "payment_intent.succeeded", {"id": pending_payment.gateway_payment_intent_id})
        )

        assert handled is True
        pending_payment.refresh_from_db()
        assert pending_payment.status == Payment.Status.COMPLETED
        assert Invoice.objects.get(pk=pending_payment.invoice_id).status == Invoice.Status.PAID
        assert ProcessedWebhook.objects.filter(event_id="evt_1").exists()

    def test_duplicate_event_is_skipped(self, services, pending_payment):
        payload = event("evt_1", "payment_intent.succeeded", {"id": pending_payment.gateway_payment_intent_id})
        assert services.webhooks.handle_event(payload) is True
        assert services.webhooks.handle_event(payload) is False
        assert ProcessedWebhook.objects.count() == 1

    def test_payment_failed_records_reason(self, services, pending_payment):
        services.webhooks.handle_event(event("evt_2", "payment_intent.payment_failed", {
            "id": pending_payment.gateway_payment_intent_id,
            "last_payment_error": {"message": "Your card was declined."},
        }))

        pending_payment.refresh_from_db()
        assert pending_payment.status == Payment.Status.FAILED
        assert pending_payment.failure_reason == "Your card was declined."

    def test_payment_canceled(self, services, pending_payment):
        services.webhooks.handle_event(
            event("evt_3", "payment_intent.canceled", {"id": pending_payment.gateway_payment_intent_id})
        )
        pending_payment.refresh_from_db()
        assert pending_payment.status == Payment.Status.CANCELLED

    def test_unknown_intent_is_acknowledged(self, services):
        assert services.webhooks.handle_event(event("evt_4", "payment_intent.succeeded", {"id": "pi_nobody"})) is True

    def test_unhandled_event_type_is_not_recorded(self, services):
        assert services.webhooks.handle_event(event("evt_5", "charge.dispute.created", {"id": "dp_1"})) is False
        assert ProcessedWebhook.objects.count() == 0

    def test_subscription_updated_mirrors_state(self, services, gateway):
        subscription = services.subscriptions.create_subscription(
            CreateSubscriptionRequest(customer_id="cust-1", gateway_customer_id="cus_123", plan_id="price_basic")
        )
        remote = dict(gateway.subscriptions[subscription.gateway_subscription_id], status="past_due")

        services.webhooks.handle_event(event("evt_6", "customer.subscription.updated", remote))

        subscription.refresh_from_db()
        assert subscription.status == Subscription.Status.PAST_DUE

    def test_payment_method_updated_refreshes_card(self, services):
        method = services.payment_methods.save_payment_method("cust-1", "pm_card_visa", "cus_123")

        services.webhooks.handle_event(event("evt_7", "payment_method.updated",
                                             remote_card("pm_card_visa", exp_month=3, exp_year=2031)))

        method.refresh_from_db()
        assert (method.card_exp_month, method.card_exp_year) == (3, 2031)

    def test_payment_method_detached_removes_local_copy(self, services):
        services.payment_methods.save_payment_method("cust-1", "pm_card_visa", "cus_123")
        backup = services.payment_methods.save_payment_method("cust-1", "pm_card_mastercard", "cus_123")

        handled = services.webhooks.handle_event(event("evt_8", "payment_method.detached", remote_card("pm_card_visa")))

        assert handled is True
        assert not PaymentMethod.objects.filter(gateway_payment_method_id="pm_card_visa").exists()
        backup.refresh_from_db()
        assert backup.is_default is True


@pytest.mark.django_db
class TestStripeWebhookEndpoint:
    url = "/api/v1/payments/webhook/"

    def post(self, client, body, signature=None):
        headers = {"HTTP_STRIPE_SIGNATURE": signature} if signature else {}
        return client.post(self.url, data=body, content_type="application/json", **headers)

    def test_route_name(self):
        assert reverse("stripe-webhook") == self.url

    def test_signed_event_is_processed(self, api_client, pending_payment):
        body = json.dumps(event("evt_10", "payment_intent.succeeded", {"id": pending_payment.gateway_payment_intent_id}))

        response = self.post(APIClient(), body, sign_payload(body, WEBHOOK_SECRET))

        assert response.status_code == 200
        assert response.json()["data"] == {"received": True, "handled": True}
        pending_payment.refresh_from_db()
        assert pending_payment.status == Payment.Status.COMPLETED

    def test_missing_signature(self, api_client):
        response = self.post(APIClient(), json.dumps(event("evt_11", "payment_intent.succeeded", {})))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "WEBHOOK_SIGNATURE_INVALID"

    def test_bad_signature(self, api_client):
        body = json.dumps(event("evt_12", "payment_intent.succeeded", {}))
        response = self.post(APIClient(), body, sign_payload(body, "whsec_wrong"))

        assert response.status_code == 400
        assert ProcessedWebhook.objects.count() == 0

    def test_undecodable_body(self, api_client):
        response = self.post(APIClient(), b"\xff\xfe{}", "t=1,v1=abc")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "WEBHOOK_SIGNATURE_INVALID"

    def test_handler_errors_still_acknowledged(self, api_client, services, monkeypatch):
        def explode(_event):
            raise RuntimeError("database went away")

        monkeypatch.setattr(services.webhooks, "handle_event", explode)
        body = json.dumps(event("evt_13", "payment_intent.succeeded", {}))

        response = self.post(APIClient(), body, sign_payload(body, WEBHOOK_SECRET))

        assert response.status_code == 200
        assert response.json()["data"]["handled"] is False
