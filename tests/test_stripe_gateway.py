import json
import time
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from billing.exceptions import GatewayFailure, WebhookSignatureError
from billing.gateways.stripe import StripeGateway, encode_params, sign_payload, subscription_item

SECRET = "whsec_unit"


def response(status_code=200, payload=None):
    mock = MagicMock()
    mock.status_code = status_code
    mock.json.return_value = payload if payload is not None else {}
    return mock


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def gateway(session):
    return StripeGateway("sk_test_123", webhook_secret=SECRET, session=session)


class TestEncodeParams:
    def test_nested_dicts_and_lists(self):
        pairs = encode_params({
            "amount": 22000,
            "metadata": {"invoice_number": "INV-2026-0001"},
            "items": [{"price": "price_basic", "quantity": 2}],
            "expand": ["latest_invoice.payment_intent"],
            "confirm": True,
            "customer": None,
        })

        assert pairs == [
            ("amount", "22000"),
            ("metadata[invoice_number]", "INV-2026-0001"),
            ("items[0][price]", "price_basic"),
            ("items[0][quantity]", "2"),
            ("expand[0]", "latest_invoice.payment_intent"),
            ("confirm", "true"),
        ]


class TestStripeRequests:
    def test_create_payment_intent_posts_minor_units(self, gateway, session):
        session.request.return_value = response(payload={"id": "pi_1", "status": "succeeded"})

        result = gateway.create_payment_intent(
            Decimal("220.00"), "USD", customer="cus_1", payment_method="pm_1", confirm=True, idempotency_key="PAY-1"
        )

        assert result["id"] == "pi_1"
        method, url = session.request.call_args.args
        kwargs = session.request.call_args.kwargs
        assert method == "POST"
        assert url == "https://api.stripe.com/v1/payment_intents"
        assert ("amount", "22000") in kwargs["data"]
        assert ("currency", "usd") in kwargs["data"]
        assert ("confirm", "true") in kwargs["data"]
        assert kwargs["headers"]["Authorization"] == "Bearer sk_test_123"
        assert kwargs["headers"]["Idempotency-Key"] == "PAY-1"

    def test_get_requests_use_query_params(self, gateway, session):
        session.request.return_value = response(payload={"id": "price_1", "unit_amount": 500})

        gateway.retrieve_price("price_1")

        assert session.request.call_args.args == ("GET", "https://api.stripe.com/v1/prices/price_1")
        assert "params" in session.request.call_args.kwargs

    def test_refund_reason_outside_stripe_enum_goes_to_metadata(self, gateway, session):
        session.request.return_value = response(payload={"id": "re_1", "status": "succeeded"})

        gateway.create_refund("pi_1", Decimal("10.50"), reason="customer unhappy")

        data = session.request.call_args.kwargs["data"]
        assert ("amount", "1050") in data
        assert ("metadata[reason]", "customer unhappy") in data
        assert not any(key == "reason" for key, _ in data)

    def test_cancel_immediately_uses_delete(self, gateway, session):
        session.request.return_value = response(payload={"id": "sub_1", "status": "canceled"})

        gateway.cancel_subscription("sub_1", immediately=True)

        assert session.request.call_args.args[0] == "DELETE"

    def test_cancel_at_period_end(self, gateway, session):
        session.request.return_value = response(payload={"id": "sub_1"})

        gateway.cancel_subscription("sub_1")

        assert ("cancel_at_period_end", "true") in session.request.call_args.kwargs["data"]

    def test_plan_change_targets_existing_item(self, gateway, session):
        current = {"id": "sub_1", "items": {"data": [{"id": "si_9", "price": {"id": "price_basic"}}]}}
        session.request.side_effect = [response(payload=current), response(payload={"id": "sub_1"})]

        gateway.update_subscription("sub_1", price_id="price_pro")

        data = session.request.call_args.kwargs["data"]
        assert ("items[0][id]", "si_9") in data
        assert ("items[0][price]", "price_pro") in data

    def test_attach_payment_method(self, gateway, session):
        session.request.return_value = response(payload={"id": "pm_1", "customer": "cus_1"})

        gateway.attach_payment_method("pm_1", "cus_1")

        assert session.request.call_args.args == ("POST", "https://api.stripe.com/v1/payment_methods/pm_1/attach")
        assert session.request.call_args.kwargs["data"] == [("customer", "cus_1")]
        assert ("proration_behavior", "create_prorations") in data

    def test_error_response_raises_gateway_failure(self, gateway, session):
        session.request.return_value = response(402, {
            "error": {"type": "card_error", "code": "card_declined", "decline_code": "insufficient_funds",
                      "message": "Your card has insufficient funds."}
        })

        with pytest.raises(GatewayFailure) as exc:
            gateway.create_payment_intent(Decimal("5"), "usd")

        assert exc.value.message == "Your card has insufficient funds."
        assert exc.value.code == "insufficient_funds"
        assert exc.value.status_code == 402

    def test_connection_error(self, gateway, session):
        session.request.side_effect = requests.exceptions.ConnectionError("boom")

        with pytest.raises(GatewayFailure) as exc:
            gateway.retrieve_subscription("sub_1")
        assert exc.value.code == "connection_error"

    def test_non_json_response(self, gateway, session):
        bad = response(502)
        bad.json.side_effect = ValueError("no json")
        session.request.return_value = bad

        with pytest.raises(GatewayFailure, match="Invalid response format"):
            gateway.retrieve_subscription("sub_1")

    def test_unconfigured_gateway(self, session):
        gateway = StripeGateway("", session=session)

        with pytest.raises(GatewayFailure) as exc:
            gateway.retrieve_price("price_1")
        assert exc.value.code == "not_configured"
        session.request.assert_not_called()


class TestWebhookSignatures:
    payload = json.dumps({"id": "evt_1", "type": "payment_intent.succeeded"})

    def test_valid_signature(self, gateway):
        event = gateway.construct_webhook_event(self.payload.encode(), sign_payload(self.payload, SECRET))
        assert event["id"] == "evt_1"

    def test_wrong_secret(self, gateway):
        with pytest.raises(WebhookSignatureError):
            gateway.construct_webhook_event(self.payload.encode(), sign_payload(self.payload, "whsec_other"))

    def test_tampered_payload(self, gateway):
        header = sign_payload(self.payload, SECRET)
        with pytest.raises(WebhookSignatureError):
            gateway.construct_webhook_event(self.payload.replace("evt_1", "evt_2").encode(), header)

    def test_stale_timestamp(self, gateway):
        header = sign_payload(self.payload, SECRET, timestamp=int(time.time()) - 3600)
        with pytest.raises(WebhookSignatureError, match="tolerance"):
            gateway.construct_webhook_event(self.payload.encode(), header)

    def test_malformed_header(self, gateway):
        with pytest.raises(WebhookSignatureError, match="Malformed"):
            gateway.construct_webhook_event(self.payload.encode(), "garbage")

    def test_missing_webhook_secret(self, session):
        gateway = StripeGateway("sk_test_123", session=session)
        with pytest.raises(WebhookSignatureError):
            gateway.construct_webhook_event(self.payload.encode(), sign_payload(self.payload, SECRET))

    def test_non_utf8_body_with_forged_signature(self, gateway):
        with pytest.raises(WebhookSignatureError, match="No signatures"):
            gateway.construct_webhook_event(b"\xff\xfe{}", "t=1,v1=abc")

    def test_signed_non_utf8_body(self, gateway):
        body = b"\xff\xfe{}"
        with pytest.raises(WebhookSignatureError, match="not valid JSON"):
            gateway.construct_webhook_event(body, sign_payload(body, SECRET))


def test_subscription_item_handles_missing_items():
    assert subscription_item({}) == {}
    assert subscription_item({"items": {"data": [{"id": "si_1"}]}}) == {"id": "si_1"}
