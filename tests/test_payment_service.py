from decimal import Decimal

import pytest

from billing.exceptions import GatewayFailure, InvalidState, ValidationFailure
from billing.models import Invoice, Payment, Refund
from billing.services.payment_service import map_intent_status
from billing.types import PaymentFilters
from tests.conftest import payment_request
from tests.factories import PaymentFactory


@pytest.fixture
def paid_payment(services, sent_invoice):
    return services.payments.process_payment(payment_request(invoice_id=sent_invoice.pk))


@pytest.mark.django_db
class TestProcessPayment:
    def test_successful_payment_settles_invoice(self, services, gateway, sent_invoice, transport):
        payment = services.payments.process_payment(payment_request(invoice_id=sent_invoice.pk))

        assert payment.status == Payment.Status.COMPLETED
        assert payment.payment_id.startswith("PAY-")
        assert payment.gateway_payment_intent_id.startswith("pi_")
        assert payment.transaction_id == "ch_1"
        assert payment.payment_date is not None

        invoice = Invoice.objects.get(pk=sent_invoice.pk)
        assert invoice.status == Invoice.Status.PAID
        assert invoice.remaining_balance == Decimal("0.00")
        assert transport.sent[-1]["subject"] == f"Payment Confirmation - Invoice {invoice.invoice_number}"

    def test_gateway_receives_amount_and_idempotency_key(self, services, gateway, sent_invoice):
        payment = services.payments.process_payment(payment_request(invoice_id=sent_invoice.invoice_number))

        name, args, kwargs = gateway.calls_to("create_payment_intent")[0]
        assert args == (Decimal("220.00"), "USD")
        assert kwargs["idempotency_key"] == payment.payment_id
        assert kwargs["confirm"] is True
        assert kwargs["metadata"]["invoice_number"] == sent_invoice.invoice_number

    def test_partial_payment(self, services, sent_invoice):
        services.payments.process_payment(payment_request(invoice_id=sent_invoice.pk, amount=Decimal("100")))

        invoice = Invoice.objects.get(pk=sent_invoice.pk)
        assert invoice.status == Invoice.Status.PARTIALLY_PAID
        assert invoice.remaining_balance == Decimal("120.00")

    def test_payments_accumulate_on_invoice(self, services, sent_invoice):
        services.payments.process_payment(payment_request(invoice_id=sent_invoice.pk, amount=Decimal("100")))
        services.payments.process_payment(payment_request(invoice_id=sent_invoice.pk, amount=Decimal("120")))

        invoice = Invoice.objects.get(pk=sent_invoice.pk)
        assert invoice.amount_paid == Decimal("220.00")
        assert invoice.status == Invoice.Status.PAID

    def test_pending_intent_leaves_invoice_unpaid(self, services, gateway, sent_invoice):
        gateway.intent_status = "requires_action"
        payment = services.payments.process_payment(payment_request(invoice_id=sent_invoice.pk))

        assert payment.status == Payment.Status.PENDING
        assert Invoice.objects.get(pk=sent_invoice.pk).status == Invoice.Status.SENT

    def test_gateway_failure_is_recorded(self, services, gateway):
        gateway.fail_with = GatewayFailure("Your card was declined.", code="card_declined", status_code=402)

        with pytest.raises(GatewayFailure):
            services.payments.process_payment(payment_request())

        payment = Payment.objects.get()
        assert payment.status == Payment.Status.FAILED
        assert payment.failure_reason == "Your card was declined."

    def test_non_positive_amount(self, services):
        with pytest.raises(ValidationFailure):
            services.payments.process_payment(payment_request(amount=Decimal("0")))

    def test_paid_invoice_rejects_payment(self, services, sent_invoice):
        services.invoices.mark_as_paid(sent_invoice.pk, Decimal("220"))
        with pytest.raises(InvalidState):
            services.payments.process_payment(payment_request(invoice_id=sent_invoice.pk))

    def test_confirmation_email_failure_does_not_fail_payment(self, services, transport, sent_invoice):
        transport.fail = True
        payment = services.payments.process_payment(payment_request(invoice_id=sent_invoice.pk))
        assert payment.status == Payment.Status.COMPLETED

    @pytest.mark.parametrize("intent_status,expected", [
        ("succeeded", Payment.Status.COMPLETED),
        ("processing", Payment.Status.PROCESSING),
        ("requires_payment_method", Payment.Status.PENDING),
        ("canceled", Payment.Status.CANCELLED),
        ("something_new", Payment.Status.FAILED),
    ])
    def test_map_intent_status(self, intent_status, expected):
        assert map_intent_status(intent_status) == expected


@pytest.mark.django_db
class TestRefunds:
    def test_partial_then_excessive_refund(self, services, gateway, paid_payment):
        refund = services.payments.refund_payment(paid_payment.pk, Decimal("100"), "requested_by_customer")

        assert refund.status == Refund.Status.COMPLETED
        assert refund.refund_id.startswith("REF-")
        paid_payment.refresh_from_db()
        assert paid_payment.status == Payment.Status.PARTIALLY_REFUNDED
        assert paid_payment.refundable_amount == Decimal("120.00")

        with pytest.raises(InvalidState, match="exceeds refundable amount"):
            services.payments.refund_payment(paid_payment.pk, Decimal("150"))
        assert len(gateway.calls_to("create_refund")) == 1

    def test_refund_updates_invoice_balance(self, services, paid_payment):
        services.payments.refund_payment(paid_payment.pk, Decimal("100"))

        invoice = Invoice.objects.get(pk=paid_payment.invoice_id)
        assert invoice.amount_paid == Decimal("120.00")
        assert invoice.status == Invoice.Status.PARTIALLY_PAID

    def test_full_refund_by_default(self, services, paid_payment):
        refund = services.payments.refund_payment(paid_payment.pk)

        assert refund.amount == Decimal("220.00")
        paid_payment.refresh_from_db()
        assert paid_payment.status == Payment.Status.REFUNDED
        assert Invoice.objects.get(pk=paid_payment.invoice_id).status == Invoice.Status.REFUNDED

    def test_refund_passes_amount_key_and_reason(self, services, gateway, paid_payment):
        refund = services.payments.refund_payment(paid_payment.pk, Decimal("10"), "duplicate")

        _, args, kwargs = gateway.calls_to("create_refund")[0]
        assert args == (paid_payment.gateway_payment_intent_id, Decimal("10.00"))
        assert kwargs["idempotency_key"] == refund.refund_id
        assert kwargs["reason"] == "duplicate"

    def test_pending_refund_counts_against_refundable(self, services, gateway, paid_payment):
        gateway.refund_status = "pending"
        refund = services.payments.refund_payment(paid_payment.pk, Decimal("200"))

        assert refund.status == Refund.Status.PENDING
        with pytest.raises(InvalidState):
            services.payments.refund_payment(paid_payment.pk, Decimal("50"))

    def test_gateway_refund_failure(self, services, gateway, paid_payment):
        gateway.fail_with = GatewayFailure("charge_already_refunded")

        with pytest.raises(GatewayFailure):
            services.payments.refund_payment(paid_payment.pk, Decimal("20"))

        refund = Refund.objects.get()
        assert refund.status == Refund.Status.FAILED
        paid_payment.refresh_from_db()
        assert paid_payment.status == Payment.Status.COMPLETED
        assert paid_payment.refundable_amount == Decimal("220.00")

    def test_pending_payment_cannot_be_refunded(self, services):
        payment = PaymentFactory(status=Payment.Status.PENDING)
        with pytest.raises(InvalidState):
            services.payments.refund_payment(payment.pk, Decimal("10"))

    def test_zero_refund(self, services, paid_payment):
        with pytest.raises(ValidationFailure):
            services.payments.refund_payment(paid_payment.pk, Decimal("0"))


@pytest.mark.django_db
class TestPaymentStatus:
    def test_cancel_pending_payment(self, services, gateway):
        payment = PaymentFactory(status=Payment.Status.PENDING)
        cancelled = services.payments.cancel_payment(payment.pk, "Customer changed mind")

        assert cancelled.status == Payment.Status.CANCELLED
        assert cancelled.failure_reason == "Customer changed mind"
        assert gateway.calls_to("cancel_payment_intent")[0][1] == (payment.gateway_payment_intent_id,)

    def test_cancel_survives_gateway_error(self, services, gateway):
        gateway.fail_cancel = True
        payment = PaymentFactory(status=Payment.Status.PROCESSING)
        assert services.payments.cancel_payment(payment.pk).status == Payment.Status.CANCELLED

    def test_completed_payment_cannot_be_cancelled(self, services):
        payment = PaymentFactory(status=Payment.Status.COMPLETED)
        with pytest.raises(InvalidState, match="refund"):
            services.payments.cancel_payment(payment.pk)

    def test_update_status_to_completed_settles_invoice(self, services, gateway, sent_invoice):
        gateway.intent_status = "processing"
        payment = services.payments.process_payment(payment_request(invoice_id=sent_invoice.pk))

        services.payments.update_payment_status(payment.pk, Payment.Status.COMPLETED)

        assert Invoice.objects.get(pk=sent_invoice.pk).status == Invoice.Status.PAID

    def test_update_status_to_failed_records_reason(self, services):
        payment = PaymentFactory(status=Payment.Status.PROCESSING)
        updated = services.payments.update_payment_status(
            payment.pk, Payment.Status.FAILED, {"failure_reason": "insufficient_funds"}
        )
        assert updated.failure_reason == "insufficient_funds"
        assert updated.metadata["failure_reason"] == "insufficient_funds"

    def test_unknown_status(self, services):
        payment = PaymentFactory()
        with pytest.raises(ValidationFailure):
            services.payments.update_payment_status(payment.pk, "teleported")


@pytest.mark.django_db
class TestPaymentQueries:
    def test_lookup_by_intent(self, services, paid_payment):
        assert services.payments.get_payment_by_intent(paid_payment.gateway_payment_intent_id) == paid_payment
        assert services.payments.get_payment_by_intent("") is None

    def test_payments_by_invoice(self, services, paid_payment):
        assert services.payments.get_payments_by_invoice(paid_payment.invoice.invoice_number) == [paid_payment]

    def test_list_filters(self, services):
        PaymentFactory(status=Payment.Status.COMPLETED, payment_method=Payment.Method.ACH)
        PaymentFactory(status=Payment.Status.FAILED)

        page = services.payments.list_payments(PaymentFilters(payment_method=Payment.Method.ACH))
        assert page.total == 1

    def test_metrics(self, services, paid_payment):
        PaymentFactory(status=Payment.Status.FAILED, amount=Decimal("50"))
        services.payments.refund_payment(paid_payment.pk, Decimal("20"))

        metrics = services.payments.get_payment_metrics()

        assert metrics["total_payments"] == 2
        assert metrics["total_collected"] == Decimal("220.00")
        assert metrics["total_refunded"] == Decimal("20.00")
        assert metrics["net_revenue"] == Decimal("200.00")
        assert metrics["success_rate"] == 50.0
        assert metrics["by_method"]["card"]["count"] == 1
