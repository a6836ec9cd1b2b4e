"""
Payment Service - card payments and refunds through the payment gateway.

A payment row is always written locally before the gateway is called, so a
gateway failure can be recorded against it (status ``failed`` plus the
gateway's reason) before the error is re-raised to the caller.
"""

import logging
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Count, Sum
from django.utils import timezone

from ..calculators import ZERO, money
from ..exceptions import GatewayFailure, InvalidState, ValidationFailure
from ..models import BillingActivity, Invoice, Payment, Refund
from ..numbering import DocumentNumberAllocator
from ..repositories import ModelRepository
from ..types import CreatePaymentRequest, DateRange, Page, PaymentFilters
from .common import log_activity, resolve_actor

logger = logging.getLogger(__name__)

INTENT_STATUS_MAP = {
    "succeeded": Payment.Status.COMPLETED,
    "processing": Payment.Status.PROCESSING,
    "requires_payment_method": Payment.Status.PENDING,
    "requires_confirmation": Payment.Status.PENDING,
    "requires_action": Payment.Status.PENDING,
    "canceled": Payment.Status.CANCELLED,
}


# Payments whose money reached us, whatever was refunded afterwards.
SETTLED_STATUSES = (Payment.Status.COMPLETED, Payment.Status.PARTIALLY_REFUNDED, Payment.Status.REFUNDED)


def map_intent_status(status: Optional[str]) -> str:
    return INTENT_STATUS_MAP.get(status or "", Payment.Status.FAILED)


class PaymentService:
    def __init__(self, payments: Optional[ModelRepository] = None, refunds: Optional[ModelRepository] = None,
                 numbering: Optional[DocumentNumberAllocator] = None, gateway=None, invoice_service=None,
                 mailer=None, payment_methods=None):
        self.payments = payments or ModelRepository(Payment, lookup_field="payment_id", related=("invoice",))
        self.refunds = refunds or ModelRepository(Refund, lookup_field="refund_id")
        self.numbering = numbering or DocumentNumberAllocator()
        self.gateway = gateway
        self.invoice_service = invoice_service
        self.mailer = mailer
        self.payment_methods = payment_methods

    def _log(self, payment: Payment, actor, action: str, description: str = "", **metadata):
        log_activity(BillingActivity.DocumentType.PAYMENT, payment, actor, action, description, metadata)

    def _settle_invoice(self, payment: Payment, actor=None) -> Optional[Invoice]:
        """Apply the invoice's cumulative settled payments, net of refunds, to it."""
        if not payment.invoice_id:
            return None
        collected = self.payments.aggregate(
            {"invoice_id": payment.invoice_id, "status__in": SETTLED_STATUSES},
            total=Sum("amount"),
        )["total"] or ZERO
        refunded = self.refunds.aggregate(
            {"payment__invoice_id": payment.invoice_id, "status__in": [Refund.Status.COMPLETED, Refund.Status.PENDING]},
            total=Sum("amount"),
        )["total"] or ZERO
        paid = collected - refunded
        if paid <= 0:
            return None
        return self.invoice_service.mark_as_paid(payment.invoice_id, paid, paid_date=payment.payment_date, actor=actor)

    def _notify(self, payment: Payment):
        invoice = payment.invoice
        if not self.mailer or not invoice or not invoice.customer_email:
            return
        try:
            self.mailer.send_payment_confirmation(payment, invoice.customer_email)
        except GatewayFailure as exc:
            logger.warning(f"Payment confirmation for {payment.payment_id} could not be sent: {exc}")

    def _apply_status(self, payment: Payment, status: str, actor=None):
        previous = payment.status
        payment.status = status
        if status == Payment.Status.COMPLETED and not payment.payment_date:
            payment.payment_date = timezone.now()
        self.payments.save(payment)
        if status == Payment.Status.COMPLETED and previous != Payment.Status.COMPLETED:
            self._settle_invoice(payment, actor)
            self._notify(payment)

    def _saved_method(self, request: CreatePaymentRequest):
        """Gateway method and customer to charge, falling back to the customer's default saved method."""
        if request.payment_method_id or self.payment_methods is None:
            return request.payment_method_id, request.gateway_customer_id
        default = self.payment_methods.get_default_payment_method(request.customer_id)
        if default is None:
            return "", request.gateway_customer_id
        return default.gateway_payment_method_id, request.gateway_customer_id or default.gateway_customer_id

    # ------------------------------------------------------------------

    def process_payment(self, request: CreatePaymentRequest, actor=None) -> Payment:
        amount = money(request.amount)
        if amount <= 0:
            raise ValidationFailure({"amount": ["Payment amount must be greater than 0"]})

        invoice = None
        if request.invoice_id:
            invoice = self.invoice_service.get_invoice(request.invoice_id)
            if invoice.status in (Invoice.Status.CANCELLED, Invoice.Status.REFUNDED, Invoice.Status.PAID):
                raise InvalidState(f"Cannot take payment for {invoice.status} invoice")

        payment_method_id, gateway_customer_id = self._saved_method(request)
        actor = resolve_actor(actor)
        currency = (request.currency or (invoice.currency if invoice else settings.DEFAULT_CURRENCY)).upper()
        with transaction.atomic():
            payment = self.payments.insert(
                payment_id=self.numbering.payment_id(),
                invoice=invoice,
                customer_id=request.customer_id,
                amount=amount,
                currency=currency,
                status=Payment.Status.PENDING,
                payment_method=request.payment_method or Payment.Method.CARD,
                payment_method_id=payment_method_id,
                gateway_customer_id=gateway_customer_id,
                description=request.description,
                metadata=dict(request.metadata),
                created_by=actor,
                updated_by=actor,
            )
            self._log(payment, actor, "created", f"Payment of {amount} {currency} initiated")

        try:
            intent = self.gateway.create_payment_intent(
                amount,
                currency,
                customer=gateway_customer_id,
                payment_method=payment_method_id,
                description=request.description or (f"Invoice {invoice.invoice_number}" if invoice else ""),
                metadata={"payment_id": payment.payment_id, "invoice_number": invoice.invoice_number if invoice else ""},
                confirm=bool(payment_method_id),
                idempotency_key=payment.payment_id,
            )
        except GatewayFailure as exc:
            payment.status = Payment.Status.FAILED
            payment.failure_reason = exc.message
            self.payments.save(payment)
            self._log(payment, actor, "failed", exc.message, code=exc.code)
            logger.error(f"Payment {payment.payment_id} failed at gateway: {exc.message}")
            raise

        payment.gateway_payment_intent_id = intent.get("id", "")
        payment.transaction_id = intent.get("latest_charge") or ""
        status = map_intent_status(intent.get("status"))
        if status == Payment.Status.FAILED:
            error = intent.get("last_payment_error") or {}
            payment.failure_reason = error.get("message") or f"Gateway status {intent.get('status')}"

        with transaction.atomic():
            self._apply_status(payment, status, actor)
            self._log(payment, actor, "processed", f"Gateway status {intent.get('status')}", status=status)
        logger.info(f"Payment {payment.payment_id} processed with status {payment.status}")
        return payment

    def get_payment(self, identifier) -> Payment:
        return self.payments.get(identifier)

    def get_payment_by_intent(self, intent_id: str) -> Optional[Payment]:
        if not intent_id:
            return None
        return self.payments.find_one({"gateway_payment_intent_id": intent_id})

    def get_payments_by_invoice(self, invoice_id) -> List[Payment]:
        invoice = self.invoice_service.get_invoice(invoice_id)
        return self.payments.find({"invoice_id": invoice.pk}, ordering=["-created_at"])

    def list_payments(self, filters: Optional[PaymentFilters] = None) -> Page[Payment]:
        filters = filters or PaymentFilters()
        lookups = filters.to_lookups()
        items = self.payments.find(lookups, ordering=[filters.ordering], offset=filters.offset, limit=filters.page_size)
        return Page(items=items, total=self.payments.count(lookups), page=filters.page, page_size=filters.page_size)

    def refund_payment(self, identifier, amount=None, reason: Optional[str] = None, actor=None) -> Refund:
        actor = resolve_actor(actor)
        with transaction.atomic():
            payment = self.payments.get(identifier)
            # Lock the payment so concurrent refunds see each other's pending rows.
            payment = self.payments.queryset().select_for_update(of=("self",)).get(pk=payment.pk)
            if payment.status not in (Payment.Status.COMPLETED, Payment.Status.PARTIALLY_REFUNDED):
                raise InvalidState(f"Cannot refund payment in status '{payment.status}'")

            refundable = payment.refundable_amount
            amount = refundable if amount is None else money(amount)
            if amount <= 0:
                raise ValidationFailure({"amount": ["Refund amount must be greater than 0"]})
            if amount > refundable:
                raise InvalidState(f"Refund amount {amount} exceeds refundable amount {refundable}")

            refund = self.refunds.insert(
                refund_id=self.numbering.refund_id(),
                payment=payment,
                amount=amount,
                currency=payment.currency,
                reason=reason or "",
                status=Refund.Status.PENDING,
                created_by=actor,
            )

        try:
            result = self.gateway.create_refund(
                payment.gateway_payment_intent_id,
                amount,
                reason=reason or "",
                metadata={"payment_id": payment.payment_id, "refund_id": refund.refund_id},
                idempotency_key=refund.refund_id,
            )
        except GatewayFailure as exc:
            refund.status = Refund.Status.FAILED
            refund.failure_reason = exc.message
            self.refunds.save(refund)
            self._log(payment, actor, "refund_failed", exc.message, refund_id=refund.refund_id)
            logger.error(f"Refund {refund.refund_id} for payment {payment.payment_id} failed: {exc.message}")
            raise

        with transaction.atomic():
            refund.gateway_refund_id = result.get("id", "")
            if result.get("status") == "succeeded":
                refund.status = Refund.Status.COMPLETED
                refund.processed_date = timezone.now()
            self.refunds.save(refund)

            if payment.committed_refund_total >= payment.amount:
                payment.status = Payment.Status.REFUNDED
            else:
                payment.status = Payment.Status.PARTIALLY_REFUNDED
            payment.updated_by = actor or payment.updated_by
            self.payments.save(payment)

            if payment.invoice_id:
                self.invoice_service.record_refund(payment.invoice_id, amount, actor=actor)
            self._log(payment, actor, "refunded", f"Refund {refund.refund_id} of {amount}",
                      refund_id=refund.refund_id, amount=str(amount))

        logger.info(f"Refund {refund.refund_id} of {amount} issued for payment {payment.payment_id} ({refund.status})")
        return refund

    @transaction.atomic
    def cancel_payment(self, identifier, reason: str = "Payment cancelled by user", actor=None) -> Payment:
        payment = self.payments.get(identifier)
        if payment.status == Payment.Status.COMPLETED:
            raise InvalidState("Cannot cancel a completed payment, refund it instead")
        if payment.status in (Payment.Status.CANCELLED, Payment.Status.REFUNDED, Payment.Status.PARTIALLY_REFUNDED):
            raise InvalidState(f"Payment is already {payment.status}")

        if payment.gateway_payment_intent_id:
            try:
                self.gateway.cancel_payment_intent(payment.gateway_payment_intent_id)
            except GatewayFailure as exc:
                logger.warning(f"Gateway cancel for payment {payment.payment_id} failed: {exc.message}")

        payment.status = Payment.Status.CANCELLED
        payment.failure_reason = reason
        payment.updated_by = resolve_actor(actor) or payment.updated_by
        self.payments.save(payment)
        self._log(payment, actor, "cancelled", reason)
        logger.info(f"Payment {payment.payment_id} cancelled")
        return payment

    @transaction.atomic
    def update_payment_status(self, identifier, status: str, metadata: Optional[Dict[str, Any]] = None,
                              actor=None) -> Payment:
        if status not in Payment.Status.values:
            raise ValidationFailure({"status": [f"Unknown payment status '{status}'"]})

        payment = self.payments.get(identifier)
        if metadata:
            payment.metadata = {**payment.metadata, **metadata}
            if status == Payment.Status.FAILED and metadata.get("failure_reason"):
                payment.failure_reason = metadata["failure_reason"]
        previous = payment.status
        self._apply_status(payment, status, actor)
        self._log(payment, actor, "status_updated", f"{previous} -> {status}", previous=previous, status=status)
        logger.info(f"Payment {payment.payment_id} status {previous} -> {status}")
        return payment

    def get_payment_metrics(self, date_range: Optional[DateRange] = None) -> Dict[str, Any]:
        date_range = date_range or DateRange()
        lookups = date_range.lookups("created_at")
        by_status = {
            row["status"]: {"count": row["count"], "amount": row["amount"] or ZERO}
            for row in self.payments.aggregate(lookups, group_by=["status"], count=Count("id"), amount=Sum("amount"))
        }
        by_method = {
            row["payment_method"]: {"count": row["count"], "amount": row["amount"] or ZERO}
            for row in self.payments.aggregate(
                {**lookups, "status__in": SETTLED_STATUSES},
                group_by=["payment_method"],
                count=Count("id"),
                amount=Sum("amount"),
            )
        }
        refunded = self.refunds.aggregate(
            {"status": Refund.Status.COMPLETED, **lookups},
            total=Sum("amount"),
        )["total"] or ZERO
        settled = [by_status[s] for s in SETTLED_STATUSES if s in by_status]
        collected = sum((s["amount"] for s in settled), ZERO)
        settled_count = sum(s["count"] for s in settled)
        total_count = sum(s["count"] for s in by_status.values())

        return {
            "total_payments": total_count,
            "total_collected": collected,
            "total_refunded": refunded,
            "net_revenue": collected - refunded,
            "success_rate": round(settled_count / total_count * 100, 2) if total_count else 0.0,
            "average_payment": money(collected / settled_count) if settled_count else ZERO,
            "by_status": by_status,
            "by_method": by_method,
        }
