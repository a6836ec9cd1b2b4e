import logging
import os
from typing import Any, Optional, Type

from django.apps import apps
from django.http import FileResponse
from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema, extend_schema_view
from rest_framework import serializers, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.request import Request
from rest_framework.response import Response
from rest_framework.views import APIView

from ..exceptions import BillingError, NotFound, WebhookSignatureError
from ..types import DateRange
from .response import APIResponse
from .serializers import (
    ConvertQuoteSerializer,
    DateRangeQuerySerializer,
    DuplicateInvoiceSerializer,
    ExtendQuoteSerializer,
    InvoiceCreateSerializer,
    InvoiceDetailSerializer,
    InvoiceListQuerySerializer,
    InvoiceListSerializer,
    InvoiceUpdateSerializer,
    LineItemInputSerializer,
    LineItemUpdateSerializer,
    MarkPaidSerializer,
    PaymentCreateSerializer,
    PaymentListQuerySerializer,
    PaymentMethodCreateSerializer,
    PaymentMethodSerializer,
    PaymentSerializer,
    PaymentStatusSerializer,
    ProrationQuerySerializer,
    ProrationSerializer,
    QuoteCreateSerializer,
    QuoteDetailSerializer,
    QuoteListQuerySerializer,
    QuoteListSerializer,
    QuoteUpdateSerializer,
    ReasonSerializer,
    RefundCreateSerializer,
    RefundSerializer,
    ReminderSerializer,
    SendDocumentSerializer,
    ShareLinkSerializer,
    SubscriptionCancelSerializer,
    SubscriptionCreateSerializer,
    SubscriptionListQuerySerializer,
    SubscriptionPauseSerializer,
    SubscriptionSerializer,
    SubscriptionUpdateSerializer,
    TaxRateCreateSerializer,
    TaxRateSerializer,
    TaxRateUpdateSerializer,
)

logger = logging.getLogger(__name__)


def _path_param(description: str) -> OpenApiParameter:
    return OpenApiParameter(
        name="pk",
        description=description,
        required=True,
        type=OpenApiTypes.STR,
        location=OpenApiParameter.PATH,
    )


INVOICE_ID_PARAM = _path_param("Invoice id or number (INV-2026-0001)")
QUOTE_ID_PARAM = _path_param("Quote id or number (QUO-2026-0001)")
PAYMENT_ID_PARAM = _path_param("Payment id or number (PAY-202610-0001)")
SUBSCRIPTION_ID_PARAM = _path_param("Subscription id or number (SUB-2026-0001)")
DATE_RANGE_PARAMS = [
    OpenApiParameter(name="start", description="Range start (ISO 8601)", required=False, type=OpenApiTypes.DATETIME),
    OpenApiParameter(name="end", description="Range end (ISO 8601)", required=False, type=OpenApiTypes.DATETIME),
]
DAYS_PARAM = OpenApiParameter(name="days", description="Look-ahead window in days (default 7)", required=False, type=int)


class BillingViewSet(viewsets.ViewSet):
    """Base viewset: resolves services from the billing app config and validates input."""

    permission_classes = [IsAuthenticated]
    lookup_value_regex = r"[^/]+"

    @property
    def services(self):
        return apps.get_app_config("billing").services

    @staticmethod
    def validated(serializer_class: Type[serializers.Serializer], data: Any, **kwargs) -> serializers.Serializer:
        serializer = serializer_class(data=data, **kwargs)
        serializer.is_valid(raise_exception=True)
        return serializer

    def date_range(self, request: Request) -> DateRange:
        params = self.validated(DateRangeQuerySerializer, request.query_params).validated_data
        return DateRange(start=params.get("start"), end=params.get("end"))

    @staticmethod
    def days(request: Request, default: int = 7) -> int:
        try:
            return max(int(request.query_params.get("days", default)), 0)
        except ValueError:
            raise serializers.ValidationError({"days": ["A valid integer is required."]})


# ------------------------------
# Invoice ViewSet
# ------------------------------
@extend_schema_view(
    list=extend_schema(summary="List invoices", parameters=[InvoiceListQuerySerializer],
                       responses={200: InvoiceListSerializer(many=True)}),
    create=extend_schema(summary="Create invoice", request=InvoiceCreateSerializer,
                         responses={201: InvoiceDetailSerializer}),
    retrieve=extend_schema(summary="Get invoice details", parameters=[INVOICE_ID_PARAM],
                           responses={200: InvoiceDetailSerializer}),
    partial_update=extend_schema(summary="Update invoice", request=InvoiceUpdateSerializer,
                                 parameters=[INVOICE_ID_PARAM], responses={200: InvoiceDetailSerializer}),
)
class InvoiceViewSet(BillingViewSet):
    def list(self, request: Request) -> Response:
        filters = self.validated(InvoiceListQuerySerializer, request.query_params).to_filters()
        page = self.services.invoices.list_invoices(filters)
        return APIResponse.paginated(page, InvoiceListSerializer(page.items, many=True).data)

    def create(self, request: Request) -> Response:
        payload = self.validated(InvoiceCreateSerializer, request.data)
        invoice = self.services.invoices.create_invoice(payload.to_request(), actor=request.user)
        return APIResponse.created(InvoiceDetailSerializer(invoice).data, "Invoice created.")

    def retrieve(self, request: Request, pk: Optional[str] = None) -> Response:
        invoice = self.services.invoices.get_invoice(pk)
        return APIResponse.success(InvoiceDetailSerializer(invoice).data)

    def partial_update(self, request: Request, pk: Optional[str] = None) -> Response:
        changes = self.validated(InvoiceUpdateSerializer, request.data).to_changes()
        invoice = self.services.invoices.update_invoice(pk, changes, actor=request.user)
        return APIResponse.success(InvoiceDetailSerializer(invoice).data, "Invoice updated.")

    @extend_schema(summary="Send invoice by email", request=SendDocumentSerializer,
                   responses={200: InvoiceDetailSerializer}, parameters=[INVOICE_ID_PARAM])
    @action(detail=True, methods=["post"])
    def send(self, request: Request, pk: Optional[str] = None) -> Response:
        data = self.validated(SendDocumentSerializer, request.data).validated_data
        invoice = self.services.invoices.send_invoice(pk, data.get("recipient_email") or None, actor=request.user)
        return APIResponse.success(InvoiceDetailSerializer(invoice).data, "Invoice sent.")

    @extend_schema(summary="Mark invoice as viewed", request=None,
                   responses={200: InvoiceDetailSerializer}, parameters=[INVOICE_ID_PARAM])
    @action(detail=True, methods=["post"], url_path="view")
    def mark_viewed(self, request: Request, pk: Optional[str] = None) -> Response:
        invoice = self.services.invoices.mark_as_viewed(pk)
        return APIResponse.success(InvoiceDetailSerializer(invoice).data, "Invoice marked as viewed.")

    @extend_schema(summary="Record a payment amount", request=MarkPaidSerializer,
                   responses={200: InvoiceDetailSerializer}, parameters=[INVOICE_ID_PARAM])
    @action(detail=True, methods=["post"], url_path="mark-paid")
    def mark_paid(self, request: Request, pk: Optional[str] = None) -> Response:
        data = self.validated(MarkPaidSerializer, request.data).validated_data
        invoice = self.services.invoices.mark_as_paid(pk, data["amount"], data.get("paid_date"), actor=request.user)
        return APIResponse.success(InvoiceDetailSerializer(invoice).data, f"Invoice marked {invoice.status}.")

    @extend_schema(summary="Cancel invoice", request=ReasonSerializer,
                   responses={200: InvoiceDetailSerializer}, parameters=[INVOICE_ID_PARAM])
    @action(detail=True, methods=["post"])
    def cancel(self, request: Request, pk: Optional[str] = None) -> Response:
        data = self.validated(ReasonSerializer, request.data).validated_data
        invoice = self.services.invoices.cancel_invoice(pk, data.get("reason") or None, actor=request.user)
        return APIResponse.success(InvoiceDetailSerializer(invoice).data, "Invoice cancelled.")

    @extend_schema(summary="Send a payment reminder", request=ReminderSerializer,
                   responses={200: InvoiceDetailSerializer}, parameters=[INVOICE_ID_PARAM])
    @action(detail=True, methods=["post"])
    def remind(self, request: Request, pk: Optional[str] = None) -> Response:
        data = self.validated(ReminderSerializer, request.data).validated_data
        invoice = self.services.invoices.send_reminder(
            pk, data["reminder_type"], custom_email=data.get("custom_email") or None, actor=request.user
        )
        return APIResponse.success(InvoiceDetailSerializer(invoice).data, "Reminder sent.")

    @extend_schema(summary="Duplicate invoice", request=DuplicateInvoiceSerializer,
                   responses={201: InvoiceDetailSerializer}, parameters=[INVOICE_ID_PARAM])
    @action(detail=True, methods=["post"])
    def duplicate(self, request: Request, pk: Optional[str] = None) -> Response:
        data = self.validated(DuplicateInvoiceSerializer, request.data).validated_data
        invoice = self.services.invoices.duplicate_invoice(pk, dict(data), actor=request.user)
        return APIResponse.created(InvoiceDetailSerializer(invoice).data, "Invoice duplicated.")

    @extend_schema(summary="Download invoice PDF", request=None,
                   responses={200: OpenApiTypes.BINARY}, parameters=[INVOICE_ID_PARAM])
    @action(detail=True, methods=["get"])
    def pdf(self, request: Request, pk: Optional[str] = None) -> FileResponse:
        invoice = self.services.invoices.generate_pdf(pk)
        return _pdf_response(invoice.pdf_path, f"invoice-{invoice.invoice_number}.pdf")

    @extend_schema(summary="Customer portal link", request=ShareLinkSerializer,
                   responses={200: OpenApiTypes.OBJECT}, parameters=[INVOICE_ID_PARAM])
    @action(detail=True, methods=["post"], url_path="portal-link")
    def portal_link(self, request: Request, pk: Optional[str] = None) -> Response:
        data = self.validated(ShareLinkSerializer, request.data).validated_data
        return APIResponse.success(self.services.portal.share_invoice_link(pk, regenerate=data["regenerate"]))

    @extend_schema(summary="List overdue invoices",
                   parameters=[OpenApiParameter(name="customer_id", required=False, type=str)],
                   responses={200: InvoiceListSerializer(many=True)})
    @action(detail=False, methods=["get"])
    def overdue(self, request: Request) -> Response:
        invoices = self.services.invoices.get_overdue_invoices(request.query_params.get("customer_id") or None)
        return APIResponse.success(InvoiceListSerializer(invoices, many=True).data)

    @extend_schema(summary="Financial summary", parameters=DATE_RANGE_PARAMS, responses={200: OpenApiTypes.OBJECT})
    @action(detail=False, methods=["get"])
    def summary(self, request: Request) -> Response:
        return APIResponse.success(self.services.invoices.get_financial_summary(self.date_range(request)))

    @extend_schema(summary="Daily revenue report", parameters=DATE_RANGE_PARAMS, responses={200: OpenApiTypes.OBJECT})
    @action(detail=False, methods=["get"])
    def revenue(self, request: Request) -> Response:
        return APIResponse.success(self.services.invoices.get_revenue_report(self.date_range(request)))


# ------------------------------
# Quote ViewSet
# ------------------------------
@extend_schema_view(
    list=extend_schema(summary="List quotes", parameters=[QuoteListQuerySerializer],
                       responses={200: QuoteListSerializer(many=True)}),
    create=extend_schema(summary="Create quote", request=QuoteCreateSerializer,
                         responses={201: QuoteDetailSerializer}),
    retrieve=extend_schema(summary="Get quote details", parameters=[QUOTE_ID_PARAM],
                           responses={200: QuoteDetailSerializer}),
    partial_update=extend_schema(summary="Update quote", request=QuoteUpdateSerializer,
                                 parameters=[QUOTE_ID_PARAM], responses={200: QuoteDetailSerializer}),
)
class QuoteViewSet(BillingViewSet):
    def list(self, request: Request) -> Response:
        filters = self.validated(QuoteListQuerySerializer, request.query_params).to_filters()
        page = self.services.quotes.list_quotes(filters)
        return APIResponse.paginated(page, QuoteListSerializer(page.items, many=True).data)

    def create(self, request: Request) -> Response:
        payload = self.validated(QuoteCreateSerializer, request.data)
        quote = self.services.quotes.create_quote(payload.to_request(), actor=request.user)
        return APIResponse.created(QuoteDetailSerializer(quote).data, "Quote created.")

    def retrieve(self, request: Request, pk: Optional[str] = None) -> Response:
        return APIResponse.success(QuoteDetailSerializer(self.services.quotes.get_quote(pk)).data)

    def partial_update(self, request: Request, pk: Optional[str] = None) -> Response:
        changes = self.validated(QuoteUpdateSerializer, request.data).to_changes()
        quote = self.services.quotes.update_quote(pk, changes, actor=request.user)
        return APIResponse.success(QuoteDetailSerializer(quote).data, "Quote updated.")

    @extend_schema(summary="Send quote by email", request=SendDocumentSerializer,
                   responses={200: QuoteDetailSerializer}, parameters=[QUOTE_ID_PARAM])
    @action(detail=True, methods=["post"])
    def send(self, request: Request, pk: Optional[str] = None) -> Response:
        data = self.validated(SendDocumentSerializer, request.data).validated_data
        quote = self.services.quotes.send_quote(pk, data.get("recipient_email") or None, actor=request.user)
        return APIResponse.success(QuoteDetailSerializer(quote).data, "Quote sent.")

    @extend_schema(summary="Accept quote", request=None, responses={200: QuoteDetailSerializer},
                   parameters=[QUOTE_ID_PARAM])
    @action(detail=True, methods=["post"])
    def accept(self, request: Request, pk: Optional[str] = None) -> Response:
        quote = self.services.quotes.accept_quote(pk, actor=request.user)
        return APIResponse.success(QuoteDetailSerializer(quote).data, "Quote accepted.")

    @extend_schema(summary="Reject quote", request=ReasonSerializer, responses={200: QuoteDetailSerializer},
                   parameters=[QUOTE_ID_PARAM])
    @action(detail=True, methods=["post"])
    def reject(self, request: Request, pk: Optional[str] = None) -> Response:
        data = self.validated(ReasonSerializer, request.data).validated_data
        quote = self.services.quotes.reject_quote(pk, data.get("reason") or None, actor=request.user)
        return APIResponse.success(QuoteDetailSerializer(quote).data, "Quote rejected.")

    @extend_schema(summary="Convert accepted quote to invoice", request=ConvertQuoteSerializer,
                   responses={201: InvoiceDetailSerializer}, parameters=[QUOTE_ID_PARAM])
    @action(detail=True, methods=["post"])
    def convert(self, request: Request, pk: Optional[str] = None) -> Response:
        data = self.validated(ConvertQuoteSerializer, request.data).validated_data
        invoice = self.services.quotes.convert_to_invoice(pk, data.get("due_date"), actor=request.user)
        return APIResponse.created(InvoiceDetailSerializer(invoice).data, "Quote converted to invoice.")

    @extend_schema(summary="Duplicate quote", request=None, responses={201: QuoteDetailSerializer},
                   parameters=[QUOTE_ID_PARAM])
    @action(detail=True, methods=["post"])
    def duplicate(self, request: Request, pk: Optional[str] = None) -> Response:
        quote = self.services.quotes.duplicate_quote(pk, actor=request.user)
        return APIResponse.created(QuoteDetailSerializer(quote).data, "Quote duplicated.")

    @extend_schema(summary="Extend quote expiration", request=ExtendQuoteSerializer,
                   responses={200: QuoteDetailSerializer}, parameters=[QUOTE_ID_PARAM])
    @action(detail=True, methods=["post"])
    def extend(self, request: Request, pk: Optional[str] = None) -> Response:
        data = self.validated(ExtendQuoteSerializer, request.data).validated_data
        quote = self.services.quotes.extend_expiration_date(pk, data["expiration_date"], actor=request.user)
        return APIResponse.success(QuoteDetailSerializer(quote).data, "Quote expiration extended.")

    @extend_schema(summary="Download quote PDF", request=None,
                   responses={200: OpenApiTypes.BINARY}, parameters=[QUOTE_ID_PARAM])
    @action(detail=True, methods=["get"])
    def pdf(self, request: Request, pk: Optional[str] = None) -> FileResponse:
        quote = self.services.quotes.generate_pdf(pk)
        return _pdf_response(quote.pdf_path, f"quote-{quote.quote_number}.pdf")

    @extend_schema(summary="Customer portal link", request=ShareLinkSerializer,
                   responses={200: OpenApiTypes.OBJECT}, parameters=[QUOTE_ID_PARAM])
    @action(detail=True, methods=["post"], url_path="portal-link")
    def portal_link(self, request: Request, pk: Optional[str] = None) -> Response:
        data = self.validated(ShareLinkSerializer, request.data).validated_data
        return APIResponse.success(self.services.portal.share_quote_link(pk, regenerate=data["regenerate"]))

    @extend_schema(summary="Add line item", request=LineItemInputSerializer,
                   responses={201: QuoteDetailSerializer}, parameters=[QUOTE_ID_PARAM])
    @action(detail=True, methods=["post"], url_path="line-items")
    def add_line_item(self, request: Request, pk: Optional[str] = None) -> Response:
        item = self.validated(LineItemInputSerializer, request.data).to_input()
        quote = self.services.quotes.add_line_item(pk, item, actor=request.user)
        return APIResponse.created(QuoteDetailSerializer(quote).data, "Line item added.")

    @extend_schema(methods=["PATCH"], summary="Update line item", request=LineItemUpdateSerializer,
                   responses={200: QuoteDetailSerializer}, parameters=[QUOTE_ID_PARAM])
    @extend_schema(methods=["DELETE"], summary="Remove line item", request=None,
                   responses={200: QuoteDetailSerializer}, parameters=[QUOTE_ID_PARAM])
    @action(detail=True, methods=["patch", "delete"], url_path=r"line-items/(?P<line_id>\d+)")
    def line_item(self, request: Request, pk: Optional[str] = None, line_id: Optional[str] = None) -> Response:
        if request.method == "DELETE":
            quote = self.services.quotes.remove_line_item(pk, int(line_id), actor=request.user)
            return APIResponse.success(QuoteDetailSerializer(quote).data, "Line item removed.")
        changes = self.validated(LineItemUpdateSerializer, request.data).validated_data
        quote = self.services.quotes.update_line_item(pk, int(line_id), dict(changes), actor=request.user)
        return APIResponse.success(QuoteDetailSerializer(quote).data, "Line item updated.")

    @extend_schema(summary="Quotes expiring soon", parameters=[DAYS_PARAM],
                   responses={200: QuoteListSerializer(many=True)})
    @action(detail=False, methods=["get"])
    def expiring(self, request: Request) -> Response:
        quotes = self.services.quotes.get_expiring_quotes(self.days(request))
        return APIResponse.success(QuoteListSerializer(quotes, many=True).data)

    @extend_schema(summary="Quote metrics", parameters=DATE_RANGE_PARAMS, responses={200: OpenApiTypes.OBJECT})
    @action(detail=False, methods=["get"])
    def metrics(self, request: Request) -> Response:
        return APIResponse.success(self.services.quotes.get_quote_metrics(self.date_range(request)))


# ------------------------------
# Payment ViewSet
# ------------------------------
@extend_schema_view(
    list=extend_schema(summary="List payments", parameters=[PaymentListQuerySerializer],
                       responses={200: PaymentSerializer(many=True)}),
    create=extend_schema(summary="Process a payment", request=PaymentCreateSerializer,
                         responses={201: PaymentSerializer}),
    retrieve=extend_schema(summary="Get payment details", parameters=[PAYMENT_ID_PARAM],
                           responses={200: PaymentSerializer}),
)
class PaymentViewSet(BillingViewSet):
    def list(self, request: Request) -> Response:
        filters = self.validated(PaymentListQuerySerializer, request.query_params).to_filters()
        page = self.services.payments.list_payments(filters)
        return APIResponse.paginated(page, PaymentSerializer(page.items, many=True).data)

    def create(self, request: Request) -> Response:
        payload = self.validated(PaymentCreateSerializer, request.data)
        payment = self.services.payments.process_payment(payload.to_request(), actor=request.user)
        return APIResponse.created(PaymentSerializer(payment).data, f"Payment {payment.status}.")

    def retrieve(self, request: Request, pk: Optional[str] = None) -> Response:
        return APIResponse.success(PaymentSerializer(self.services.payments.get_payment(pk)).data)

    @extend_schema(summary="Refund payment", request=RefundCreateSerializer,
                   responses={201: RefundSerializer}, parameters=[PAYMENT_ID_PARAM])
    @action(detail=True, methods=["post"])
    def refund(self, request: Request, pk: Optional[str] = None) -> Response:
        data = self.validated(RefundCreateSerializer, request.data).validated_data
        refund = self.services.payments.refund_payment(
            pk, data.get("amount"), data.get("reason") or None, actor=request.user
        )
        return APIResponse.created(RefundSerializer(refund).data, "Refund issued.")

    @extend_schema(summary="Cancel payment", request=ReasonSerializer,
                   responses={200: PaymentSerializer}, parameters=[PAYMENT_ID_PARAM])
    @action(detail=True, methods=["post"])
    def cancel(self, request: Request, pk: Optional[str] = None) -> Response:
        data = self.validated(ReasonSerializer, request.data).validated_data
        payment = self.services.payments.cancel_payment(
            pk, data.get("reason") or "Payment cancelled by user", actor=request.user
        )
        return APIResponse.success(PaymentSerializer(payment).data, "Payment cancelled.")

    @extend_schema(summary="Override payment status", request=PaymentStatusSerializer,
                   responses={200: PaymentSerializer}, parameters=[PAYMENT_ID_PARAM])
    @action(detail=True, methods=["post"], url_path="status")
    def update_status(self, request: Request, pk: Optional[str] = None) -> Response:
        data = self.validated(PaymentStatusSerializer, request.data).validated_data
        payment = self.services.payments.update_payment_status(
            pk, data["status"], data.get("metadata") or None, actor=request.user
        )
        return APIResponse.success(PaymentSerializer(payment).data, "Payment status updated.")

    @extend_schema(summary="Payment metrics", parameters=DATE_RANGE_PARAMS, responses={200: OpenApiTypes.OBJECT})
    @action(detail=False, methods=["get"])
    def metrics(self, request: Request) -> Response:
        return APIResponse.success(self.services.payments.get_payment_metrics(self.date_range(request)))


# ------------------------------
# Subscription ViewSet
# ------------------------------
@extend_schema_view(
    list=extend_schema(summary="List subscriptions", parameters=[SubscriptionListQuerySerializer],
                       responses={200: SubscriptionSerializer(many=True)}),
    create=extend_schema(summary="Create subscription", request=SubscriptionCreateSerializer,
                         responses={201: SubscriptionSerializer}),
    retrieve=extend_schema(summary="Get subscription", parameters=[SUBSCRIPTION_ID_PARAM],
                           responses={200: SubscriptionSerializer}),
    partial_update=extend_schema(summary="Change plan, quantity or metadata", request=SubscriptionUpdateSerializer,
                                 parameters=[SUBSCRIPTION_ID_PARAM], responses={200: SubscriptionSerializer}),
)
class SubscriptionViewSet(BillingViewSet):
    def list(self, request: Request) -> Response:
        filters = self.validated(SubscriptionListQuerySerializer, request.query_params).to_filters()
        page = self.services.subscriptions.list_subscriptions(filters)
        return APIResponse.paginated(page, SubscriptionSerializer(page.items, many=True).data)

    def create(self, request: Request) -> Response:
        payload = self.validated(SubscriptionCreateSerializer, request.data)
        subscription = self.services.subscriptions.create_subscription(payload.to_request(), actor=request.user)
        return APIResponse.created(SubscriptionSerializer(subscription).data, "Subscription created.")

    def retrieve(self, request: Request, pk: Optional[str] = None) -> Response:
        return APIResponse.success(SubscriptionSerializer(self.services.subscriptions.get_subscription(pk)).data)

    def partial_update(self, request: Request, pk: Optional[str] = None) -> Response:
        data = self.validated(SubscriptionUpdateSerializer, request.data).validated_data
        subscription = self.services.subscriptions.update_subscription(pk, actor=request.user, **data)
        return APIResponse.success(SubscriptionSerializer(subscription).data, "Subscription updated.")

    @extend_schema(summary="Cancel subscription", request=SubscriptionCancelSerializer,
                   responses={200: SubscriptionSerializer}, parameters=[SUBSCRIPTION_ID_PARAM])
    @action(detail=True, methods=["post"])
    def cancel(self, request: Request, pk: Optional[str] = None) -> Response:
        data = self.validated(SubscriptionCancelSerializer, request.data).validated_data
        subscription = self.services.subscriptions.cancel_subscription(
            pk, immediately=data["immediately"], reason=data.get("reason") or None, actor=request.user
        )
        return APIResponse.success(SubscriptionSerializer(subscription).data, "Subscription cancelled.")

    @extend_schema(summary="Pause subscription", request=SubscriptionPauseSerializer,
                   responses={200: SubscriptionSerializer}, parameters=[SUBSCRIPTION_ID_PARAM])
    @action(detail=True, methods=["post"])
    def pause(self, request: Request, pk: Optional[str] = None) -> Response:
        data = self.validated(SubscriptionPauseSerializer, request.data).validated_data
        subscription = self.services.subscriptions.pause_subscription(pk, data.get("resume_at"), actor=request.user)
        return APIResponse.success(SubscriptionSerializer(subscription).data, "Subscription paused.")

    @extend_schema(summary="Resume subscription", request=None,
                   responses={200: SubscriptionSerializer}, parameters=[SUBSCRIPTION_ID_PARAM])
    @action(detail=True, methods=["post"])
    def resume(self, request: Request, pk: Optional[str] = None) -> Response:
        subscription = self.services.subscriptions.resume_subscription(pk, actor=request.user)
        return APIResponse.success(SubscriptionSerializer(subscription).data, "Subscription resumed.")

    @extend_schema(summary="Sync subscription from gateway", request=None,
                   responses={200: SubscriptionSerializer}, parameters=[SUBSCRIPTION_ID_PARAM])
    @action(detail=True, methods=["post"])
    def sync(self, request: Request, pk: Optional[str] = None) -> Response:
        subscription = self.services.subscriptions.sync_with_gateway(pk)
        return APIResponse.success(SubscriptionSerializer(subscription).data, "Subscription synced.")

    @extend_schema(summary="Estimate plan change proration", parameters=[SUBSCRIPTION_ID_PARAM, ProrationQuerySerializer],
                   responses={200: ProrationSerializer})
    @action(detail=True, methods=["get"])
    def proration(self, request: Request, pk: Optional[str] = None) -> Response:
        params = self.validated(ProrationQuerySerializer, request.query_params).validated_data
        proration = self.services.subscriptions.calculate_proration(pk, params["new_plan_id"], params.get("change_date"))
        return APIResponse.success(
            ProrationSerializer(proration).data,
            "Linear estimate; the gateway's own proration may differ.",
        )

    @extend_schema(summary="Subscriptions ending soon", parameters=[DAYS_PARAM],
                   responses={200: SubscriptionSerializer(many=True)})
    @action(detail=False, methods=["get"])
    def expiring(self, request: Request) -> Response:
        subscriptions = self.services.subscriptions.get_expiring_subscriptions(self.days(request))
        return APIResponse.success(SubscriptionSerializer(subscriptions, many=True).data)

    @extend_schema(summary="Subscription metrics", responses={200: OpenApiTypes.OBJECT})
    @action(detail=False, methods=["get"])
    def metrics(self, request: Request) -> Response:
        return APIResponse.success(self.services.subscriptions.get_subscription_metrics())


# ------------------------------
# Payment method ViewSet
# ------------------------------
CUSTOMER_PARAM = OpenApiParameter(name="customer_id", description="Customer whose methods to list", required=True,
                                  type=str)


@extend_schema_view(
    list=extend_schema(summary="List a customer's saved payment methods", parameters=[CUSTOMER_PARAM],
                       responses={200: PaymentMethodSerializer(many=True)}),
    create=extend_schema(summary="Save a gateway payment method", request=PaymentMethodCreateSerializer,
                         responses={201: PaymentMethodSerializer}),
    retrieve=extend_schema(summary="Get payment method", responses={200: PaymentMethodSerializer}),
    destroy=extend_schema(summary="Remove payment method", responses={200: OpenApiTypes.OBJECT}),
)
class PaymentMethodViewSet(BillingViewSet):
    def list(self, request: Request) -> Response:
        customer_id = request.query_params.get("customer_id", "").strip()
        if not customer_id:
            raise serializers.ValidationError({"customer_id": ["This query parameter is required."]})
        methods = self.services.payment_methods.list_payment_methods(customer_id)
        return APIResponse.success(PaymentMethodSerializer(methods, many=True).data)

    def create(self, request: Request) -> Response:
        data = self.validated(PaymentMethodCreateSerializer, request.data).validated_data
        method = self.services.payment_methods.save_payment_method(**data)
        return APIResponse.created(PaymentMethodSerializer(method).data, "Payment method saved.")

    def retrieve(self, request: Request, pk: Optional[str] = None) -> Response:
        return APIResponse.success(PaymentMethodSerializer(self.services.payment_methods.get_payment_method(pk)).data)

    def destroy(self, request: Request, pk: Optional[str] = None) -> Response:
        method = self.services.payment_methods.get_payment_method(pk)
        self.services.payment_methods.remove_payment_method(method.customer_id, method.pk)
        return APIResponse.success({"removed": method.gateway_payment_method_id}, "Payment method removed.")

    @extend_schema(summary="Make this the customer's default method", request=None,
                   responses={200: PaymentMethodSerializer})
    @action(detail=True, methods=["post"], url_path="default")
    def make_default(self, request: Request, pk: Optional[str] = None) -> Response:
        method = self.services.payment_methods.get_payment_method(pk)
        method = self.services.payment_methods.set_default_payment_method(method.customer_id, method.pk)
        return APIResponse.success(PaymentMethodSerializer(method).data, "Default payment method updated.")


# ------------------------------
# Tax rate ViewSet
# ------------------------------
@extend_schema_view(
    list=extend_schema(summary="List active tax rates",
                       parameters=[OpenApiParameter(name="region", required=False, type=str)],
                       responses={200: TaxRateSerializer(many=True)}),
    create=extend_schema(summary="Create tax rate", request=TaxRateCreateSerializer,
                         responses={201: TaxRateSerializer}),
    retrieve=extend_schema(summary="Get tax rate", responses={200: TaxRateSerializer}),
    partial_update=extend_schema(summary="Update tax rate", request=TaxRateUpdateSerializer,
                                 responses={200: TaxRateSerializer}),
)
class TaxRateViewSet(BillingViewSet):
    def list(self, request: Request) -> Response:
        rates = self.services.tax_rates.get_active_tax_rates(request.query_params.get("region") or None)
        return APIResponse.success(TaxRateSerializer(rates, many=True).data)

    def create(self, request: Request) -> Response:
        data = self.validated(TaxRateCreateSerializer, request.data).validated_data
        tax_rate = self.services.tax_rates.create_tax_rate(**data)
        return APIResponse.created(TaxRateSerializer(tax_rate).data, "Tax rate created.")

    def retrieve(self, request: Request, pk: Optional[str] = None) -> Response:
        return APIResponse.success(TaxRateSerializer(self.services.tax_rates.get_tax_rate(pk)).data)

    def partial_update(self, request: Request, pk: Optional[str] = None) -> Response:
        changes = self.validated(TaxRateUpdateSerializer, request.data).validated_data
        tax_rate = self.services.tax_rates.update_tax_rate(pk, changes)
        return APIResponse.success(TaxRateSerializer(tax_rate).data, "Tax rate updated.")


# ------------------------------
# Stripe webhook
# ------------------------------
class StripeWebhookView(APIView):
    """Receives Stripe events. The signature is checked before anything is applied."""

    authentication_classes = []
    permission_classes = [AllowAny]

    @extend_schema(exclude=True)
    def post(self, request: Request) -> Response:
        services = apps.get_app_config("billing").services
        signature = request.META.get("HTTP_STRIPE_SIGNATURE")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        event = services.gateway.construct_webhook_event(request.body, signature)

        # Stripe retries non-2xx answers, so handler failures are logged and acknowledged.
        try:
            handled = services.webhooks.handle_event(event)
        except BillingError as e:
            logger.exception(f"Webhook {event.get('type')} ({event.get('id')}) failed: {e}")
            handled = False
        except Exception:
            logger.exception(f"Unexpected error handling webhook {event.get('id')}")
            handled = False

        return APIResponse.success({"received": True, "handled": handled}, "Webhook received.")


def _pdf_response(path: str, filename: str) -> FileResponse:
    if not path or not os.path.exists(path):
        raise NotFound("PDF file is not available")
    return FileResponse(open(path, "rb"), as_attachment=True, filename=filename, content_type="application/pdf")
