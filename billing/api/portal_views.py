"""
Customer portal endpoints.

These are reached through a document's share link, so they take no login:
the ``public_token`` in the URL is the credential, and every view is throttled
per client address.
"""

from django.apps import apps
from django.http import FileResponse
from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import extend_schema
from rest_framework.permissions import AllowAny
from rest_framework.request import Request
from rest_framework.response import Response
from rest_framework.views import APIView

from .response import APIResponse
from .serializers import (
    PortalAcceptSerializer,
    PortalInvoiceSerializer,
    PortalPaySerializer,
    PortalQuoteSerializer,
    ReasonSerializer,
)
from .throttling import PortalPaymentThrottle, PortalThrottle
from .views import _pdf_response


class PortalView(APIView):
    authentication_classes = []
    permission_classes = [AllowAny]
    throttle_classes = [PortalThrottle]

    @property
    def portal(self):
        return apps.get_app_config("billing").services.portal

    @staticmethod
    def validated(serializer_class, data):
        serializer = serializer_class(data=data)
        serializer.is_valid(raise_exception=True)
        return serializer.validated_data


# ------------------------------
# Invoices
# ------------------------------
class PortalInvoiceView(PortalView):
    @extend_schema(summary="View a shared invoice", responses={200: PortalInvoiceSerializer})
    def get(self, request: Request, token: str) -> Response:
        invoice = self.portal.get_invoice(token)
        return APIResponse.success(PortalInvoiceSerializer(invoice).data)


class PortalInvoicePayView(PortalView):
    throttle_classes = [PortalPaymentThrottle]

    @extend_schema(summary="Pay the outstanding balance of a shared invoice", request=PortalPaySerializer,
                   responses={201: OpenApiTypes.OBJECT})
    def post(self, request: Request, token: str) -> Response:
        data = self.validated(PortalPaySerializer, request.data)
        invoice, payment = self.portal.pay_invoice(
            token, payment_method_id=data["payment_method_id"], billing_details=data["billing_details"] or None
        )
        return APIResponse.created(
            {
                "invoice": PortalInvoiceSerializer(invoice).data,
                "payment": {
                    "payment_id": payment.payment_id,
                    "status": payment.status,
                    "amount": str(payment.amount),
                    "currency": payment.currency,
                },
            },
            "Payment submitted.",
        )


class PortalInvoicePDFView(PortalView):
    @extend_schema(summary="Download a shared invoice as PDF", responses={200: OpenApiTypes.BINARY})
    def get(self, request: Request, token: str) -> FileResponse:
        invoice = self.portal.invoice_pdf(token)
        return _pdf_response(invoice.pdf_path, f"invoice-{invoice.invoice_number}.pdf")


# ------------------------------
# Quotes
# ------------------------------
class PortalQuoteView(PortalView):
    @extend_schema(summary="View a shared quote", responses={200: PortalQuoteSerializer})
    def get(self, request: Request, token: str) -> Response:
        return APIResponse.success(PortalQuoteSerializer(self.portal.get_quote(token)).data)


class PortalQuoteAcceptView(PortalView):
    @extend_schema(summary="Accept a shared quote", request=PortalAcceptSerializer,
                   responses={200: OpenApiTypes.OBJECT})
    def post(self, request: Request, token: str) -> Response:
        data = self.validated(PortalAcceptSerializer, request.data)
        quote, invoice = self.portal.accept_quote(
            token, convert_to_invoice=data["convert_to_invoice"], due_date=data.get("due_date")
        )
        payload = {"quote": PortalQuoteSerializer(quote).data, "invoice": None}
        if invoice is not None:
            payload["invoice"] = {
                "invoice_number": invoice.invoice_number,
                "total_amount": str(invoice.total_amount),
            }
        return APIResponse.success(payload, "Quote accepted.")


class PortalQuoteRejectView(PortalView):
    @extend_schema(summary="Decline a shared quote", request=ReasonSerializer, responses={200: PortalQuoteSerializer})
    def post(self, request: Request, token: str) -> Response:
        data = self.validated(ReasonSerializer, request.data)
        quote = self.portal.reject_quote(token, reason=data.get("reason") or None)
        return APIResponse.success(PortalQuoteSerializer(quote).data, "Quote declined.")


class PortalQuotePDFView(PortalView):
    @extend_schema(summary="Download a shared quote as PDF", responses={200: OpenApiTypes.BINARY})
    def get(self, request: Request, token: str) -> FileResponse:
        quote = self.portal.quote_pdf(token)
        return _pdf_response(quote.pdf_path, f"quote-{quote.quote_number}.pdf")
