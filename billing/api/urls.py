"""API URL routing for the billing app."""
from django.urls import path
from rest_framework.routers import DefaultRouter

from .portal_views import (
    PortalInvoicePayView,
    PortalInvoicePDFView,
    PortalInvoiceView,
    PortalQuoteAcceptView,
    PortalQuotePDFView,
    PortalQuoteRejectView,
    PortalQuoteView,
)
from .views import (
    InvoiceViewSet,
    PaymentMethodViewSet,
    PaymentViewSet,
    QuoteViewSet,
    StripeWebhookView,
    SubscriptionViewSet,
    TaxRateViewSet,
)

router = DefaultRouter()
router.register(r"invoices", InvoiceViewSet, basename="api-invoices")
router.register(r"quotes", QuoteViewSet, basename="api-quotes")
router.register(r"payments", PaymentViewSet, basename="api-payments")
router.register(r"payment-methods", PaymentMethodViewSet, basename="api-payment-methods")
router.register(r"subscriptions", SubscriptionViewSet, basename="api-subscriptions")
router.register(r"tax-rates", TaxRateViewSet, basename="api-tax-rates")

portal_urlpatterns = [
    path("portal/invoices/<str:token>/", PortalInvoiceView.as_view(), name="portal-invoice"),
    path("portal/invoices/<str:token>/pay/", PortalInvoicePayView.as_view(), name="portal-invoice-pay"),
    path("portal/invoices/<str:token>/pdf/", PortalInvoicePDFView.as_view(), name="portal-invoice-pdf"),
    path("portal/quotes/<str:token>/", PortalQuoteView.as_view(), name="portal-quote"),
    path("portal/quotes/<str:token>/accept/", PortalQuoteAcceptView.as_view(), name="portal-quote-accept"),
    path("portal/quotes/<str:token>/reject/", PortalQuoteRejectView.as_view(), name="portal-quote-reject"),
    path("portal/quotes/<str:token>/pdf/", PortalQuotePDFView.as_view(), name="portal-quote-pdf"),
]

# The webhook path must resolve before the payments detail route captures "webhook" as a pk.
urlpatterns = [
    path("payments/webhook/", StripeWebhookView.as_view(), name="stripe-webhook"),
] + portal_urlpatterns + router.urls
