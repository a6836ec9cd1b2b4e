from decimal import Decimal

from rest_framework import serializers

from ..models import (
    Invoice,
    InvoiceLineItem,
    Payment,
    PaymentMethod,
    Quote,
    QuoteLineItem,
    Refund,
    ReminderLog,
    Subscription,
    TaxRate,
)
from ..types import (
    CreateInvoiceRequest,
    CreatePaymentRequest,
    CreateQuoteRequest,
    CreateSubscriptionRequest,
    InvoiceFilters,
    LineItemInput,
    PaymentFilters,
    QuoteFilters,
    SubscriptionFilters,
)

LINE_ITEM_FIELDS = [
    "id",
    "description",
    "quantity",
    "unit_price",
    "discount_percent",
    "discount_amount",
    "total_price",
    "taxable",
    "product_id",
    "position",
]

DOCUMENT_MONEY_FIELDS = ["subtotal", "tax_amount", "discount_amount", "total_amount", "tax_details", "currency"]


# ------------------------------
# Output serializers
# ------------------------------

class InvoiceLineItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = InvoiceLineItem
        fields = LINE_ITEM_FIELDS
        read_only_fields = LINE_ITEM_FIELDS


class QuoteLineItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = QuoteLineItem
        fields = LINE_ITEM_FIELDS
        read_only_fields = LINE_ITEM_FIELDS


class ReminderLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = ReminderLog
        fields = ["id", "reminder_type", "sent_date", "recipient_email", "status"]


class InvoiceListSerializer(serializers.ModelSerializer):
    class Meta:
        model = Invoice
        fields = [
            "id",
            "invoice_number",
            "customer_id",
            "customer_name",
            "status",
            "issue_date",
            "due_date",
            "currency",
            "total_amount",
            "amount_paid",
            "remaining_balance",
            "created_at",
        ]


class InvoiceDetailSerializer(serializers.ModelSerializer):
    line_items = InvoiceLineItemSerializer(many=True, read_only=True)
    reminder_logs = ReminderLogSerializer(many=True, read_only=True)
    is_overdue = serializers.BooleanField(read_only=True)
    days_past_due = serializers.IntegerField(read_only=True)
    is_converted_from_quote = serializers.BooleanField(read_only=True)

    class Meta:
        model = Invoice
        fields = [
            "id",
            "invoice_number",
            "customer_id",
            "company_id",
            "customer_name",
            "customer_email",
            "status",
            "issue_date",
            "due_date",
            "paid_date",
            "last_sent_date",
            "viewed_date",
            *DOCUMENT_MONEY_FIELDS,
            "amount_paid",
            "remaining_balance",
            "payment_terms",
            "notes",
            "terms",
            "private_notes",
            "pdf_path",
            "metadata",
            "line_items",
            "reminder_logs",
            "is_overdue",
            "days_past_due",
            "is_converted_from_quote",
            "created_at",
            "updated_at",
        ]


class QuoteListSerializer(serializers.ModelSerializer):
    class Meta:
        model = Quote
        fields = [
            "id",
            "quote_number",
            "customer_id",
            "customer_name",
            "status",
            "issue_date",
            "expiration_date",
            "currency",
            "total_amount",
            "created_at",
        ]


class QuoteDetailSerializer(serializers.ModelSerializer):
    line_items = QuoteLineItemSerializer(many=True, read_only=True)
    is_converted = serializers.BooleanField(read_only=True)
    converted_invoice_number = serializers.CharField(source="converted_invoice.invoice_number", read_only=True, default=None)

    class Meta:
        model = Quote
        fields = [
            "id",
            "quote_number",
            "customer_id",
            "company_id",
            "customer_name",
            "customer_email",
            "status",
            "issue_date",
            "expiration_date",
            "accepted_date",
            "rejected_date",
            "last_sent_date",
            *DOCUMENT_MONEY_FIELDS,
            "notes",
            "terms",
            "private_notes",
            "pdf_path",
            "metadata",
            "line_items",
            "is_converted",
            "converted_invoice_number",
            "created_at",
            "updated_at",
        ]


class PortalInvoiceSerializer(serializers.ModelSerializer):
    """What a customer sees through an invoice share link; internal notes and files stay private."""

    line_items = InvoiceLineItemSerializer(many=True, read_only=True)
    is_overdue = serializers.BooleanField(read_only=True)

    class Meta:
        model = Invoice
        fields = [
            "invoice_number",
            "customer_name",
            "status",
            "issue_date",
            "due_date",
            "paid_date",
            *DOCUMENT_MONEY_FIELDS,
            "amount_paid",
            "remaining_balance",
            "payment_terms",
            "notes",
            "terms",
            "line_items",
            "is_overdue",
        ]


class PortalQuoteSerializer(serializers.ModelSerializer):
    line_items = QuoteLineItemSerializer(many=True, read_only=True)
    is_expired = serializers.BooleanField(read_only=True)

    class Meta:
        model = Quote
        fields = [
            "quote_number",
            "customer_name",
            "status",
            "issue_date",
            "expiration_date",
            "accepted_date",
            "rejected_date",
            *DOCUMENT_MONEY_FIELDS,
            "notes",
            "terms",
            "line_items",
            "is_expired",
        ]


class PaymentMethodSerializer(serializers.ModelSerializer):
    display_name = serializers.CharField(read_only=True)
    is_expired = serializers.BooleanField(read_only=True)

    class Meta:
        model = PaymentMethod
        fields = [
            "id",
            "customer_id",
            "type",
            "is_default",
            "gateway_payment_method_id",
            "gateway_customer_id",
            "card_brand",
            "card_last4",
            "card_exp_month",
            "card_exp_year",
            "bank_name",
            "bank_account_last4",
            "billing_address",
            "display_name",
            "is_expired",
            "created_at",
        ]
        read_only_fields = fields


class TaxRateSerializer(serializers.ModelSerializer):
    display_name = serializers.CharField(read_only=True)

    class Meta:
        model = TaxRate
        fields = [
            "id",
            "name",
            "rate",
            "tax_type",
            "region",
            "is_active",
            "description",
            "display_name",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "display_name", "created_at", "updated_at"]


class RefundSerializer(serializers.ModelSerializer):
    class Meta:
        model = Refund
        fields = [
            "id",
            "refund_id",
            "amount",
            "currency",
            "reason",
            "status",
            "gateway_refund_id",
            "processed_date",
            "failure_reason",
            "created_at",
        ]


class PaymentSerializer(serializers.ModelSerializer):
    refunds = RefundSerializer(many=True, read_only=True)
    invoice_number = serializers.CharField(source="invoice.invoice_number", read_only=True, default=None)
    refunded_total = serializers.DecimalField(max_digits=15, decimal_places=2, read_only=True)

    class Meta:
        model = Payment
        fields = [
            "id",
            "payment_id",
            "invoice",
            "invoice_number",
            "customer_id",
            "amount",
            "currency",
            "status",
            "payment_method",
            "gateway_payment_intent_id",
            "transaction_id",
            "payment_date",
            "description",
            "failure_reason",
            "metadata",
            "refunds",
            "refunded_total",
            "created_at",
            "updated_at",
        ]


class SubscriptionSerializer(serializers.ModelSerializer):
    class Meta:
        model = Subscription
        fields = [
            "id",
            "subscription_id",
            "customer_id",
            "company_id",
            "plan_id",
            "status",
            "gateway_subscription_id",
            "current_period_start",
            "current_period_end",
            "trial_start",
            "trial_end",
            "cancelled_at",
            "cancel_at",
            "ended_at",
            "paused_at",
            "resume_at",
            "billing_interval",
            "amount",
            "currency",
            "quantity",
            "metadata",
            "created_at",
            "updated_at",
        ]


# ------------------------------
# Input serializers
# ------------------------------

class LineItemInputSerializer(serializers.Serializer):
    description = serializers.CharField(max_length=500)
    quantity = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"))
    unit_price = serializers.DecimalField(max_digits=15, decimal_places=2, min_value=Decimal("0"))
    discount_percent = serializers.DecimalField(max_digits=5, decimal_places=2, min_value=Decimal("0"),
                                                max_value=Decimal("100"), required=False, default=Decimal("0"))
    discount_amount = serializers.DecimalField(max_digits=15, decimal_places=2, min_value=Decimal("0"),
                                               required=False, default=Decimal("0"))
    taxable = serializers.BooleanField(required=False, default=True)
    product_id = serializers.CharField(max_length=64, required=False, allow_blank=True, default="")

    def to_input(self, data=None) -> LineItemInput:
        return LineItemInput(**(data or self.validated_data))


class LineItemUpdateSerializer(LineItemInputSerializer):
    """All line item fields optional; only the supplied ones are changed."""

    def __init__(self, *args, **kwargs):
        kwargs.setdefault("partial", True)
        super().__init__(*args, **kwargs)


class _DocumentCreateSerializer(serializers.Serializer):
    customer_id = serializers.CharField(max_length=64)
    company_id = serializers.CharField(max_length=64, required=False, allow_blank=True, default="")
    customer_name = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    customer_email = serializers.EmailField(required=False, allow_blank=True, default="")
    issue_date = serializers.DateField(required=False)
    currency = serializers.CharField(max_length=3, required=False, allow_blank=True, default="")
    tax_rate = serializers.DecimalField(max_digits=5, decimal_places=2, min_value=Decimal("0"),
                                        max_value=Decimal("100"), required=False, default=Decimal("0"))
    tax_region = serializers.CharField(max_length=50, required=False, allow_blank=True, default="")
    discount_amount = serializers.DecimalField(max_digits=15, decimal_places=2, min_value=Decimal("0"),
                                               required=False, default=Decimal("0"))
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    terms = serializers.CharField(required=False, allow_blank=True, default="")
    metadata = serializers.DictField(required=False, default=dict)
    line_items = LineItemInputSerializer(many=True, allow_empty=False)

    def _common(self):
        data = dict(self.validated_data)
        data["line_items"] = [LineItemInput(**item) for item in data["line_items"]]
        return data


class InvoiceCreateSerializer(_DocumentCreateSerializer):
    due_date = serializers.DateField(required=False)
    payment_terms = serializers.CharField(max_length=100, required=False, allow_blank=True, default="")

    def to_request(self) -> CreateInvoiceRequest:
        return CreateInvoiceRequest(**self._common())


class QuoteCreateSerializer(_DocumentCreateSerializer):
    expiration_date = serializers.DateField(required=False)

    def to_request(self) -> CreateQuoteRequest:
        return CreateQuoteRequest(**self._common())


class _DocumentUpdateSerializer(serializers.Serializer):
    customer_id = serializers.CharField(max_length=64, required=False)
    company_id = serializers.CharField(max_length=64, required=False, allow_blank=True)
    customer_name = serializers.CharField(max_length=255, required=False, allow_blank=True)
    customer_email = serializers.EmailField(required=False, allow_blank=True)
    issue_date = serializers.DateField(required=False)
    currency = serializers.CharField(max_length=3, required=False)
    tax_rate = serializers.DecimalField(max_digits=5, decimal_places=2, min_value=Decimal("0"),
                                        max_value=Decimal("100"), required=False)
    discount_amount = serializers.DecimalField(max_digits=15, decimal_places=2, min_value=Decimal("0"), required=False)
    notes = serializers.CharField(required=False, allow_blank=True)
    terms = serializers.CharField(required=False, allow_blank=True)
    private_notes = serializers.CharField(required=False, allow_blank=True)
    metadata = serializers.DictField(required=False)
    line_items = LineItemInputSerializer(many=True, required=False, allow_empty=False)

    def to_changes(self):
        changes = dict(self.validated_data)
        if "line_items" in changes:
            changes["line_items"] = [LineItemInput(**item) for item in changes["line_items"]]
        return changes


class InvoiceUpdateSerializer(_DocumentUpdateSerializer):
    due_date = serializers.DateField(required=False)
    payment_terms = serializers.CharField(max_length=100, required=False, allow_blank=True)


class QuoteUpdateSerializer(_DocumentUpdateSerializer):
    expiration_date = serializers.DateField(required=False)


class SendDocumentSerializer(serializers.Serializer):
    recipient_email = serializers.EmailField(required=False, allow_blank=True)


class MarkPaidSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=15, decimal_places=2)
    paid_date = serializers.DateTimeField(required=False)


class ReasonSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, max_length=500)


class ReminderSerializer(serializers.Serializer):
    reminder_type = serializers.ChoiceField(choices=ReminderLog.ReminderType.choices)
    custom_email = serializers.EmailField(required=False, allow_blank=True)


class DuplicateInvoiceSerializer(serializers.Serializer):
    customer_id = serializers.CharField(max_length=64, required=False)
    customer_email = serializers.EmailField(required=False)
    due_date = serializers.DateField(required=False)
    notes = serializers.CharField(required=False, allow_blank=True)


class ConvertQuoteSerializer(serializers.Serializer):
    due_date = serializers.DateField(required=False)


class ExtendQuoteSerializer(serializers.Serializer):
    expiration_date = serializers.DateField()


class ShareLinkSerializer(serializers.Serializer):
    regenerate = serializers.BooleanField(required=False, default=False)


class PortalPaySerializer(serializers.Serializer):
    payment_method_id = serializers.CharField(max_length=100, required=False, allow_blank=True, default="")
    billing_details = serializers.DictField(required=False, default=dict)


class PortalAcceptSerializer(serializers.Serializer):
    convert_to_invoice = serializers.BooleanField(required=False, default=False)
    due_date = serializers.DateField(required=False)


class PaymentMethodCreateSerializer(serializers.Serializer):
    customer_id = serializers.CharField(max_length=64)
    gateway_payment_method_id = serializers.CharField(max_length=100)
    gateway_customer_id = serializers.CharField(max_length=100, required=False, allow_blank=True, default="")
    make_default = serializers.BooleanField(required=False, default=False)
    metadata = serializers.DictField(required=False, default=dict)


class TaxRateUpdateSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=100, required=False)
    rate = serializers.DecimalField(max_digits=5, decimal_places=2, min_value=Decimal("0"), max_value=Decimal("100"),
                                    required=False)
    tax_type = serializers.ChoiceField(choices=TaxRate.TaxType.choices, required=False)
    region = serializers.CharField(max_length=50, required=False, allow_blank=True)
    is_active = serializers.BooleanField(required=False)
    description = serializers.CharField(max_length=255, required=False, allow_blank=True)


class TaxRateCreateSerializer(TaxRateUpdateSerializer):
    name = serializers.CharField(max_length=100)
    rate = serializers.DecimalField(max_digits=5, decimal_places=2, min_value=Decimal("0"), max_value=Decimal("100"))
    tax_type = serializers.ChoiceField(choices=TaxRate.TaxType.choices, required=False,
                                       default=TaxRate.TaxType.SALES_TAX)
    region = serializers.CharField(max_length=50, required=False, allow_blank=True, default="")
    is_active = serializers.BooleanField(required=False, default=True)
    description = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")


class DateRangeQuerySerializer(serializers.Serializer):
    start = serializers.DateTimeField(required=False)
    end = serializers.DateTimeField(required=False)


class PaymentCreateSerializer(serializers.Serializer):
    customer_id = serializers.CharField(max_length=64)
    amount = serializers.DecimalField(max_digits=15, decimal_places=2)
    currency = serializers.CharField(max_length=3, required=False, allow_blank=True, default="")
    invoice_id = serializers.CharField(required=False, allow_null=True, default=None)
    payment_method = serializers.ChoiceField(choices=Payment.Method.choices, required=False, default=Payment.Method.CARD)
    payment_method_id = serializers.CharField(max_length=100, required=False, allow_blank=True, default="")
    gateway_customer_id = serializers.CharField(max_length=100, required=False, allow_blank=True, default="")
    description = serializers.CharField(max_length=500, required=False, allow_blank=True, default="")
    metadata = serializers.DictField(required=False, default=dict)

    def to_request(self) -> CreatePaymentRequest:
        return CreatePaymentRequest(**self.validated_data)


class RefundCreateSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=15, decimal_places=2, required=False, allow_null=True, default=None)
    reason = serializers.CharField(required=False, allow_blank=True, max_length=255, default="")


class PaymentStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Payment.Status.choices)
    metadata = serializers.DictField(required=False, default=dict)


class SubscriptionCreateSerializer(serializers.Serializer):
    customer_id = serializers.CharField(max_length=64)
    gateway_customer_id = serializers.CharField(max_length=100)
    plan_id = serializers.CharField(max_length=100)
    company_id = serializers.CharField(max_length=64, required=False, allow_blank=True, default="")
    quantity = serializers.IntegerField(min_value=1, required=False, default=1)
    trial_days = serializers.IntegerField(min_value=0, required=False, default=0)
    payment_method_id = serializers.CharField(max_length=100, required=False, allow_blank=True, default="")
    metadata = serializers.DictField(required=False, default=dict)

    def to_request(self) -> CreateSubscriptionRequest:
        return CreateSubscriptionRequest(**self.validated_data)


class SubscriptionUpdateSerializer(serializers.Serializer):
    plan_id = serializers.CharField(max_length=100, required=False)
    quantity = serializers.IntegerField(min_value=1, required=False)
    metadata = serializers.DictField(required=False)


class SubscriptionCancelSerializer(serializers.Serializer):
    immediately = serializers.BooleanField(required=False, default=False)
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class SubscriptionPauseSerializer(serializers.Serializer):
    resume_at = serializers.DateTimeField(required=False)


class ProrationQuerySerializer(serializers.Serializer):
    new_plan_id = serializers.CharField(max_length=100)
    change_date = serializers.DateTimeField(required=False)


class ProrationSerializer(serializers.Serializer):
    current_amount = serializers.DecimalField(max_digits=15, decimal_places=2)
    new_amount = serializers.DecimalField(max_digits=15, decimal_places=2)
    remaining_days = serializers.IntegerField()
    total_days = serializers.IntegerField()
    credit_amount = serializers.DecimalField(max_digits=15, decimal_places=2)
    prorated_amount = serializers.DecimalField(max_digits=15, decimal_places=2)


# ------------------------------
# List query parameters
# ------------------------------

class _ListQuerySerializer(serializers.Serializer):
    page = serializers.IntegerField(min_value=1, required=False, default=1)
    page_size = serializers.IntegerField(min_value=1, max_value=100, required=False, default=20)
    ordering = serializers.CharField(required=False, default="-created_at")

    filters_class = None
    ORDERING_FIELDS = ("created_at",)

    def validate_ordering(self, value):
        if value.lstrip("-") not in self.ORDERING_FIELDS:
            raise serializers.ValidationError(f"Ordering must be one of: {', '.join(self.ORDERING_FIELDS)}")
        return value

    def to_filters(self):
        return self.filters_class(**self.validated_data)


class InvoiceListQuerySerializer(_ListQuerySerializer):
    status = serializers.ChoiceField(choices=Invoice.Status.choices, required=False)
    customer_id = serializers.CharField(required=False)
    company_id = serializers.CharField(required=False)
    issued_after = serializers.DateField(required=False)
    issued_before = serializers.DateField(required=False)
    due_before = serializers.DateField(required=False)
    min_amount = serializers.DecimalField(max_digits=15, decimal_places=2, required=False)
    max_amount = serializers.DecimalField(max_digits=15, decimal_places=2, required=False)

    filters_class = InvoiceFilters
    ORDERING_FIELDS = ("created_at", "issue_date", "due_date", "total_amount", "invoice_number", "status")


class QuoteListQuerySerializer(_ListQuerySerializer):
    status = serializers.ChoiceField(choices=Quote.Status.choices, required=False)
    customer_id = serializers.CharField(required=False)
    company_id = serializers.CharField(required=False)
    expires_before = serializers.DateField(required=False)

    filters_class = QuoteFilters
    ORDERING_FIELDS = ("created_at", "issue_date", "expiration_date", "total_amount", "quote_number", "status")


class PaymentListQuerySerializer(_ListQuerySerializer):
    status = serializers.ChoiceField(choices=Payment.Status.choices, required=False)
    customer_id = serializers.CharField(required=False)
    invoice_id = serializers.IntegerField(required=False)
    payment_method = serializers.ChoiceField(choices=Payment.Method.choices, required=False)
    created_after = serializers.DateTimeField(required=False)
    created_before = serializers.DateTimeField(required=False)

    filters_class = PaymentFilters
    ORDERING_FIELDS = ("created_at", "amount", "payment_date", "status")


class SubscriptionListQuerySerializer(_ListQuerySerializer):
    status = serializers.ChoiceField(choices=Subscription.Status.choices, required=False)
    customer_id = serializers.CharField(required=False)
    company_id = serializers.CharField(required=False)
    plan_id = serializers.CharField(required=False)

    filters_class = SubscriptionFilters
    ORDERING_FIELDS = ("created_at", "current_period_end", "amount", "status")
