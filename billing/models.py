import secrets
from decimal import Decimal

from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Q, Sum
from django.urls import reverse
from django.utils import timezone


def portal_url(route_name: str, token: str) -> str:
    """Absolute customer-facing link for a document's portal page."""
    return f"{settings.FRONTEND_URL.rstrip('/')}{reverse(route_name, kwargs={'token': token})}"


class DocumentSequence(models.Model):
    """Per-prefix, per-period counter behind document numbers (INV-2026-0001)."""

    prefix = models.CharField(max_length=10)
    period = models.CharField(max_length=10)
    last_value = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = ("prefix", "period")

    def __str__(self):
        return f"{self.prefix}-{self.period}: {self.last_value}"


class LineItem(models.Model):
    description = models.CharField(max_length=500)
    quantity = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("1.00"))
    unit_price = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal("0.00"))
    discount_percent = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal("0.00"))
    discount_amount = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal("0.00"))
    total_price = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal("0.00"))
    taxable = models.BooleanField(default=True)
    product_id = models.CharField(max_length=64, blank=True)
    position = models.PositiveIntegerField(default=0)

    class Meta:
        abstract = True
        ordering = ["position", "id"]

    def __str__(self):
        return f"{self.description} ({self.quantity} x {self.unit_price})"


class Invoice(models.Model):
    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        SENT = "sent", "Sent"
        VIEWED = "viewed", "Viewed"
        OVERDUE = "overdue", "Overdue"
        PAID = "paid", "Paid"
        PARTIALLY_PAID = "partially_paid", "Partially Paid"
        CANCELLED = "cancelled", "Cancelled"
        REFUNDED = "refunded", "Refunded"

    invoice_number = models.CharField(max_length=50, unique=True)
    customer_id = models.CharField(max_length=64, db_index=True)
    company_id = models.CharField(max_length=64, blank=True, db_index=True)
    customer_name = models.CharField(max_length=255, blank=True)
    customer_email = models.EmailField(blank=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.DRAFT, db_index=True)

    issue_date = models.DateField(default=timezone.localdate)
    due_date = models.DateField(db_index=True)
    paid_date = models.DateTimeField(null=True, blank=True)
    last_sent_date = models.DateTimeField(null=True, blank=True)
    viewed_date = models.DateTimeField(null=True, blank=True)

    currency = models.CharField(max_length=3, default="USD")
    subtotal = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal("0.00"))
    tax_amount = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal("0.00"))
    discount_amount = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal("0.00"))
    total_amount = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal("0.00"))
    amount_paid = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal("0.00"))
    remaining_balance = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal("0.00"))
    tax_details = models.JSONField(default=list, blank=True)

    payment_terms = models.CharField(max_length=100, blank=True)
    notes = models.TextField(blank=True, help_text="Visible to the customer")
    terms = models.TextField(blank=True)
    private_notes = models.TextField(blank=True, help_text="Internal notes, never rendered")
    pdf_path = models.CharField(max_length=500, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    public_token = models.CharField(max_length=64, unique=True, default=secrets.token_urlsafe, db_index=True)

    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="created_invoices")
    updated_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="owned_invoices")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["customer_id", "status"], name="billing_inv_customer_status"),
            models.Index(fields=["status", "due_date"], name="billing_inv_status_due"),
        ]

    def __str__(self):
        return f"{self.invoice_number} - {self.customer_name or self.customer_id}"

    @property
    def is_overdue(self) -> bool:
        if self.status in (self.Status.PAID, self.Status.CANCELLED, self.Status.REFUNDED):
            return False
        return self.due_date < timezone.localdate()

    @property
    def days_past_due(self) -> int:
        return max((timezone.localdate() - self.due_date).days, 0)

    @property
    def is_converted_from_quote(self) -> bool:
        return bool(self.metadata.get("converted_from_quote"))

    def get_portal_url(self) -> str:
        return portal_url("portal-invoice", self.public_token)

    def regenerate_token(self):
        self.public_token = secrets.token_urlsafe(32)
        self.save(update_fields=["public_token", "updated_at"])


class InvoiceLineItem(LineItem):
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="line_items")

    class Meta(LineItem.Meta):
        pass


class ReminderLog(models.Model):
    class ReminderType(models.TextChoices):
        FIRST = "first_reminder", "First Reminder"
        SECOND = "second_reminder", "Second Reminder"
        FINAL = "final_notice", "Final Notice"
        CUSTOM = "custom", "Custom"

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="reminder_logs")
    reminder_type = models.CharField(max_length=20, choices=ReminderType.choices)
    sent_date = models.DateTimeField(default=timezone.now)
    recipient_email = models.EmailField()
    status = models.CharField(max_length=20, default="sent")

    class Meta:
        ordering = ["sent_date"]

    def __str__(self):
        return f"{self.reminder_type} for {self.invoice.invoice_number} at {self.sent_date}"


class Quote(models.Model):
    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        SENT = "sent", "Sent"
        ACCEPTED = "accepted", "Accepted"
        REJECTED = "rejected", "Rejected"
        EXPIRED = "expired", "Expired"

    quote_number = models.CharField(max_length=50, unique=True)
    customer_id = models.CharField(max_length=64, db_index=True)
    company_id = models.CharField(max_length=64, blank=True, db_index=True)
    customer_name = models.CharField(max_length=255, blank=True)
    customer_email = models.EmailField(blank=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.DRAFT, db_index=True)

    issue_date = models.DateField(default=timezone.localdate)
    expiration_date = models.DateField()
    accepted_date = models.DateTimeField(null=True, blank=True)
    rejected_date = models.DateTimeField(null=True, blank=True)
    last_sent_date = models.DateTimeField(null=True, blank=True)

    currency = models.CharField(max_length=3, default="USD")
    subtotal = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal("0.00"))
    tax_amount = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal("0.00"))
    discount_amount = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal("0.00"))
    total_amount = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal("0.00"))
    tax_details = models.JSONField(default=list, blank=True)

    notes = models.TextField(blank=True)
    terms = models.TextField(blank=True)
    private_notes = models.TextField(blank=True)
    pdf_path = models.CharField(max_length=500, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    public_token = models.CharField(max_length=64, unique=True, default=secrets.token_urlsafe, db_index=True)
    converted_invoice = models.OneToOneField(Invoice, on_delete=models.SET_NULL, null=True, blank=True, related_name="source_quote")

    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="created_quotes")
    updated_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="owned_quotes")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.quote_number} - {self.customer_name or self.customer_id}"

    @property
    def is_converted(self) -> bool:
        return self.converted_invoice_id is not None

    @property
    def is_locked(self) -> bool:
        return self.status in (self.Status.ACCEPTED, self.Status.REJECTED)

    @property
    def is_expired(self) -> bool:
        return self.status == self.Status.EXPIRED or self.expiration_date < timezone.localdate()

    def get_portal_url(self) -> str:
        return portal_url("portal-quote", self.public_token)

    def regenerate_token(self):
        self.public_token = secrets.token_urlsafe(32)
        self.save(update_fields=["public_token", "updated_at"])


class QuoteLineItem(LineItem):
    quote = models.ForeignKey(Quote, on_delete=models.CASCADE, related_name="line_items")

    class Meta(LineItem.Meta):
        pass


class Payment(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PROCESSING = "processing", "Processing"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"
        REFUNDED = "refunded", "Refunded"
        PARTIALLY_REFUNDED = "partially_refunded", "Partially Refunded"
        CANCELLED = "cancelled", "Cancelled"

    class Method(models.TextChoices):
        CARD = "card", "Card"
        BANK_TRANSFER = "bank_transfer", "Bank Transfer"
        ACH = "ach", "ACH"
        WIRE = "wire", "Wire"
        CHECK = "check", "Check"
        CASH = "cash", "Cash"
        OTHER = "other", "Other"

    payment_id = models.CharField(max_length=50, unique=True)
    invoice = models.ForeignKey(Invoice, on_delete=models.SET_NULL, null=True, blank=True, related_name="payments")
    customer_id = models.CharField(max_length=64, db_index=True)
    amount = models.DecimalField(max_digits=15, decimal_places=2)
    currency = models.CharField(max_length=3, default="USD")
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING, db_index=True)
    payment_method = models.CharField(max_length=20, choices=Method.choices, default=Method.CARD)
    payment_method_id = models.CharField(max_length=100, blank=True)

    gateway_payment_intent_id = models.CharField(max_length=100, blank=True, db_index=True)
    gateway_customer_id = models.CharField(max_length=100, blank=True)
    transaction_id = models.CharField(max_length=100, blank=True)

    payment_date = models.DateTimeField(null=True, blank=True)
    description = models.CharField(max_length=500, blank=True)
    failure_reason = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="created_payments")
    updated_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.payment_id} ({self.status}) {self.amount} {self.currency}"

    def _refund_sum(self, *statuses) -> Decimal:
        total = self.refunds.filter(status__in=statuses).aggregate(total=Sum("amount"))["total"]
        return total or Decimal("0.00")

    @property
    def refunded_total(self) -> Decimal:
        return self._refund_sum(Refund.Status.COMPLETED)

    @property
    def committed_refund_total(self) -> Decimal:
        """Refunds that count against the payment: completed plus in flight."""
        return self._refund_sum(Refund.Status.COMPLETED, Refund.Status.PENDING)

    @property
    def refundable_amount(self) -> Decimal:
        return max(self.amount - self.committed_refund_total, Decimal("0.00"))


class Refund(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"

    refund_id = models.CharField(max_length=50, unique=True)
    payment = models.ForeignKey(Payment, on_delete=models.CASCADE, related_name="refunds")
    amount = models.DecimalField(max_digits=15, decimal_places=2)
    currency = models.CharField(max_length=3, default="USD")
    reason = models.CharField(max_length=255, blank=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    gateway_refund_id = models.CharField(max_length=100, blank=True)
    processed_date = models.DateTimeField(null=True, blank=True)
    failure_reason = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="created_refunds")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at"]

    def __str__(self):
        return f"{self.refund_id} ({self.status}) {self.amount}"


class Subscription(models.Model):
    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        INACTIVE = "inactive", "Inactive"
        CANCELLED = "cancelled", "Cancelled"
        PAST_DUE = "past_due", "Past Due"
        TRIALING = "trialing", "Trialing"
        PAUSED = "paused", "Paused"

    class Interval(models.TextChoices):
        DAILY = "daily", "Daily"
        WEEKLY = "weekly", "Weekly"
        MONTHLY = "monthly", "Monthly"
        YEARLY = "yearly", "Yearly"

    subscription_id = models.CharField(max_length=50, unique=True)
    customer_id = models.CharField(max_length=64, db_index=True)
    company_id = models.CharField(max_length=64, blank=True)
    plan_id = models.CharField(max_length=100)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.INACTIVE, db_index=True)

    gateway_subscription_id = models.CharField(max_length=100, unique=True)
    gateway_customer_id = models.CharField(max_length=100, blank=True)

    current_period_start = models.DateTimeField(null=True, blank=True)
    current_period_end = models.DateTimeField(null=True, blank=True)
    trial_start = models.DateTimeField(null=True, blank=True)
    trial_end = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancel_at = models.DateTimeField(null=True, blank=True)
    ended_at = models.DateTimeField(null=True, blank=True)
    paused_at = models.DateTimeField(null=True, blank=True)
    resume_at = models.DateTimeField(null=True, blank=True)

    billing_interval = models.CharField(max_length=10, choices=Interval.choices, default=Interval.MONTHLY)
    amount = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal("0.00"))
    currency = models.CharField(max_length=3, default="USD")
    quantity = models.PositiveIntegerField(default=1)
    metadata = models.JSONField(default=dict, blank=True)

    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="created_subscriptions")
    updated_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.subscription_id} ({self.plan_id}, {self.status})"


class PaymentMethod(models.Model):
    """A card or bank account the customer saved at the gateway."""

    class Type(models.TextChoices):
        CREDIT_CARD = "credit_card", "Credit Card"
        DEBIT_CARD = "debit_card", "Debit Card"
        BANK_TRANSFER = "bank_transfer", "Bank Transfer"
        STRIPE = "stripe", "Other Stripe Method"

    customer_id = models.CharField(max_length=64, db_index=True)
    type = models.CharField(max_length=20, choices=Type.choices, default=Type.CREDIT_CARD)
    is_default = models.BooleanField(default=False)
    gateway_payment_method_id = models.CharField(max_length=100, unique=True)
    gateway_customer_id = models.CharField(max_length=100, blank=True)

    card_brand = models.CharField(max_length=30, blank=True)
    card_last4 = models.CharField(max_length=4, blank=True)
    card_exp_month = models.PositiveSmallIntegerField(
        null=True, blank=True, validators=[MinValueValidator(1), MaxValueValidator(12)]
    )
    card_exp_year = models.PositiveSmallIntegerField(null=True, blank=True)
    bank_name = models.CharField(max_length=100, blank=True)
    bank_account_last4 = models.CharField(max_length=4, blank=True)
    billing_address = models.JSONField(default=dict, blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-is_default", "-created_at"]
        indexes = [models.Index(fields=["customer_id", "is_default"], name="billing_pm_customer_default")]
        constraints = [
            models.UniqueConstraint(
                fields=["customer_id"], condition=Q(is_default=True), name="billing_pm_one_default_per_customer"
            ),
        ]

    def __str__(self):
        return f"{self.customer_id}: {self.display_name}"

    @property
    def display_name(self) -> str:
        if self.type in (self.Type.CREDIT_CARD, self.Type.DEBIT_CARD):
            return f"{(self.card_brand or 'Card').title()} ending in {self.card_last4}"
        if self.type == self.Type.BANK_TRANSFER:
            return f"{self.bank_name or 'Bank'} ending in {self.bank_account_last4}"
        return self.get_type_display()

    @property
    def is_expired(self) -> bool:
        if not self.card_exp_month or not self.card_exp_year:
            return False
        today = timezone.localdate()
        return (self.card_exp_year, self.card_exp_month) < (today.year, today.month)


class TaxRate(models.Model):
    class TaxType(models.TextChoices):
        SALES_TAX = "sales_tax", "Sales Tax"
        VAT = "vat", "VAT"
        GST = "gst", "GST"
        EXEMPT = "exempt", "Exempt"

    name = models.CharField(max_length=100)
    rate = models.DecimalField(
        max_digits=5, decimal_places=2, validators=[MinValueValidator(Decimal("0")), MaxValueValidator(Decimal("100"))]
    )
    tax_type = models.CharField(max_length=20, choices=TaxType.choices, default=TaxType.SALES_TAX)
    region = models.CharField(max_length=50, blank=True, db_index=True, help_text="State, country or region code")
    is_active = models.BooleanField(default=True)
    description = models.CharField(max_length=255, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        indexes = [models.Index(fields=["tax_type", "region"], name="billing_tax_type_region")]

    def __str__(self):
        return self.display_name

    @property
    def display_name(self) -> str:
        return f"{self.name} ({Decimal(str(self.rate)).normalize():f}%)"


class ProcessedWebhook(models.Model):
    """Gateway events already handled, so redelivered events are acknowledged without side effects."""

    event_id = models.CharField(max_length=255, unique=True)
    event_type = models.CharField(max_length=100)
    processed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-processed_at"]

    def __str__(self):
        return f"{self.event_type} ({self.event_id})"


class BillingActivity(models.Model):
    class DocumentType(models.TextChoices):
        INVOICE = "invoice", "Invoice"
        QUOTE = "quote", "Quote"
        PAYMENT = "payment", "Payment"
        SUBSCRIPTION = "subscription", "Subscription"

    document_type = models.CharField(max_length=20, choices=DocumentType.choices)
    document_id = models.PositiveBigIntegerField()
    action = models.CharField(max_length=50)
    description = models.TextField(blank=True)
    actor = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    metadata = models.JSONField(default=dict, blank=True)
    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-timestamp"]
        indexes = [models.Index(fields=["document_type", "document_id"], name="billing_act_document")]

    def __str__(self):
        return f"{self.document_type}#{self.document_id} {self.action}"
