from django.contrib import admin

from .models import (
    BillingActivity, DocumentSequence, Invoice, InvoiceLineItem, Payment, PaymentMethod, ProcessedWebhook,
    Quote, QuoteLineItem, Refund, ReminderLog, Subscription, TaxRate,
)


class InvoiceLineItemInline(admin.TabularInline):
    model = InvoiceLineItem
    extra = 0
    readonly_fields = ('total_price',)


class ReminderLogInline(admin.TabularInline):
    model = ReminderLog
    extra = 0
    readonly_fields = ('reminder_type', 'sent_date', 'recipient_email', 'status')


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ('invoice_number', 'customer_id', 'status', 'total_amount', 'remaining_balance', 'due_date')
    list_filter = ('status', 'currency')
    search_fields = ('invoice_number', 'customer_id', 'customer_name', 'customer_email')
    readonly_fields = ('invoice_number', 'subtotal', 'tax_amount', 'total_amount', 'remaining_balance',
                       'created_at', 'updated_at')
    inlines = [InvoiceLineItemInline, ReminderLogInline]


class QuoteLineItemInline(admin.TabularInline):
    model = QuoteLineItem
    extra = 0
    readonly_fields = ('total_price',)


@admin.register(Quote)
class QuoteAdmin(admin.ModelAdmin):
    list_display = ('quote_number', 'customer_id', 'status', 'total_amount', 'expiration_date', 'converted_invoice')
    list_filter = ('status',)
    search_fields = ('quote_number', 'customer_id', 'customer_name')
    readonly_fields = ('quote_number', 'subtotal', 'tax_amount', 'total_amount', 'converted_invoice',
                       'created_at', 'updated_at')
    inlines = [QuoteLineItemInline]


class RefundInline(admin.TabularInline):
    model = Refund
    extra = 0
    readonly_fields = ('refund_id', 'amount', 'status', 'gateway_refund_id', 'processed_date')


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ('payment_id', 'invoice', 'customer_id', 'amount', 'currency', 'status', 'payment_date')
    list_filter = ('status', 'payment_method')
    search_fields = ('payment_id', 'customer_id', 'gateway_payment_intent_id')
    readonly_fields = ('payment_id', 'gateway_payment_intent_id', 'created_at', 'updated_at')
    inlines = [RefundInline]


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    list_display = ('subscription_id', 'customer_id', 'plan_id', 'status', 'amount', 'billing_interval',
                    'current_period_end')
    list_filter = ('status', 'billing_interval')
    search_fields = ('subscription_id', 'customer_id', 'gateway_subscription_id')
    readonly_fields = ('subscription_id', 'gateway_subscription_id', 'created_at', 'updated_at')


@admin.register(PaymentMethod)
class PaymentMethodAdmin(admin.ModelAdmin):
    list_display = ('gateway_payment_method_id', 'customer_id', 'type', 'card_brand', 'card_last4', 'is_default')
    list_filter = ('type', 'is_default')
    search_fields = ('customer_id', 'gateway_payment_method_id', 'gateway_customer_id')
    readonly_fields = ('created_at', 'updated_at')


@admin.register(TaxRate)
class TaxRateAdmin(admin.ModelAdmin):
    list_display = ('name', 'rate', 'tax_type', 'region', 'is_active')
    list_filter = ('tax_type', 'is_active')
    search_fields = ('name', 'region')


@admin.register(BillingActivity)
class BillingActivityAdmin(admin.ModelAdmin):
    list_display = ('document_type', 'document_id', 'action', 'actor', 'timestamp')
    list_filter = ('document_type', 'action')
    readonly_fields = ('timestamp',)


@admin.register(ProcessedWebhook)
class ProcessedWebhookAdmin(admin.ModelAdmin):
    list_display = ('event_id', 'event_type', 'processed_at')
    search_fields = ('event_id',)


admin.site.register(DocumentSequence)
