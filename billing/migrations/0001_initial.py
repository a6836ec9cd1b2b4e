from decimal import Decimal

from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone


INVOICE_STATUS = [
    ('draft', 'Draft'), ('sent', 'Sent'), ('viewed', 'Viewed'), ('overdue', 'Overdue'), ('paid', 'Paid'),
    ('partially_paid', 'Partially Paid'), ('cancelled', 'Cancelled'), ('refunded', 'Refunded'),
]
QUOTE_STATUS = [
    ('draft', 'Draft'), ('sent', 'Sent'), ('accepted', 'Accepted'), ('rejected', 'Rejected'), ('expired', 'Expired'),
]
PAYMENT_STATUS = [
    ('pending', 'Pending'), ('processing', 'Processing'), ('completed', 'Completed'), ('failed', 'Failed'),
    ('refunded', 'Refunded'), ('partially_refunded', 'Partially Refunded'), ('cancelled', 'Cancelled'),
]
PAYMENT_METHOD = [
    ('card', 'Card'), ('bank_transfer', 'Bank Transfer'), ('ach', 'ACH'), ('wire', 'Wire'), ('check', 'Check'),
    ('cash', 'Cash'), ('other', 'Other'),
]
SUBSCRIPTION_STATUS = [
    ('active', 'Active'), ('inactive', 'Inactive'), ('cancelled', 'Cancelled'), ('past_due', 'Past Due'),
    ('trialing', 'Trialing'), ('paused', 'Paused'),
]


def money(**kwargs):
    return models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=15, **kwargs)


def line_item_fields():
    return [
        ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
        ('description', models.CharField(max_length=500)),
        ('quantity', models.DecimalField(decimal_places=2, default=Decimal('1.00'), max_digits=12)),
        ('unit_price', money()),
        ('discount_percent', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=5)),
        ('discount_amount', money()),
        ('total_price', money()),
        ('taxable', models.BooleanField(default=True)),
        ('product_id', models.CharField(blank=True, max_length=64)),
        ('position', models.PositiveIntegerField(default=0)),
    ]


def user_fk(related_name):
    return models.ForeignKey(
        blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL,
        related_name=related_name, to=settings.AUTH_USER_MODEL,
    )


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='DocumentSequence',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('prefix', models.CharField(max_length=10)),
                ('period', models.CharField(max_length=10)),
                ('last_value', models.PositiveIntegerField(default=0)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'unique_together': {('prefix', 'period')},
            },
        ),
        migrations.CreateModel(
            name='Invoice',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('invoice_number', models.CharField(max_length=50, unique=True)),
                ('customer_id', models.CharField(db_index=True, max_length=64)),
                ('company_id', models.CharField(blank=True, db_index=True, max_length=64)),
                ('customer_name', models.CharField(blank=True, max_length=255)),
                ('customer_email', models.EmailField(blank=True, max_length=254)),
                ('status', models.CharField(choices=INVOICE_STATUS, db_index=True, default='draft', max_length=20)),
                ('issue_date', models.DateField(default=django.utils.timezone.localdate)),
                ('due_date', models.DateField(db_index=True)),
                ('paid_date', models.DateTimeField(blank=True, null=True)),
                ('last_sent_date', models.DateTimeField(blank=True, null=True)),
                ('viewed_date', models.DateTimeField(blank=True, null=True)),
                ('currency', models.CharField(default='USD', max_length=3)),
                ('subtotal', money()),
                ('tax_amount', money()),
                ('discount_amount', money()),
                ('total_amount', money()),
                ('amount_paid', money()),
                ('remaining_balance', money()),
                ('tax_details', models.JSONField(blank=True, default=list)),
                ('payment_terms', models.CharField(blank=True, max_length=100)),
                ('notes', models.TextField(blank=True, help_text='Visible to the customer')),
                ('terms', models.TextField(blank=True)),
                ('private_notes', models.TextField(blank=True, help_text='Internal notes, never rendered')),
                ('pdf_path', models.CharField(blank=True, max_length=500)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('created_by', user_fk('created_invoices')),
                ('updated_by', user_fk('+')),
                ('owner', user_fk('owned_invoices')),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['customer_id', 'status'], name='billing_inv_customer_status'),
                    models.Index(fields=['status', 'due_date'], name='billing_inv_status_due'),
                ],
            },
        ),
        migrations.CreateModel(
            name='InvoiceLineItem',
            fields=line_item_fields() + [
                ('invoice', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='line_items', to='billing.invoice')),
            ],
            options={
                'ordering': ['position', 'id'],
                'abstract': False,
            },
        ),
        migrations.CreateModel(
            name='ReminderLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('reminder_type', models.CharField(choices=[('first_reminder', 'First Reminder'), ('second_reminder', 'Second Reminder'), ('final_notice', 'Final Notice'), ('custom', 'Custom')], max_length=20)),
                ('sent_date', models.DateTimeField(default=django.utils.timezone.now)),
                ('recipient_email', models.EmailField(max_length=254)),
                ('status', models.CharField(default='sent', max_length=20)),
                ('invoice', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='reminder_logs', to='billing.invoice')),
            ],
            options={
                'ordering': ['sent_date'],
            },
        ),
        migrations.CreateModel(
            name='Quote',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('quote_number', models.CharField(max_length=50, unique=True)),
                ('customer_id', models.CharField(db_index=True, max_length=64)),
                ('company_id', models.CharField(blank=True, db_index=True, max_length=64)),
                ('customer_name', models.CharField(blank=True, max_length=255)),
                ('customer_email', models.EmailField(blank=True, max_length=254)),
                ('status', models.CharField(choices=QUOTE_STATUS, db_index=True, default='draft', max_length=20)),
                ('issue_date', models.DateField(default=django.utils.timezone.localdate)),
                ('expiration_date', models.DateField()),
                ('accepted_date', models.DateTimeField(blank=True, null=True)),
                ('rejected_date', models.DateTimeField(blank=True, null=True)),
                ('last_sent_date', models.DateTimeField(blank=True, null=True)),
                ('currency', models.CharField(default='USD', max_length=3)),
                ('subtotal', money()),
                ('tax_amount', money()),
                ('discount_amount', money()),
                ('total_amount', money()),
                ('tax_details', models.JSONField(blank=True, default=list)),
                ('notes', models.TextField(blank=True)),
                ('terms', models.TextField(blank=True)),
                ('private_notes', models.TextField(blank=True)),
                ('pdf_path', models.CharField(blank=True, max_length=500)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('converted_invoice', models.OneToOneField(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='source_quote', to='billing.invoice')),
                ('created_by', user_fk('created_quotes')),
                ('updated_by', user_fk('+')),
                ('owner', user_fk('owned_quotes')),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='QuoteLineItem',
            fields=line_item_fields() + [
                ('quote', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='line_items', to='billing.quote')),
            ],
            options={
                'ordering': ['position', 'id'],
                'abstract': False,
            },
        ),
        migrations.CreateModel(
            name='Payment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('payment_id', models.CharField(max_length=50, unique=True)),
                ('customer_id', models.CharField(db_index=True, max_length=64)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=15)),
                ('currency', models.CharField(default='USD', max_length=3)),
                ('status', models.CharField(choices=PAYMENT_STATUS, db_index=True, default='pending', max_length=20)),
                ('payment_method', models.CharField(choices=PAYMENT_METHOD, default='card', max_length=20)),
                ('payment_method_id', models.CharField(blank=True, max_length=100)),
                ('gateway_payment_intent_id', models.CharField(blank=True, db_index=True, max_length=100)),
                ('gateway_customer_id', models.CharField(blank=True, max_length=100)),
                ('transaction_id', models.CharField(blank=True, max_length=100)),
                ('payment_date', models.DateTimeField(blank=True, null=True)),
                ('description', models.CharField(blank=True, max_length=500)),
                ('failure_reason', models.TextField(blank=True)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('invoice', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='payments', to='billing.invoice')),
                ('created_by', user_fk('created_payments')),
                ('updated_by', user_fk('+')),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='Refund',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('refund_id', models.CharField(max_length=50, unique=True)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=15)),
                ('currency', models.CharField(default='USD', max_length=3)),
                ('reason', models.CharField(blank=True, max_length=255)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('completed', 'Completed'), ('failed', 'Failed')], default='pending', max_length=20)),
                ('gateway_refund_id', models.CharField(blank=True, max_length=100)),
                ('processed_date', models.DateTimeField(blank=True, null=True)),
                ('failure_reason', models.TextField(blank=True)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('payment', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='refunds', to='billing.payment')),
                ('created_by', user_fk('created_refunds')),
            ],
            options={
                'ordering': ['created_at'],
            },
        ),
        migrations.CreateModel(
            name='Subscription',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('subscription_id', models.CharField(max_length=50, unique=True)),
                ('customer_id', models.CharField(db_index=True, max_length=64)),
                ('company_id', models.CharField(blank=True, max_length=64)),
                ('plan_id', models.CharField(max_length=100)),
                ('status', models.CharField(choices=SUBSCRIPTION_STATUS, db_index=True, default='inactive', max_length=20)),
                ('gateway_subscription_id', models.CharField(max_length=100, unique=True)),
                ('gateway_customer_id', models.CharField(blank=True, max_length=100)),
                ('current_period_start', models.DateTimeField(blank=True, null=True)),
                ('current_period_end', models.DateTimeField(blank=True, null=True)),
                ('trial_start', models.DateTimeField(blank=True, null=True)),
                ('trial_end', models.DateTimeField(blank=True, null=True)),
                ('cancelled_at', models.DateTimeField(blank=True, null=True)),
                ('cancel_at', models.DateTimeField(blank=True, null=True)),
                ('ended_at', models.DateTimeField(blank=True, null=True)),
                ('paused_at', models.DateTimeField(blank=True, null=True)),
                ('resume_at', models.DateTimeField(blank=True, null=True)),
                ('billing_interval', models.CharField(choices=[('daily', 'Daily'), ('weekly', 'Weekly'), ('monthly', 'Monthly'), ('yearly', 'Yearly')], default='monthly', max_length=10)),
                ('amount', money()),
                ('currency', models.CharField(default='USD', max_length=3)),
                ('quantity', models.PositiveIntegerField(default=1)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('created_by', user_fk('created_subscriptions')),
                ('updated_by', user_fk('+')),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='ProcessedWebhook',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('event_id', models.CharField(max_length=255, unique=True)),
                ('event_type', models.CharField(max_length=100)),
                ('processed_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'ordering': ['-processed_at'],
            },
        ),
        migrations.CreateModel(
            name='BillingActivity',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('document_type', models.CharField(choices=[('invoice', 'Invoice'), ('quote', 'Quote'), ('payment', 'Payment'), ('subscription', 'Subscription')], max_length=20)),
                ('document_id', models.PositiveBigIntegerField()),
                ('action', models.CharField(max_length=50)),
                ('description', models.TextField(blank=True)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('timestamp', models.DateTimeField(auto_now_add=True)),
                ('actor', user_fk('+')),
            ],
            options={
                'ordering': ['-timestamp'],
                'indexes': [models.Index(fields=['document_type', 'document_id'], name='billing_act_document')],
            },
        ),
    ]
