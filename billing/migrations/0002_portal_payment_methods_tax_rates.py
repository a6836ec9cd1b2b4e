import secrets
from decimal import Decimal

import django.core.validators
from django.db import migrations, models


def issue_public_tokens(apps, schema_editor):
    for model_name in ("Invoice", "Quote"):
        model = apps.get_model("billing", model_name)
        for document in model.objects.filter(public_token__isnull=True).only("pk"):
            document.public_token = secrets.token_urlsafe(32)
            document.save(update_fields=["public_token"])


def public_token_field(**kwargs):
    return models.CharField(max_length=64, **kwargs)


class Migration(migrations.Migration):

    dependencies = [
        ('billing', '0001_initial'),
    ]

    operations = [
        # Existing rows need distinct tokens before the unique index can be built.
        migrations.AddField(
            model_name='invoice',
            name='public_token',
            field=public_token_field(null=True),
        ),
        migrations.AddField(
            model_name='quote',
            name='public_token',
            field=public_token_field(null=True),
        ),
        migrations.RunPython(issue_public_tokens, migrations.RunPython.noop),
        migrations.AlterField(
            model_name='invoice',
            name='public_token',
            field=public_token_field(db_index=True, default=secrets.token_urlsafe, unique=True),
        ),
        migrations.AlterField(
            model_name='quote',
            name='public_token',
            field=public_token_field(db_index=True, default=secrets.token_urlsafe, unique=True),
        ),
        migrations.CreateModel(
            name='PaymentMethod',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('customer_id', models.CharField(db_index=True, max_length=64)),
                ('type', models.CharField(choices=[('credit_card', 'Credit Card'), ('debit_card', 'Debit Card'), ('bank_transfer', 'Bank Transfer'), ('stripe', 'Other Stripe Method')], default='credit_card', max_length=20)),
                ('is_default', models.BooleanField(default=False)),
                ('gateway_payment_method_id', models.CharField(max_length=100, unique=True)),
                ('gateway_customer_id', models.CharField(blank=True, max_length=100)),
                ('card_brand', models.CharField(blank=True, max_length=30)),
                ('card_last4', models.CharField(blank=True, max_length=4)),
                ('card_exp_month', models.PositiveSmallIntegerField(blank=True, null=True, validators=[django.core.validators.MinValueValidator(1), django.core.validators.MaxValueValidator(12)])),
                ('card_exp_year', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('bank_name', models.CharField(blank=True, max_length=100)),
                ('bank_account_last4', models.CharField(blank=True, max_length=4)),
                ('billing_address', models.JSONField(blank=True, default=dict)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'ordering': ['-is_default', '-created_at'],
                'indexes': [models.Index(fields=['customer_id', 'is_default'], name='billing_pm_customer_default')],
                'constraints': [models.UniqueConstraint(condition=models.Q(('is_default', True)), fields=('customer_id',), name='billing_pm_one_default_per_customer')],
            },
        ),
        migrations.CreateModel(
            name='TaxRate',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=100)),
                ('rate', models.DecimalField(decimal_places=2, max_digits=5, validators=[django.core.validators.MinValueValidator(Decimal('0')), django.core.validators.MaxValueValidator(Decimal('100'))])),
                ('tax_type', models.CharField(choices=[('sales_tax', 'Sales Tax'), ('vat', 'VAT'), ('gst', 'GST'), ('exempt', 'Exempt')], default='sales_tax', max_length=20)),
                ('region', models.CharField(blank=True, db_index=True, help_text='State, country or region code', max_length=50)),
                ('is_active', models.BooleanField(default=True)),
                ('description', models.CharField(blank=True, max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'ordering': ['name'],
                'indexes': [models.Index(fields=['tax_type', 'region'], name='billing_tax_type_region')],
            },
        ),
    ]
