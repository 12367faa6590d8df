import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


METHOD_CHOICES = [
    ("mpesa", "M-Pesa"),
    ("stripe", "Stripe"),
    ("paypal", "PayPal"),
    ("paystack", "Paystack"),
    ("bank", "Bank transfer"),
    ("cash", "Cash"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("properties", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("amount", models.PositiveIntegerField(help_text="Whole units of the home currency")),
                ("currency", models.CharField(default="KES", max_length=8)),
                ("method", models.CharField(choices=METHOD_CHOICES, max_length=16)),
                ("purpose", models.CharField(choices=[("unlock", "Unlock"), ("subscription", "Subscription"), ("featured", "Featured listing"), ("deposit", "Deposit"), ("rent", "Rent")], max_length=16)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("processing", "Processing"), ("completed", "Completed"), ("failed", "Failed"), ("refunded", "Refunded"), ("cancelled", "Cancelled")], default="pending", max_length=16)),
                ("idempotency_key", models.CharField(max_length=128)),
                ("gateway_reference", models.CharField(blank=True, max_length=128, null=True)),
                ("gateway_details", models.JSONField(blank=True, default=dict)),
                ("initiation_response", models.JSONField(blank=True, null=True)),
                ("error_details", models.JSONField(blank=True, null=True)),
                ("refund_details", models.JSONField(blank=True, null=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("invoice_number", models.CharField(blank=True, max_length=32, null=True, unique=True)),
                ("notes", models.TextField(blank=True, default="")),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("payer", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="payments", to=settings.AUTH_USER_MODEL)),
                ("property", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name="payments", to="properties.property")),
            ],
            options={
                "ordering": ("-created_at",),
                "indexes": [
                    models.Index(fields=["payer", "created_at"], name="payment_payer_created_idx"),
                    models.Index(fields=["status", "created_at"], name="payment_status_created_idx"),
                    models.Index(fields=["method", "status"], name="payment_method_status_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(condition=models.Q(("gateway_reference__isnull", False)), fields=("method", "gateway_reference"), name="uniq_payment_gateway_reference"),
                    models.UniqueConstraint(condition=models.Q(("status__in", ("pending", "processing"))), fields=("payer", "idempotency_key"), name="uniq_open_payment_per_key"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("kind", models.CharField(choices=[("transition", "Transition"), ("notification", "Notification"), ("reconcile", "Needs reconciliation")], max_length=16)),
                ("from_status", models.CharField(blank=True, default="", max_length=16)),
                ("to_status", models.CharField(blank=True, default="", max_length=16)),
                ("payload", models.JSONField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("payment", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="events", to="payments.payment")),
            ],
            options={
                "ordering": ("created_at", "id"),
            },
        ),
        migrations.CreateModel(
            name="Entitlement",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("method", models.CharField(choices=METHOD_CHOICES, max_length=16)),
                ("unlocked_at", models.DateTimeField(auto_now_add=True)),
                ("payer", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="entitlements", to=settings.AUTH_USER_MODEL)),
                ("property", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="entitlements", to="properties.property")),
                ("payment", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="entitlements", to="payments.payment")),
            ],
            options={
                "ordering": ("-unlocked_at",),
                "constraints": [
                    models.UniqueConstraint(fields=("payer", "property"), name="uniq_entitlement_per_payer_property"),
                ],
            },
        ),
        migrations.CreateModel(
            name="GatewayLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("provider", models.CharField(choices=METHOD_CHOICES, max_length=16)),
                ("endpoint", models.CharField(max_length=255)),
                ("http_method", models.CharField(default="POST", max_length=8)),
                ("status_code", models.IntegerField(default=0)),
                ("response_time_ms", models.IntegerField(blank=True, null=True)),
                ("error_message", models.CharField(blank=True, default="", max_length=255)),
                ("request_payload", models.JSONField(blank=True, default=dict)),
                ("response_payload", models.JSONField(blank=True, default=dict)),
                ("timestamp", models.DateTimeField(auto_now_add=True)),
                ("payment", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="gateway_logs", to="payments.payment")),
            ],
            options={
                "ordering": ("-timestamp",),
                "indexes": [
                    models.Index(fields=["provider", "timestamp"], name="gatewaylog_provider_ts_idx"),
                    models.Index(fields=["status_code", "timestamp"], name="gatewaylog_status_ts_idx"),
                ],
            },
        ),
    ]
