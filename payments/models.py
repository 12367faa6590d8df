# payments/models.py
import uuid

from django.conf import settings
from django.db import models
from django.db.models import Q

from properties.models import Property


METHOD_MPESA = "mpesa"
METHOD_STRIPE = "stripe"
METHOD_PAYPAL = "paypal"
METHOD_PAYSTACK = "paystack"
METHOD_BANK = "bank"
METHOD_CASH = "cash"

METHOD_CHOICES = [
    (METHOD_MPESA, "M-Pesa"),
    (METHOD_STRIPE, "Stripe"),
    (METHOD_PAYPAL, "PayPal"),
    (METHOD_PAYSTACK, "Paystack"),
    (METHOD_BANK, "Bank transfer"),
    (METHOD_CASH, "Cash"),
]
MANUAL_METHODS = {METHOD_BANK, METHOD_CASH}

PURPOSE_UNLOCK = "unlock"
PURPOSE_SUBSCRIPTION = "subscription"
PURPOSE_CHOICES = [
    (PURPOSE_UNLOCK, "Unlock"),
    (PURPOSE_SUBSCRIPTION, "Subscription"),
    ("featured", "Featured listing"),
    ("deposit", "Deposit"),
    ("rent", "Rent"),
]

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_REFUNDED = "refunded"
STATUS_CANCELLED = "cancelled"

STATUS_CHOICES = [
    (STATUS_PENDING, "Pending"),
    (STATUS_PROCESSING, "Processing"),
    (STATUS_COMPLETED, "Completed"),
    (STATUS_FAILED, "Failed"),
    (STATUS_REFUNDED, "Refunded"),
    (STATUS_CANCELLED, "Cancelled"),
]
OPEN_STATUSES = (STATUS_PENDING, STATUS_PROCESSING)


class Payment(models.Model):
    """
    One attempt to pay for an unlock, subscription, etc. Append-only: records
    are never deleted, refunds and cancellations are status changes.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    payer = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="payments")
    property = models.ForeignKey(
        Property, on_delete=models.PROTECT, related_name="payments", null=True, blank=True
    )

    amount = models.PositiveIntegerField(help_text="Whole units of the home currency")
    currency = models.CharField(max_length=8, default="KES")
    method = models.CharField(max_length=16, choices=METHOD_CHOICES)
    purpose = models.CharField(max_length=16, choices=PURPOSE_CHOICES)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_PENDING)

    idempotency_key = models.CharField(max_length=128)

    # Gateway correlation; shape of gateway_details is decided by `method`
    gateway_reference = models.CharField(max_length=128, blank=True, null=True)
    gateway_details = models.JSONField(default=dict, blank=True)
    initiation_response = models.JSONField(blank=True, null=True)

    error_details = models.JSONField(blank=True, null=True)
    refund_details = models.JSONField(blank=True, null=True)

    metadata = models.JSONField(default=dict, blank=True)
    invoice_number = models.CharField(max_length=32, blank=True, null=True, unique=True)
    notes = models.TextField(blank=True, default="")

    completed_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at",)
        indexes = [
            models.Index(fields=["payer", "created_at"], name="payment_payer_created_idx"),
            models.Index(fields=["status", "created_at"], name="payment_status_created_idx"),
            models.Index(fields=["method", "status"], name="payment_method_status_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["method", "gateway_reference"],
                condition=Q(gateway_reference__isnull=False),
                name="uniq_payment_gateway_reference",
            ),
            models.UniqueConstraint(
                fields=["payer", "idempotency_key"],
                condition=Q(status__in=OPEN_STATUSES),
                name="uniq_open_payment_per_key",
            ),
        ]

    def __str__(self):
        return f"{self.payer_id} | {self.method} | {self.purpose} | {self.currency} {self.amount} | {self.status}"


class PaymentEvent(models.Model):
    """History row per status change and per inbound gateway notification."""

    KIND_TRANSITION = "transition"
    KIND_NOTIFICATION = "notification"
    KIND_RECONCILE = "reconcile"  # gateway says paid, ledger already closed the record
    KIND_CHOICES = [
        (KIND_TRANSITION, "Transition"),
        (KIND_NOTIFICATION, "Notification"),
        (KIND_RECONCILE, "Needs reconciliation"),
    ]

    payment = models.ForeignKey(Payment, on_delete=models.PROTECT, related_name="events")
    kind = models.CharField(max_length=16, choices=KIND_CHOICES)
    from_status = models.CharField(max_length=16, blank=True, default="")
    to_status = models.CharField(max_length=16, blank=True, default="")
    payload = models.JSONField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("created_at", "id")

    def __str__(self):
        if self.kind == self.KIND_TRANSITION:
            return f"{self.payment_id} {self.from_status} -> {self.to_status}"
        return f"{self.payment_id} {self.kind}"


class Entitlement(models.Model):
    """Proof that `payer` paid to see the premium details of `property`."""

    payer = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="entitlements")
    property = models.ForeignKey(Property, on_delete=models.CASCADE, related_name="entitlements")
    payment = models.ForeignKey(Payment, on_delete=models.PROTECT, related_name="entitlements")
    method = models.CharField(max_length=16, choices=METHOD_CHOICES)
    unlocked_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("-unlocked_at",)
        constraints = [
            models.UniqueConstraint(fields=["payer", "property"], name="uniq_entitlement_per_payer_property"),
        ]

    def __str__(self):
        return f"{self.payer_id} unlocked {self.property_id} via {self.method}"


class GatewayLog(models.Model):
    """Outbound gateway I/O with masked payloads."""

    payment = models.ForeignKey(Payment, on_delete=models.SET_NULL, null=True, blank=True, related_name="gateway_logs")
    provider = models.CharField(max_length=16, choices=METHOD_CHOICES)
    endpoint = models.CharField(max_length=255)
    http_method = models.CharField(max_length=8, default="POST")
    status_code = models.IntegerField(default=0)
    response_time_ms = models.IntegerField(blank=True, null=True)
    error_message = models.CharField(max_length=255, blank=True, default="")

    request_payload = models.JSONField(default=dict, blank=True)
    response_payload = models.JSONField(default=dict, blank=True)

    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("-timestamp",)
        indexes = [
            models.Index(fields=["provider", "timestamp"], name="gatewaylog_provider_ts_idx"),
            models.Index(fields=["status_code", "timestamp"], name="gatewaylog_status_ts_idx"),
        ]

    def __str__(self):
        return f"{self.provider} | {self.endpoint} | {self.status_code}"
