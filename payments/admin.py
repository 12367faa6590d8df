from __future__ import annotations

from django.contrib import admin, messages

from . import ledger
from .exceptions import PaymentError
from .models import Entitlement, GatewayLog, Payment, PaymentEvent
from .services import reverify


# -----------------------------
# Helpers
# -----------------------------

def _short(s, n=120):
    if s is None:
        return ""
    s = str(s)
    return s[:n] + ("..." if len(s) > n else "")


class PaymentEventInline(admin.TabularInline):
    model = PaymentEvent
    extra = 0
    can_delete = False
    fields = ("kind", "from_status", "to_status", "payload", "created_at")
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


class ReconciliationFilter(admin.SimpleListFilter):
    title = "reconciliation"
    parameter_name = "reconcile"

    def lookups(self, request, model_admin):
        return (("yes", "Needs reconciliation"),)

    def queryset(self, request, queryset):
        if self.value() == "yes":
            return queryset.filter(pk__in=ledger.needs_reconciliation().values("pk"))
        return queryset


# -----------------------------
# Payments
# -----------------------------
@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "payer",
        "property",
        "method",
        "purpose",
        "amount",
        "currency",
        "status",
        "gateway_reference",
        "created_at",
    )
    search_fields = ("id", "gateway_reference", "invoice_number", "payer__email", "property__title")
    list_filter = (ReconciliationFilter, "method", "status", "purpose", "created_at")
    date_hierarchy = "created_at"
    ordering = ("-created_at",)
    inlines = (PaymentEventInline,)

    # Status changes go through the ledger; nothing here is editable.
    readonly_fields = (
        "id", "payer", "property", "amount", "currency", "method", "purpose", "status",
        "idempotency_key", "gateway_reference", "gateway_details", "initiation_response",
        "error_details", "refund_details", "metadata", "invoice_number", "notes",
        "completed_at", "created_at", "updated_at",
    )

    actions = ("admin_reverify",)

    def has_delete_permission(self, request, obj=None):
        return False

    @admin.action(description="Re-verify with gateway")
    def admin_reverify(self, request, queryset):
        updated = 0
        for payment in queryset:
            try:
                _, changed = reverify(payment)
                updated += int(changed)
            except PaymentError as e:
                self.message_user(request, f"{payment.pk}: {e.message}", level=messages.WARNING)
        self.message_user(request, f"Re-verify complete. Updated {updated} payment(s).", level=messages.INFO)


@admin.register(Entitlement)
class EntitlementAdmin(admin.ModelAdmin):
    list_display = ("payer", "property", "method", "payment", "unlocked_at")
    search_fields = ("payer__email", "property__title", "payment__id")
    list_filter = ("method", "unlocked_at")
    readonly_fields = ("payer", "property", "method", "payment", "unlocked_at")


# -----------------------------
# Gateway logs
# -----------------------------
@admin.register(GatewayLog)
class GatewayLogAdmin(admin.ModelAdmin):
    list_display = ("provider", "endpoint", "http_method", "status_code", "response_time_ms", "timestamp", "response_preview")
    list_filter = ("provider", "status_code", "timestamp")
    search_fields = ("endpoint", "payment__id", "error_message")
    date_hierarchy = "timestamp"
    ordering = ("-timestamp",)
    readonly_fields = (
        "payment", "provider", "endpoint", "http_method", "status_code", "response_time_ms",
        "error_message", "request_payload", "response_payload", "timestamp",
    )

    @admin.display(description="Response")
    def response_preview(self, obj: GatewayLog) -> str:
        return _short(obj.response_payload)
