from django.contrib import admin

from .models import PaymentEmail


@admin.register(PaymentEmail)
class PaymentEmailAdmin(admin.ModelAdmin):
    list_display = ("id", "payment", "event", "to", "status", "sent_at")
    search_fields = ("to", "payment__id", "payment__invoice_number")
    list_filter = ("event", "status")
    raw_id_fields = ("payment",)
    readonly_fields = ("payment", "event", "to", "subject", "body", "status", "error", "sent_at", "created_at")
