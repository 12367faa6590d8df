from django.contrib import admin

from .models import Property


@admin.register(Property)
class PropertyAdmin(admin.ModelAdmin):
    list_display = ("id", "title", "location", "price", "landlord", "is_available", "stats_views", "stats_unlocks")
    search_fields = ("title", "location", "landlord__email")
    list_filter = ("is_available", "created_at")
    readonly_fields = ("stats_views", "stats_unlocks", "created_at", "updated_at")
