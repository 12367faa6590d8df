from django.conf import settings
from django.db import models


class Property(models.Model):
    """
    A student-housing listing. Everything outside premium_details is public;
    premium_details (caretaker contact, exact address, directions) is only
    served to accounts holding an unlock entitlement.
    """
    landlord = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="properties"
    )
    title = models.CharField(max_length=200)
    location = models.CharField(max_length=200, help_text="Public area, e.g. 'Juja, near JKUAT gate C'")
    price = models.DecimalField(max_digits=10, decimal_places=2)
    is_available = models.BooleanField(default=True)

    premium_details = models.JSONField(default=dict, blank=True)

    stats_views = models.PositiveIntegerField(default=0)
    stats_unlocks = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at",)
        verbose_name_plural = "properties"

    def __str__(self):
        return f"{self.title} | {self.location}"
