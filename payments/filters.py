# payments/filters.py
import django_filters

from .models import METHOD_CHOICES, PURPOSE_CHOICES, STATUS_CHOICES, Payment


class PaymentFilter(django_filters.FilterSet):
    status = django_filters.ChoiceFilter(choices=STATUS_CHOICES)
    method = django_filters.ChoiceFilter(choices=METHOD_CHOICES)
    purpose = django_filters.ChoiceFilter(choices=PURPOSE_CHOICES)
    date_from = django_filters.DateFilter(field_name="created_at", lookup_expr="date__gte")
    date_to = django_filters.DateFilter(field_name="created_at", lookup_expr="date__lte")

    class Meta:
        model = Payment
        fields = ["status", "method", "purpose", "property"]
