# users/serializers.py
from django.conf import settings
from rest_framework import serializers

from payments.models import METHOD_CHOICES, Entitlement
from payments.serializers import PaymentPropertySerializer


class UnlockedPropertySerializer(serializers.ModelSerializer):
    property = PaymentPropertySerializer(read_only=True)
    payment_id = serializers.UUIDField(read_only=True)

    class Meta:
        model = Entitlement
        fields = ["property", "unlocked_at", "method", "payment_id"]
        read_only_fields = fields


class SubscriptionRequestSerializer(serializers.Serializer):
    plan = serializers.ChoiceField(choices=sorted(settings.SUBSCRIPTION_PLANS))
    duration = serializers.IntegerField(required=False, default=1, min_value=1,
                                        max_value=settings.SUBSCRIPTION_MAX_MONTHS)
    payment_method = serializers.ChoiceField(choices=METHOD_CHOICES)
    phone_number = serializers.CharField(required=False, allow_blank=True, max_length=20)
    email = serializers.EmailField(required=False)
