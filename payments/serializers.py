# payments/serializers.py
from rest_framework import serializers

from .models import METHOD_CHOICES, Payment, PaymentEvent


class UnlockRequestSerializer(serializers.Serializer):
    payment_method = serializers.ChoiceField(choices=METHOD_CHOICES)
    phone_number = serializers.CharField(required=False, allow_blank=True, max_length=20)
    email = serializers.EmailField(required=False)


class PaypalExecuteSerializer(serializers.Serializer):
    paymentId = serializers.CharField(max_length=128)
    PayerID = serializers.CharField(max_length=64)


class RefundRequestSerializer(serializers.Serializer):
    payment_id = serializers.UUIDField()
    amount = serializers.IntegerField(required=False, min_value=1)
    reason = serializers.CharField(max_length=500)


class ConfirmRequestSerializer(serializers.Serializer):
    receipt_number = serializers.CharField(required=False, allow_blank=True, max_length=64)
    note = serializers.CharField(required=False, allow_blank=True, max_length=500)


class PaymentPropertySerializer(serializers.Serializer):
    id = serializers.IntegerField()
    title = serializers.CharField()
    location = serializers.CharField()
    price = serializers.DecimalField(max_digits=10, decimal_places=2)


class PaymentEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = PaymentEvent
        fields = ["kind", "from_status", "to_status", "created_at"]
        read_only_fields = fields


class PaymentSerializer(serializers.ModelSerializer):
    property = PaymentPropertySerializer(read_only=True)

    class Meta:
        model = Payment
        fields = [
            "id", "property", "amount", "currency", "method", "purpose", "status",
            "gateway_reference", "invoice_number", "error_details", "refund_details",
            "completed_at", "created_at", "updated_at",
        ]
        read_only_fields = fields


class PaymentDetailSerializer(PaymentSerializer):
    events = PaymentEventSerializer(many=True, read_only=True)

    class Meta(PaymentSerializer.Meta):
        fields = PaymentSerializer.Meta.fields + ["events"]
        read_only_fields = fields
