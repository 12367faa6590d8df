# users/views.py
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from payments import services
from payments.exceptions import PaymentError
from payments.models import Entitlement
from payments.views import _error, _ok

from .serializers import SubscriptionRequestSerializer, UnlockedPropertySerializer


@extend_schema(description="Properties the current user has paid to unlock.",
               responses=UnlockedPropertySerializer(many=True))
class UnlockedPropertiesView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        qs = Entitlement.objects.filter(payer=request.user).select_related("property")
        data = UnlockedPropertySerializer(qs, many=True).data
        return Response({"success": True, "count": len(data), "data": data})


@extend_schema(
    description="Current subscription (GET) or start paying for a plan (POST). The plan is "
                "active once its payment completes.",
    request=SubscriptionRequestSerializer,
    parameters=[OpenApiParameter("Idempotency-Key", str, OpenApiParameter.HEADER, required=False)],
)
class SubscriptionView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        return Response({"success": True, "data": services.current_subscription(request.user)})

    def post(self, request):
        ser = SubscriptionRequestSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data
        try:
            instruction, created = services.start_subscription(
                request.user,
                data["plan"],
                method=data["payment_method"],
                months=data["duration"],
                idempotency_key=request.headers.get("Idempotency-Key") or None,
                phone_number=data.get("phone_number") or None,
                email=data.get("email"),
                metadata={
                    "ip_address": request.META.get("REMOTE_ADDR"),
                    "user_agent": request.headers.get("User-Agent", "")[:255],
                },
            )
        except PaymentError as e:
            return _error(e)
        return _ok(
            "Payment initiated" if created else "Payment already initiated",
            instruction,
            status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        )
