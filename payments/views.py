# payments/views.py
import logging

from django.conf import settings
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status
from rest_framework.pagination import PageNumberPagination
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from . import services
from .exceptions import (
    AuthenticationError,
    GatewayError,
    NotFoundError,
    PaymentError,
    UnknownPaymentError,
    ValidationError,
)
from .filters import PaymentFilter
from .ingest import ingest
from .models import METHOD_MPESA, METHOD_PAYSTACK, METHOD_STRIPE, STATUS_FAILED, Payment
from .serializers import (
    ConfirmRequestSerializer,
    PaymentDetailSerializer,
    PaymentSerializer,
    PaypalExecuteSerializer,
    RefundRequestSerializer,
    UnlockRequestSerializer,
)

logger = logging.getLogger(__name__)


# ---- helpers ----------------------------------------------------------------

class SafePaginator(PageNumberPagination):
    page_size = 25
    page_size_query_param = "page_size"
    max_page_size = 100


def _error(exc: PaymentError) -> Response:
    if isinstance(exc, GatewayError):
        body = {"success": False, "message": GatewayError.default_message, "code": exc.code}
        if settings.DEBUG:
            body["error"] = exc.message
        return Response(body, status=exc.status_code)
    return Response({"success": False, "message": exc.message, "code": exc.code}, status=exc.status_code)


def _ok(message, data=None, http_status=status.HTTP_200_OK) -> Response:
    body = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    return Response(body, status=http_status)


def _notification(method, request, expected_payment_id=None) -> Response:
    """Shared webhook handling. Only a forged or malformed notification gets a non-2xx."""
    raw = request.body
    try:
        payment, changed = ingest(method, raw, request.headers, expected_payment_id=expected_payment_id)
    except AuthenticationError as e:
        return Response({"success": False, "message": e.message}, status=status.HTTP_401_UNAUTHORIZED)
    except UnknownPaymentError as e:
        return Response({"success": True, "message": e.message}, status=status.HTTP_200_OK)
    except ValidationError as e:
        return Response({"success": False, "message": e.message}, status=status.HTTP_400_BAD_REQUEST)
    except PaymentError as e:
        logger.warning("%s notification not applied: %s", method, e.message)
        return Response({"success": True, "received": True}, status=status.HTTP_200_OK)
    return Response({"success": True, "received": True, "changed": changed, "payment_id": str(payment.pk)})


# ---- payer endpoints --------------------------------------------------------

@extend_schema(
    description="Start a pay-to-unlock payment for a property. Repeat requests with the same "
                "Idempotency-Key return the original instruction.",
    request=UnlockRequestSerializer,
    parameters=[OpenApiParameter("Idempotency-Key", str, OpenApiParameter.HEADER, required=False)],
)
class UnlockView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request, property_id: int):
        ser = UnlockRequestSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data
        try:
            instruction, created = services.start_unlock(
                request.user,
                property_id,
                method=data["payment_method"],
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


@extend_schema(description="Ask the gateway for the outcome of a payment (Paystack, Stripe, PayPal).")
class VerifyView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, reference: str):
        try:
            payment, changed = services.verify_reference(request.user, reference)
        except PaymentError as e:
            return _error(e)
        message = "Payment verified successfully" if changed else f"Payment is {payment.status}"
        return _ok(message, {
            "payment_id": str(payment.pk),
            "property_id": payment.property_id,
            "status": payment.status,
        })


@extend_schema(description="Capture an approved PayPal payment.", request=PaypalExecuteSerializer)
class PaypalExecuteView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request):
        ser = PaypalExecuteSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        try:
            payment, _ = services.execute_paypal(
                request.user, ser.validated_data["paymentId"], ser.validated_data["PayerID"],
            )
        except PaymentError as e:
            return _error(e)
        if payment.status == STATUS_FAILED:
            return Response({"success": False, "message": "Payment execution failed"},
                            status=status.HTTP_400_BAD_REQUEST)
        return _ok("Payment successful", PaymentSerializer(payment).data)


@extend_schema(description="Payment history for the current user.", responses=PaymentSerializer(many=True))
class PaymentHistoryView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        qs = Payment.objects.filter(payer=request.user).select_related("property")
        qs = PaymentFilter(request.query_params, queryset=qs).qs.order_by("-created_at")
        paginator = SafePaginator()
        page = paginator.paginate_queryset(qs, request)
        return paginator.get_paginated_response(PaymentSerializer(page, many=True).data)


@extend_schema(description="A single payment with its status history.", responses=PaymentDetailSerializer)
class PaymentDetailView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, payment_id):
        qs = Payment.objects.select_related("property").prefetch_related("events")
        if not services.is_admin(request.user):
            qs = qs.filter(payer=request.user)
        payment = qs.filter(pk=payment_id).first()
        if payment is None:
            return _error(NotFoundError())
        return _ok("Payment", PaymentDetailSerializer(payment).data)


@extend_schema(description="Cancel a payment that has not reached the gateway yet.")
class CancelView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request, payment_id):
        try:
            payment = services.cancel_payment(request.user, payment_id)
        except PaymentError as e:
            return _error(e)
        return _ok("Payment cancelled", PaymentSerializer(payment).data)


# ---- admin endpoints --------------------------------------------------------

@extend_schema(description="Refund a completed payment and revoke its unlock (admin).", request=RefundRequestSerializer)
class RefundView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request):
        ser = RefundRequestSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data
        try:
            payment = services.refund_payment(request.user, data["payment_id"], data.get("amount"), data["reason"])
        except PaymentError as e:
            return _error(e)
        return _ok("Payment refunded", PaymentSerializer(payment).data)


@extend_schema(description="Confirm a bank or cash payment (admin).", request=ConfirmRequestSerializer)
class ConfirmView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request, payment_id):
        ser = ConfirmRequestSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        try:
            payment = services.confirm_manual_payment(
                request.user, payment_id,
                receipt_number=ser.validated_data.get("receipt_number", ""),
                note=ser.validated_data.get("note", ""),
            )
        except PaymentError as e:
            return _error(e)
        return _ok("Payment confirmed", PaymentSerializer(payment).data)


# ---- gateway notifications --------------------------------------------------

@method_decorator(csrf_exempt, name="dispatch")
class MpesaCallbackView(APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    @extend_schema(exclude=True)
    def post(self, request, payment_id):
        return _notification(METHOD_MPESA, request, expected_payment_id=payment_id)


@method_decorator(csrf_exempt, name="dispatch")
class StripeWebhookView(APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    @extend_schema(exclude=True)
    def post(self, request):
        return _notification(METHOD_STRIPE, request)


@method_decorator(csrf_exempt, name="dispatch")
class PaystackWebhookView(APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    @extend_schema(exclude=True)
    def post(self, request):
        return _notification(METHOD_PAYSTACK, request)
