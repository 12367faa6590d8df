# payments/gateways/paystack.py
import hashlib
import hmac
import logging
from decimal import ROUND_HALF_UP, Decimal

from django.conf import settings

from ..exceptions import AuthenticationError, GatewayError, ValidationError
from ..models import METHOD_PAYSTACK
from . import base

logger = logging.getLogger(__name__)


def subunits(amount) -> int:
    return int(Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP) * 100)


def reference_for(payment) -> str:
    return f"CN-{payment.pk.hex}"


def _base_url():
    return settings.PAYSTACK_BASE_URL.rstrip("/")


def _auth_headers():
    return {"Authorization": f"Bearer {settings.PAYSTACK_SECRET_KEY}", "Content-Type": "application/json"}


def valid_webhook(signature_header: str, raw_body: bytes) -> bool:
    if not signature_header:
        return False
    secret = settings.PAYSTACK_WEBHOOK_SECRET or settings.PAYSTACK_SECRET_KEY
    if not secret:
        return False
    digest = hmac.new(secret.encode(), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(digest, signature_header)


def _transaction_details(data):
    return {
        "reference": data.get("reference"),
        "status": data.get("status"),
        "channel": data.get("channel"),
        "currency": data.get("currency"),
        "paid_at": data.get("paid_at") or data.get("paidAt"),
    }


def _amount(data):
    value = data.get("amount")
    return None if value is None else int(value) // 100


class PaystackAdapter(base.GatewayAdapter):
    method = METHOD_PAYSTACK
    reference_field = "reference"
    supports_verify = True
    supports_refund = True

    def _initiate(self, payment, email=None, **_):
        email = email or payment.payer.email
        if not email:
            raise ValidationError("An email address is required for Paystack")
        reference = reference_for(payment)
        payload = {
            "email": email,
            "amount": subunits(payment.amount),
            "currency": payment.currency,
            "reference": reference,
            "callback_url": f"{settings.CLIENT_URL}/payment/paystack/callback",
            "metadata": {
                "payment_id": str(payment.pk),
                "property_id": str(payment.property_id or ""),
                "user_id": str(payment.payer_id),
            },
        }
        code, body = base.request(
            METHOD_PAYSTACK, "POST", f"{_base_url()}/transaction/initialize",
            endpoint="/transaction/initialize", payment=payment, headers=_auth_headers(), json=payload,
        )
        data = body.get("data") or {}
        if code != 200 or not body.get("status") or not data.get("authorization_url"):
            raise GatewayError(
                body.get("message") or "Failed to initialize Paystack transaction",
                code="PAYSTACK_REJECTED", http_status=code, response=body,
            )

        reference = data.get("reference") or reference
        details = {
            "reference": reference,
            "authorization_url": data["authorization_url"],
            "access_code": data.get("access_code"),
            "status": "initialized",
            "currency": payment.currency,
        }
        instruction = {"authorization_url": data["authorization_url"], "reference": reference}
        return reference, details, instruction

    def verify(self, reference):
        code, body = base.request(
            METHOD_PAYSTACK, "GET", f"{_base_url()}/transaction/verify/{reference}",
            endpoint="/transaction/verify", headers=_auth_headers(),
        )
        if code >= 500 or code == 0:
            raise GatewayError(body.get("message") or "Paystack verification failed",
                               code="PAYSTACK_UNAVAILABLE", http_status=code, response=body)

        data = body.get("data") or {}
        status_text = data.get("status")
        details = dict(_transaction_details(data), raw_response=body)
        if code == 200 and body.get("status") and status_text == "success":
            return base.Verification(base.CONFIRMED, details, amount=_amount(data))
        if status_text in {"failed", "abandoned", "reversed"}:
            return base.Verification(base.FAILED, details, error={
                "error_code": status_text.upper(),
                "error_message": data.get("gateway_response") or body.get("message") or "Payment not successful",
            })
        return base.Verification(base.PENDING, details)

    def _refund(self, payment, amount, reason):
        code, body = base.request(
            METHOD_PAYSTACK, "POST", f"{_base_url()}/refund",
            endpoint="/refund", payment=payment, headers=_auth_headers(),
            json={"transaction": payment.gateway_reference, "amount": subunits(amount), "merchant_note": reason[:255]},
        )
        data = body.get("data") or {}
        if code not in (200, 201) or not body.get("status"):
            raise GatewayError(body.get("message") or "Paystack refund failed",
                               code="PAYSTACK_REFUND_FAILED", http_status=code, response=body)
        refund_id = str(data.get("id")) if data.get("id") is not None else None
        return refund_id, {"refund_id": refund_id}

    def authenticate(self, raw_body, headers) -> None:
        if not (settings.PAYSTACK_WEBHOOK_SECRET or settings.PAYSTACK_SECRET_KEY):
            logger.error("Paystack secret is not set; rejecting webhook")
            raise AuthenticationError("Webhook secret not configured")
        signature = headers.get("X-Paystack-Signature") or headers.get("x-paystack-signature")
        if not valid_webhook(signature, raw_body):
            raise AuthenticationError()

    def parse_notification(self, payload):
        event = (payload or {}).get("event") or ""
        data = (payload or {}).get("data") or {}
        reference = data.get("reference")
        if not reference:
            raise ValidationError("Malformed Paystack event")

        details = dict(_transaction_details(data), raw_response={"event": event, "id": data.get("id")})
        if event == "charge.success" and data.get("status") == "success":
            return base.Notification(event, self.reference_field, reference, base.CONFIRMED, details,
                                     amount=_amount(data))
        if event == "charge.failed":
            return base.Notification(event, self.reference_field, reference, base.FAILED, details, error={
                "error_code": "CHARGE_FAILED",
                "error_message": data.get("gateway_response") or "Charge failed",
            })
        return base.Notification(event, self.reference_field, reference)
