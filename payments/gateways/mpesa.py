# payments/gateways/mpesa.py
"""
Safaricom Daraja STK push (Lipa na M-Pesa Online).

The customer approves the charge on their handset; Safaricom reports the
outcome to ``<MPESA_CALLBACK_URL>/<payment id>/``. There is no pull
verification and refunds are reversed by finance outside the API.
"""
from __future__ import annotations

import base64
import re
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Any, Dict, Optional

from django.conf import settings

from ..exceptions import GatewayError, ValidationError
from ..models import METHOD_MPESA
from . import base

EAT = dt_timezone(timedelta(hours=3), "EAT")

PHONE_RE = re.compile(r"^254[17]\d{8}$")


def normalize_phone(raw) -> str:
    """0712345678, +254712345678, 712345678 -> 254712345678"""
    digits = re.sub(r"[\s\-()]", "", str(raw or "")).lstrip("+")
    if digits.startswith("0") and len(digits) == 10:
        digits = "254" + digits[1:]
    elif len(digits) == 9 and digits[:1] in ("1", "7"):
        digits = "254" + digits
    if not PHONE_RE.match(digits):
        raise ValidationError("Enter a valid Safaricom number, e.g. 0712345678")
    return digits


def timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(dt_timezone.utc)
    return now.astimezone(EAT).strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, ts: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{ts}".encode()).decode()


def _base_url() -> str:
    return settings.MPESA_BASE_URL.rstrip("/")


def callback_url(payment) -> str:
    return f"{settings.MPESA_CALLBACK_URL.rstrip('/')}/{payment.pk}/"


def _items(callback: Dict[str, Any]) -> Dict[str, Any]:
    items = ((callback.get("CallbackMetadata") or {}).get("Item")) or []
    return {i.get("Name"): i.get("Value") for i in items if isinstance(i, dict)}


class MpesaAdapter(base.GatewayAdapter):
    method = METHOD_MPESA
    reference_field = "checkout_request_id"
    supports_verify = False
    supports_refund = False

    def access_token(self, payment=None) -> str:
        code, body = base.request(
            METHOD_MPESA, "GET", f"{_base_url()}/oauth/v1/generate",
            endpoint="/oauth/v1/generate", payment=payment,
            params={"grant_type": "client_credentials"},
            auth=(settings.MPESA_CONSUMER_KEY, settings.MPESA_CONSUMER_SECRET),
        )
        token = body.get("access_token")
        if code != 200 or not token:
            raise GatewayError(
                body.get("errorMessage") or "M-Pesa authentication failed",
                code=body.get("errorCode") or "MPESA_AUTH_FAILED", http_status=code, response=body,
            )
        return token

    def _initiate(self, payment, phone_number=None, **_):
        phone = normalize_phone(phone_number)
        ts = timestamp()
        shortcode = settings.MPESA_SHORTCODE
        token = self.access_token(payment)
        payload = {
            "BusinessShortCode": shortcode,
            "Password": stk_password(shortcode, settings.MPESA_PASSKEY, ts),
            "Timestamp": ts,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": payment.amount,
            "PartyA": phone,
            "PartyB": shortcode,
            "PhoneNumber": phone,
            "CallBackURL": callback_url(payment),
            "AccountReference": f"CN{payment.pk.hex[:10].upper()}",
            "TransactionDesc": base.describe(payment),
        }
        code, body = base.request(
            METHOD_MPESA, "POST", f"{_base_url()}/mpesa/stkpush/v1/processrequest",
            endpoint="/mpesa/stkpush/v1/processrequest", payment=payment,
            headers={"Authorization": f"Bearer {token}"}, json=payload,
        )
        checkout_id = body.get("CheckoutRequestID")
        if code != 200 or str(body.get("ResponseCode", "")) != "0" or not checkout_id:
            raise GatewayError(
                body.get("errorMessage") or body.get("ResponseDescription") or "M-Pesa request rejected",
                code=body.get("errorCode") or "MPESA_REJECTED", http_status=code, response=body,
            )

        details = {
            "phone_number": phone,
            "merchant_request_id": body.get("MerchantRequestID"),
            "checkout_request_id": checkout_id,
        }
        instruction = {
            "checkout_request_id": checkout_id,
            "merchant_request_id": body.get("MerchantRequestID"),
            "message": "Please check your phone for the M-Pesa prompt",
        }
        return checkout_id, details, instruction

    def authenticate(self, raw_body, headers) -> None:
        # Daraja does not sign callbacks; the payment id in the URL is checked by the ingestor.
        return None

    def parse_notification(self, payload):
        callback = ((payload or {}).get("Body") or {}).get("stkCallback")
        if not isinstance(callback, dict) or not callback.get("CheckoutRequestID"):
            raise ValidationError("Malformed M-Pesa callback")

        result_code = callback.get("ResultCode")
        try:
            result_code = int(result_code)
        except (TypeError, ValueError):
            raise ValidationError("Malformed M-Pesa callback")

        details = {
            "checkout_request_id": callback["CheckoutRequestID"],
            "merchant_request_id": callback.get("MerchantRequestID"),
            "result_code": result_code,
            "raw_response": callback,
        }
        if result_code == 0:
            items = _items(callback)
            details["mpesa_receipt_number"] = items.get("MpesaReceiptNumber")
            if items.get("TransactionDate") is not None:
                details["transaction_date"] = str(items["TransactionDate"])
            amount = items.get("Amount")
            return base.Notification(
                event="stkCallback",
                reference_field=self.reference_field,
                reference=callback["CheckoutRequestID"],
                outcome=base.CONFIRMED,
                details=details,
                amount=int(float(amount)) if amount is not None else None,
            )

        return base.Notification(
            event="stkCallback",
            reference_field=self.reference_field,
            reference=callback["CheckoutRequestID"],
            outcome=base.FAILED,
            details=details,
            error={"error_code": str(result_code), "error_message": callback.get("ResultDesc") or ""},
        )
