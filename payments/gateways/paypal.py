# payments/gateways/paypal.py
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from django.conf import settings

from ..exceptions import GatewayError, ValidationError
from ..models import METHOD_PAYPAL
from . import base

LIVE_URL = "https://api-m.paypal.com"
SANDBOX_URL = "https://api-m.sandbox.paypal.com"


def _base_url() -> str:
    return LIVE_URL if settings.PAYPAL_MODE.lower() == "live" else SANDBOX_URL


def to_usd(amount_kes: int) -> str:
    rate = Decimal(str(settings.PAYPAL_KES_PER_USD))
    usd = (Decimal(amount_kes) / rate).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return f"{usd:.2f}"


def _sale(body):
    try:
        return body["transactions"][0]["related_resources"][0]["sale"]
    except (KeyError, IndexError, TypeError):
        return {}


def _rejected(code, body, fallback):
    return GatewayError(
        body.get("message") or fallback,
        code=body.get("name") or "PAYPAL_ERROR", http_status=code, response=body,
    )


class PaypalAdapter(base.GatewayAdapter):
    method = METHOD_PAYPAL
    reference_field = "payment_id"
    supports_verify = True
    supports_refund = True

    def access_token(self, payment=None) -> str:
        code, body = base.request(
            METHOD_PAYPAL, "POST", f"{_base_url()}/v1/oauth2/token",
            endpoint="/v1/oauth2/token", payment=payment,
            data={"grant_type": "client_credentials"},
            auth=(settings.PAYPAL_CLIENT_ID, settings.PAYPAL_CLIENT_SECRET),
        )
        token = body.get("access_token")
        if code != 200 or not token:
            raise GatewayError("PayPal authentication failed", code="PAYPAL_AUTH_FAILED", http_status=code, response=body)
        return token

    def _headers(self, payment=None):
        return {"Authorization": f"Bearer {self.access_token(payment)}", "Content-Type": "application/json"}

    def _initiate(self, payment, **_):
        total = to_usd(payment.amount)
        payload = {
            "intent": "sale",
            "payer": {"payment_method": "paypal"},
            "redirect_urls": {
                "return_url": f"{settings.CLIENT_URL}/payment/success?paymentId={payment.pk}",
                "cancel_url": f"{settings.CLIENT_URL}/payment/cancel?paymentId={payment.pk}",
            },
            "transactions": [{
                "amount": {"currency": "USD", "total": total},
                "description": base.describe(payment),
                "custom": str(payment.pk),
            }],
        }
        code, body = base.request(
            METHOD_PAYPAL, "POST", f"{_base_url()}/v1/payments/payment",
            endpoint="/v1/payments/payment", payment=payment,
            headers=self._headers(payment), json=payload,
        )
        links = {link.get("rel"): link.get("href") for link in body.get("links") or [] if isinstance(link, dict)}
        if code not in (200, 201) or not body.get("id") or not links.get("approval_url"):
            raise _rejected(code, body, "PayPal payment could not be created")

        details = {"payment_id": body["id"], "approval_url": links["approval_url"], "usd_total": total}
        instruction = {"paypal_payment_id": body["id"], "approval_url": links["approval_url"]}
        return body["id"], details, instruction

    def execute(self, payment, payer_id: str) -> base.Verification:
        """Capture an approved PayPal payment. Returns the outcome for the ledger to settle."""
        if not payer_id:
            raise ValidationError("PayerID is required")
        paypal_id = payment.gateway_reference
        code, body = base.request(
            METHOD_PAYPAL, "POST", f"{_base_url()}/v1/payments/payment/{paypal_id}/execute",
            endpoint="/v1/payments/payment/execute", payment=payment,
            headers=self._headers(payment), json={"payer_id": payer_id},
        )
        if code >= 500:
            raise _rejected(code, body, "PayPal is unavailable")
        if code != 200 or body.get("state") != "approved":
            return base.Verification(base.FAILED, {"payer_id": payer_id}, error={
                "error_code": body.get("name") or "PAYPAL_EXECUTE_FAILED",
                "error_message": body.get("message") or "Payment execution failed",
            })
        return self._outcome(body, payer_id=payer_id)

    def verify(self, reference):
        code, body = base.request(
            METHOD_PAYPAL, "GET", f"{_base_url()}/v1/payments/payment/{reference}",
            endpoint="/v1/payments/payment", headers=self._headers(),
        )
        if code == 404:
            return base.Verification(base.FAILED, error={"error_code": "NOT_FOUND", "error_message": "Unknown PayPal payment"})
        if code != 200:
            raise _rejected(code, body, "PayPal verification failed")
        state = body.get("state")
        if state == "approved":
            return self._outcome(body)
        if state in ("failed", "canceled", "expired"):
            return base.Verification(base.FAILED, error={"error_code": state.upper(), "error_message": f"PayPal payment {state}"})
        return base.Verification(base.PENDING)

    def _outcome(self, body, payer_id=None):
        sale = _sale(body)
        payer_info = ((body.get("payer") or {}).get("payer_info")) or {}
        details = {
            "payer_id": payer_id or payer_info.get("payer_id"),
            "sale_id": sale.get("id"),
            "payer_email": payer_info.get("email"),
            "raw_response": {"id": body.get("id"), "state": body.get("state")},
        }
        if sale and sale.get("state") not in (None, "completed"):
            return base.Verification(base.PENDING, details)
        return base.Verification(base.CONFIRMED, details)

    def _refund(self, payment, amount, reason):
        sale_id = (payment.gateway_details or {}).get("sale_id")
        if not sale_id:
            raise ValidationError("PayPal payment has no captured sale to refund")
        code, body = base.request(
            METHOD_PAYPAL, "POST", f"{_base_url()}/v1/payments/sale/{sale_id}/refund",
            endpoint="/v1/payments/sale/refund", payment=payment, headers=self._headers(payment),
            json={"amount": {"total": to_usd(amount), "currency": "USD"}, "description": reason[:255]},
        )
        if code not in (200, 201) or not body.get("id"):
            raise _rejected(code, body, "PayPal refund failed")
        return body["id"], {"refund_id": body["id"]}
