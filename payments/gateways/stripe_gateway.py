# payments/gateways/stripe_gateway.py
from __future__ import annotations

import logging
import time

import stripe
from django.conf import settings

from ..exceptions import AuthenticationError, GatewayError, ValidationError
from ..models import METHOD_STRIPE
from . import base

logger = logging.getLogger(__name__)

SUCCEEDED = "payment_intent.succeeded"
FAILED_EVENT = "payment_intent.payment_failed"
CANCELED_EVENT = "payment_intent.canceled"


def _field(obj, name, default=None):
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _minor_to_home(value):
    return None if value is None else int(value) // 100


def _gateway_error(e: Exception) -> GatewayError:
    if isinstance(e, stripe.APIConnectionError):
        return GatewayError("Payment provider unreachable", code="GATEWAY_TIMEOUT")
    return GatewayError(
        getattr(e, "user_message", None) or str(e) or "Stripe request failed",
        code=getattr(e, "code", None) or "STRIPE_ERROR",
        http_status=getattr(e, "http_status", None),
    )


def _receipt_url(intent):
    charge = _field(intent, "latest_charge")
    if isinstance(charge, (dict, stripe.StripeObject)):
        return _field(charge, "id"), _field(charge, "receipt_url")
    return charge, None


class StripeAdapter(base.GatewayAdapter):
    method = METHOD_STRIPE
    reference_field = "payment_intent_id"
    supports_verify = True
    supports_refund = True

    def _call(self, endpoint, fn, *, payment=None, request=None, **kwargs):
        started = time.monotonic()
        try:
            result = fn(api_key=settings.STRIPE_SECRET_KEY, **kwargs)
        except stripe.StripeError as e:
            base.log_call(METHOD_STRIPE, endpoint, payment=payment, request=request,
                          status_code=getattr(e, "http_status", None) or 0, error=str(e))
            raise _gateway_error(e)
        base.log_call(
            METHOD_STRIPE, endpoint, payment=payment, request=request, status_code=200,
            elapsed_ms=int((time.monotonic() - started) * 1000),
            response={"id": _field(result, "id"), "status": _field(result, "status")},
        )
        return result

    def _initiate(self, payment, **_):
        metadata = {
            "payment_id": str(payment.pk),
            "user_id": str(payment.payer_id),
            "property_id": str(payment.property_id or ""),
        }
        intent = self._call(
            "PaymentIntent.create", stripe.PaymentIntent.create, payment=payment,
            request={"amount": payment.amount * 100, "currency": "kes"},
            amount=payment.amount * 100,
            currency=payment.currency.lower(),
            metadata=metadata,
            idempotency_key=f"campusnest-{payment.pk}",
        )
        intent_id = _field(intent, "id")
        details = {"payment_intent_id": intent_id, "customer_id": _field(intent, "customer")}
        instruction = {
            "client_secret": _field(intent, "client_secret"),
            "payment_intent_id": intent_id,
        }
        return intent_id, details, instruction

    def verify(self, reference):
        intent = self._call("PaymentIntent.retrieve", stripe.PaymentIntent.retrieve, id=reference,
                            request={"id": reference})
        return self._outcome(intent)

    def _outcome(self, intent):
        status = _field(intent, "status")
        charge_id, receipt_url = _receipt_url(intent)
        details = {
            "payment_intent_id": _field(intent, "id"),
            "payment_method_id": _field(intent, "payment_method"),
            "charge_id": charge_id,
            "receipt_url": receipt_url,
        }
        if status == "succeeded":
            return base.Verification(base.CONFIRMED, details, amount=_minor_to_home(_field(intent, "amount_received")))
        last_error = _field(intent, "last_payment_error")
        error = None
        if status == "canceled" or last_error:
            error = {
                "error_code": _field(last_error, "code") or status,
                "error_message": _field(last_error, "message") or "Payment was not completed",
            }
        # a declined intent goes back to requires_payment_method and can still succeed
        if status == "canceled":
            return base.Verification(base.FAILED, details, error=error)
        return base.Verification(base.PENDING, details, error=error)

    def cancel(self, payment):
        intent_id = (payment.gateway_details or {}).get("payment_intent_id") or payment.gateway_reference
        if not intent_id:
            return False
        self._call(
            "PaymentIntent.cancel", stripe.PaymentIntent.cancel, payment=payment,
            request={"intent": intent_id}, intent=intent_id, cancellation_reason="abandoned",
        )
        return True

    def _refund(self, payment, amount, reason):
        intent_id = (payment.gateway_details or {}).get("payment_intent_id") or payment.gateway_reference
        refund = self._call(
            "Refund.create", stripe.Refund.create, payment=payment,
            request={"payment_intent": intent_id, "amount": amount * 100},
            payment_intent=intent_id,
            amount=amount * 100,
            metadata={"payment_id": str(payment.pk), "reason": reason[:500]},
        )
        refund_id = _field(refund, "id")
        return refund_id, {"refund_id": refund_id}

    def authenticate(self, raw_body, headers) -> None:
        if not settings.STRIPE_WEBHOOK_SECRET:
            logger.error("STRIPE_WEBHOOK_SECRET is not set; rejecting webhook")
            raise AuthenticationError("Webhook secret not configured")
        signature = headers.get("Stripe-Signature") or headers.get("stripe-signature") or ""
        try:
            stripe.Webhook.construct_event(raw_body, signature, settings.STRIPE_WEBHOOK_SECRET)
        except stripe.SignatureVerificationError as e:
            logger.warning("stripe webhook signature invalid: %s", e)
            raise AuthenticationError()
        except ValueError:
            raise ValidationError("Malformed Stripe event")

    def parse_notification(self, payload):
        event_type = (payload or {}).get("type") or ""
        intent = ((payload or {}).get("data") or {}).get("object") or {}
        if not intent.get("id"):
            raise ValidationError("Malformed Stripe event")

        if event_type not in (SUCCEEDED, FAILED_EVENT, CANCELED_EVENT):
            return base.Notification(event=event_type, reference_field=self.reference_field, reference=intent["id"])

        result = self._outcome(intent)
        if event_type == CANCELED_EVENT:
            result.outcome = base.FAILED
            result.error = result.error or {"error_code": "canceled", "error_message": "Payment was canceled"}
        elif event_type == FAILED_EVENT and result.outcome == base.PENDING:
            # the customer may retry the same intent; keep the record open
            result.outcome = None
        result.details["raw_response"] = {"id": payload.get("id"), "type": event_type}
        return base.Notification(
            event=event_type,
            reference_field=self.reference_field,
            reference=intent["id"],
            outcome=result.outcome,
            details=result.details,
            error=result.error,
            amount=result.amount,
        )
