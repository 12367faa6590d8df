# payments/services.py
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from django.conf import settings
from django.utils import timezone

from properties.models import Property
from . import entitlements, ledger
from .exceptions import InvalidTransitionError, NotFoundError, PermissionDeniedError, ValidationError
from .gateways import CONFIRMED, PENDING, get_adapter
from .gateways.base import Verification, check_amount
from .gateways.mpesa import normalize_phone
from .models import (
    MANUAL_METHODS,
    METHOD_MPESA,
    METHOD_PAYPAL,
    OPEN_STATUSES,
    PURPOSE_SUBSCRIPTION,
    PURPOSE_UNLOCK,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_PROCESSING,
    Payment,
)

logger = logging.getLogger(__name__)


def is_admin(user) -> bool:
    return bool(getattr(user, "is_staff", False) or getattr(user, "is_platform_admin", False))


def _require_admin(user):
    if not is_admin(user):
        raise PermissionDeniedError("Admin access required")


# ---- initiation --------------------------------------------------------------

def start_unlock(
    user,
    property_id,
    *,
    method: str,
    idempotency_key: Optional[str] = None,
    phone_number: Optional[str] = None,
    email: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Tuple[Dict[str, Any], bool]:
    """
    Create (or reuse) the unlock payment and hand it to its gateway.
    Returns ``(instruction, created)``; a repeat of an in-flight request gets
    the original instruction back without contacting the gateway again.
    """
    target = Property.objects.filter(pk=property_id).first()
    if target is None:
        raise NotFoundError("Property not found")
    if entitlements.has_entitlement(user, target.pk):
        raise ValidationError("Property already unlocked", code="already_unlocked")

    return _start(
        user, target, settings.UNLOCK_FEE,
        purpose=PURPOSE_UNLOCK, what="property", method=method,
        idempotency_key=idempotency_key, phone_number=phone_number, email=email, metadata=metadata,
    )


def start_subscription(
    user,
    plan: str,
    *,
    method: str,
    months: int = 1,
    idempotency_key: Optional[str] = None,
    phone_number: Optional[str] = None,
    email: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Tuple[Dict[str, Any], bool]:
    """Pay for a subscription plan through the same gateways as an unlock. There is no property."""
    details = settings.SUBSCRIPTION_PLANS.get(plan)
    if details is None:
        raise ValidationError("Invalid subscription plan", code="invalid_plan")
    if not 1 <= months <= settings.SUBSCRIPTION_MAX_MONTHS:
        raise ValidationError(f"Duration must be 1 to {settings.SUBSCRIPTION_MAX_MONTHS} months")

    return _start(
        user, None, details["price"] * months,
        purpose=PURPOSE_SUBSCRIPTION, what="subscription", method=method,
        idempotency_key=idempotency_key or f"{PURPOSE_SUBSCRIPTION}:{plan}:{months}",
        phone_number=phone_number, email=email,
        metadata={**(metadata or {}), "plan": plan, "months": months},
    )


def _start(user, target, amount, *, purpose, what, method, idempotency_key, phone_number, email, metadata):
    adapter = get_adapter(method)
    extra = {"email": email}
    if method == METHOD_MPESA:
        extra["phone_number"] = normalize_phone(phone_number or getattr(user, "phone_number", None))

    payment, created = ledger.create(
        user, target, amount,
        method=method, purpose=purpose,
        metadata=metadata, idempotency_key=idempotency_key,
    )
    if not created:
        if payment.method != method:
            raise InvalidTransitionError(
                f"A payment for this {what} is already in progress via {payment.get_method_display()}",
                code="method_mismatch",
            )
        if payment.status == STATUS_PROCESSING and payment.initiation_response:
            logger.info("%s replay payment=%s", purpose, payment.pk)
            return payment.initiation_response, False
        raise InvalidTransitionError(f"A payment for this {what} is already in progress")

    initiation = adapter.initiate(payment, **extra)
    return initiation.instruction, True


def current_subscription(user) -> Optional[Dict[str, Any]]:
    """The latest completed subscription payment that has not run out, or None."""
    payment = (
        Payment.objects.filter(payer=user, purpose=PURPOSE_SUBSCRIPTION, status=STATUS_COMPLETED)
        .order_by("-completed_at")
        .first()
    )
    if payment is None:
        return None
    plan = payment.metadata.get("plan")
    expires_at = payment.completed_at + timedelta(days=30 * int(payment.metadata.get("months", 1)))
    if expires_at <= timezone.now():
        return None
    return {
        "plan": plan,
        "unlocks": settings.SUBSCRIPTION_PLANS.get(plan, {}).get("unlocks"),
        "started_at": payment.completed_at,
        "expires_at": expires_at,
        "payment_id": str(payment.pk),
    }


# ---- confirmation ------------------------------------------------------------

def apply_verification(payment: Payment, result: Verification) -> Tuple[Payment, bool]:
    if result.outcome == PENDING:
        return payment, False
    outcome, mismatch = check_amount(payment, result.outcome, result.amount)
    return ledger.settle(payment.pk, outcome == CONFIRMED, details=result.details, error=mismatch or result.error)


def reverify(payment: Payment) -> Tuple[Payment, bool]:
    """Ask the gateway about an open payment and settle it if the answer is final."""
    if payment.status not in OPEN_STATUSES:
        return payment, False
    adapter = get_adapter(payment.method)
    if not adapter.supports_verify:
        raise ValidationError(f"{payment.get_method_display()} payments cannot be verified on demand",
                              code="verify_unsupported")
    if not payment.gateway_reference:
        return payment, False
    return apply_verification(payment, adapter.verify(payment.gateway_reference))


def verify_reference(user, reference: str) -> Tuple[Payment, bool]:
    payment = (
        Payment.objects.select_related("property")
        .filter(payer=user, gateway_reference=reference)
        .first()
    )
    if payment is None:
        raise NotFoundError()
    return reverify(payment)


def execute_paypal(user, paypal_payment_id: str, payer_id: str) -> Tuple[Payment, bool]:
    payment = Payment.objects.filter(payer=user, method=METHOD_PAYPAL, gateway_reference=paypal_payment_id).first()
    if payment is None:
        raise NotFoundError()
    if payment.status not in OPEN_STATUSES:
        return payment, False
    return apply_verification(payment, get_adapter(METHOD_PAYPAL).execute(payment, payer_id))


# ---- admin -------------------------------------------------------------------

def refund_payment(actor, payment_id, amount: Optional[int], reason: str) -> Payment:
    _require_admin(actor)
    if not (reason or "").strip():
        raise ValidationError("A refund reason is required")
    payment = ledger.get(payment_id)
    return get_adapter(payment.method).refund(payment, amount, reason.strip(), actor)


def confirm_manual_payment(actor, payment_id, receipt_number: str = "", note: str = "") -> Payment:
    _require_admin(actor)
    payment = ledger.get(payment_id)
    if payment.method not in MANUAL_METHODS:
        raise ValidationError(f"{payment.get_method_display()} payments are confirmed by the gateway")
    if payment.status not in OPEN_STATUSES:
        raise InvalidTransitionError(f"Payment is already {payment.status}")
    payment, changed = ledger.settle(
        payment.pk, True,
        details={"receipt_number": receipt_number or None, "confirmed_by": actor.pk, "note": note or None},
        note=f"Confirmed by {actor.email}",
    )
    if not changed:
        raise InvalidTransitionError(f"Payment is already {payment.status}")
    return payment


def cancel_payment(user, payment_id) -> Payment:
    payment = ledger.get(payment_id)
    if payment.payer_id != user.pk and not is_admin(user):
        raise NotFoundError()
    return ledger.transition(payment.pk, STATUS_CANCELLED, note=f"Cancelled by {user.email}")
