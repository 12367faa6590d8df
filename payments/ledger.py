# payments/ledger.py
"""
Payment ledger: the only code allowed to change ``Payment.status``.

Every status write happens under ``select_for_update`` inside
``transaction.atomic``. The entitlement grant (on completion) and revoke (on
refund) run inside that same transaction, so a payment can never be
``completed`` without its unlock, or ``refunded`` while the unlock survives.
"""
from __future__ import annotations

import logging
from dataclasses import fields
from functools import partial
from typing import Any, Dict, Optional, Tuple

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction
from django.utils import timezone

from notifications.utils import send_payment_email
from . import entitlements
from .details import REFERENCE_FIELD, details_class, empty_details, merge_details
from .exceptions import InvalidTransitionError, NotFoundError, ValidationError
from .models import (
    METHOD_CHOICES,
    OPEN_STATUSES,
    PURPOSE_CHOICES,
    PURPOSE_UNLOCK,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_REFUNDED,
    Payment,
    PaymentEvent,
)

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    STATUS_PENDING: frozenset({STATUS_PROCESSING, STATUS_CANCELLED, STATUS_FAILED}),
    STATUS_PROCESSING: frozenset({STATUS_COMPLETED, STATUS_FAILED}),
    STATUS_COMPLETED: frozenset({STATUS_REFUNDED}),
    STATUS_FAILED: frozenset(),
    STATUS_REFUNDED: frozenset(),
    STATUS_CANCELLED: frozenset(),
}

METHODS = {value for value, _ in METHOD_CHOICES}
PURPOSES = {value for value, _ in PURPOSE_CHOICES}


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


def derive_idempotency_key(purpose: str, target=None) -> str:
    return f"{purpose}:{target.pk if target is not None else '-'}"


# ---- reads -------------------------------------------------------------------

def get(payment_id) -> Payment:
    try:
        return Payment.objects.select_related("payer", "property").get(pk=payment_id)
    except (Payment.DoesNotExist, ValueError, DjangoValidationError):
        raise NotFoundError()


def find_by_gateway_reference(method: str, reference_field: str, value) -> Optional[Payment]:
    """
    Locate the payment a gateway notification refers to. Gateways call back
    with their own identifiers, never with our payment id.
    """
    if method not in METHODS:
        raise ValidationError(f"Unsupported payment method: {method}")
    if value in (None, ""):
        return None

    qs = Payment.objects.select_related("payer", "property").filter(method=method)
    if reference_field == REFERENCE_FIELD.get(method):
        return qs.filter(gateway_reference=str(value)).first()

    allowed = {f.name for f in fields(details_class(method))}
    if reference_field not in allowed:
        raise ValidationError(f"{reference_field} is not a {method} reference field")
    return qs.filter(**{f"gateway_details__{reference_field}": value}).first()


# ---- writes ------------------------------------------------------------------

def create(
    payer,
    target,
    amount: int,
    *,
    method: str,
    purpose: str,
    currency: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    idempotency_key: Optional[str] = None,
) -> Tuple[Payment, bool]:
    """
    Create a pending payment. Returns ``(payment, created)``; while an open
    (pending/processing) payment with the same idempotency key exists for the
    payer, that payment is returned instead of a new one.
    """
    if method not in METHODS:
        raise ValidationError(f"Invalid payment method: {method}")
    if purpose not in PURPOSES:
        raise ValidationError(f"Invalid payment type: {purpose}")
    if purpose == PURPOSE_UNLOCK and target is None:
        raise ValidationError("A property is required to unlock")
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationError("Amount must be a positive whole number")

    key = (idempotency_key or derive_idempotency_key(purpose, target))[:128]

    existing = _open_by_key(payer, key)
    if existing is not None:
        return existing, False

    try:
        with transaction.atomic():
            payment = Payment.objects.create(
                payer=payer,
                property=target,
                amount=amount,
                currency=currency or settings.PAYMENT_HOME_CURRENCY,
                method=method,
                purpose=purpose,
                idempotency_key=key,
                gateway_details=empty_details(method),
                metadata=metadata or {},
            )
            PaymentEvent.objects.create(
                payment=payment, kind=PaymentEvent.KIND_TRANSITION, to_status=STATUS_PENDING
            )
    except IntegrityError:
        # Lost the race against an identical request
        existing = _open_by_key(payer, key)
        if existing is None:
            raise
        return existing, False

    logger.info("payment created id=%s payer=%s method=%s purpose=%s", payment.pk, payer.pk, method, purpose)
    return payment, True


def transition(
    payment_id,
    new_status: str,
    *,
    details: Optional[Dict[str, Any]] = None,
    reference: Optional[str] = None,
    response: Optional[Dict[str, Any]] = None,
    error: Optional[Dict[str, Any]] = None,
    refund: Optional[Dict[str, Any]] = None,
    note: Optional[str] = None,
) -> Payment:
    with transaction.atomic():
        payment = _lock(payment_id)
        _apply(
            payment, new_status,
            details=details, reference=reference, response=response,
            error=error, refund=refund, note=note,
        )
    return payment


def settle(
    payment_id,
    succeeded: bool,
    *,
    details: Optional[Dict[str, Any]] = None,
    error: Optional[Dict[str, Any]] = None,
    note: Optional[str] = None,
) -> Tuple[Payment, bool]:
    """
    Apply a gateway's final word. Returns ``(payment, changed)``.

    A payment that has already left pending/processing is returned untouched,
    which makes duplicate webhook deliveries and verify-after-webhook harmless.
    A pending payment steps through processing on its way to completed.
    """
    with transaction.atomic():
        payment = _lock(payment_id)
        if payment.status not in OPEN_STATUSES:
            if succeeded and payment.status in (STATUS_FAILED, STATUS_CANCELLED):
                _flag_for_reconciliation(payment, details)
            else:
                logger.info("payment %s already %s; outcome ignored", payment.pk, payment.status)
            return payment, False
        if succeeded:
            if payment.status == STATUS_PENDING:
                _apply(payment, STATUS_PROCESSING)
            _apply(payment, STATUS_COMPLETED, details=details, note=note)
        else:
            _apply(payment, STATUS_FAILED, details=details, error=error, note=note)
    return payment, True


def record_notification(payment: Payment, payload: Dict[str, Any]) -> PaymentEvent:
    return PaymentEvent.objects.create(payment=payment, kind=PaymentEvent.KIND_NOTIFICATION, payload=payload)


def needs_reconciliation():
    """Closed payments the gateway later reported as paid."""
    return Payment.objects.filter(events__kind=PaymentEvent.KIND_RECONCILE).distinct()


# ---- internals ---------------------------------------------------------------

def _lock(payment_id) -> Payment:
    try:
        return Payment.objects.select_for_update().get(pk=payment_id)
    except (Payment.DoesNotExist, ValueError, DjangoValidationError):
        raise NotFoundError()


def _flag_for_reconciliation(payment: Payment, details) -> None:
    logger.error(
        "payment %s is %s but the gateway confirmed it; manual reconciliation needed (payer=%s, %s %s)",
        payment.pk, payment.status, payment.payer_id, payment.currency, payment.amount,
    )
    PaymentEvent.objects.create(
        payment=payment,
        kind=PaymentEvent.KIND_RECONCILE,
        from_status=payment.status,
        payload={"gateway_outcome": "confirmed", "details": details or {}},
    )


def _open_by_key(payer, key: str) -> Optional[Payment]:
    return Payment.objects.filter(payer=payer, idempotency_key=key, status__in=OPEN_STATUSES).first()


def _invoice_number(payment: Payment, when) -> str:
    return f"INV-{when:%Y%m}-{payment.pk.hex[:8].upper()}"


def _apply(
    payment: Payment,
    new_status: str,
    *,
    details=None,
    reference=None,
    response=None,
    error=None,
    refund=None,
    note=None,
) -> None:
    old_status = payment.status
    if not can_transition(old_status, new_status):
        if new_status == STATUS_REFUNDED:
            raise InvalidTransitionError("Can only refund completed payments")
        raise InvalidTransitionError(f"Cannot move payment from {old_status} to {new_status}")

    if details:
        payment.gateway_details = merge_details(payment.method, payment.gateway_details, details)
    if reference:
        payment.gateway_reference = str(reference)
    if response is not None:
        payment.initiation_response = response
    if note:
        payment.notes = f"{payment.notes}\n{note}".strip()

    now = timezone.now()
    if new_status == STATUS_FAILED:
        previous = Payment.objects.filter(
            payer_id=payment.payer_id, idempotency_key=payment.idempotency_key, status=STATUS_FAILED
        ).exclude(pk=payment.pk).count()
        error = error or {}
        payment.error_details = {
            "error_code": error.get("error_code") or "PAYMENT_FAILED",
            "error_message": error.get("error_message") or "",
            "attempts": previous + 1,
        }
    elif new_status == STATUS_REFUNDED:
        payment.refund_details = refund or {}
    elif new_status == STATUS_COMPLETED:
        payment.completed_at = now
        payment.invoice_number = payment.invoice_number or _invoice_number(payment, now)

    payment.status = new_status
    payment.save()
    PaymentEvent.objects.create(
        payment=payment,
        kind=PaymentEvent.KIND_TRANSITION,
        from_status=old_status,
        to_status=new_status,
        payload={"error": payment.error_details} if new_status == STATUS_FAILED else None,
    )
    logger.info("payment %s %s -> %s", payment.pk, old_status, new_status)

    if payment.purpose == PURPOSE_UNLOCK and payment.property_id:
        if new_status == STATUS_COMPLETED:
            granted = entitlements.grant(payment.payer, payment.property, payment.method, payment)
            if not granted:
                logger.warning("payment %s completed for an already unlocked property", payment.pk)
                payment.notes = f"{payment.notes}\nDuplicate unlock: property was already unlocked".strip()
                payment.save(update_fields=["notes", "updated_at"])
        elif new_status == STATUS_REFUNDED:
            entitlements.revoke(payment.payer, payment.property, payment)

    if new_status in (STATUS_COMPLETED, STATUS_REFUNDED):
        transaction.on_commit(partial(send_payment_email, payment.pk, new_status))
