# payments/ingest.py
"""
Inbound gateway notifications (webhooks and callbacks).

authenticate -> parse -> resolve the payment by gateway reference -> record
the notification -> settle. Redelivery of an outcome the ledger already holds
is a no-op.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Tuple

from . import ledger
from .exceptions import AuthenticationError, UnknownPaymentError, ValidationError
from .gateways import CONFIRMED, FAILED, get_adapter
from .gateways.base import check_amount
from .models import Payment

logger = logging.getLogger(__name__)


def _decode(raw_body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads((raw_body or b"").decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise ValidationError("Malformed notification body")
    if not isinstance(payload, dict):
        raise ValidationError("Malformed notification body")
    return payload


def ingest(
    method: str,
    raw_body: bytes,
    headers,
    payload: Optional[Dict[str, Any]] = None,
    expected_payment_id=None,
) -> Tuple[Payment, bool]:
    """
    Returns ``(payment, changed)``. Raises ``AuthenticationError`` before
    anything is read or written when the notification is not genuine, and
    ``UnknownPaymentError`` for references we never issued.
    """
    adapter = get_adapter(method)
    adapter.authenticate(raw_body, headers)

    if payload is None:
        payload = _decode(raw_body)
    notification = adapter.parse_notification(payload)

    payment = ledger.find_by_gateway_reference(method, notification.reference_field, notification.reference)
    if payment is None:
        logger.warning("%s notification for unknown reference %s", method, notification.reference)
        raise UnknownPaymentError()

    if expected_payment_id is not None and str(payment.pk) != str(expected_payment_id):
        logger.warning(
            "%s notification reference %s belongs to %s, not %s",
            method, notification.reference, payment.pk, expected_payment_id,
        )
        raise AuthenticationError("Callback does not match payment")

    ledger.record_notification(payment, {
        "event": notification.event,
        "reference": notification.reference,
        "outcome": notification.outcome,
        "error": notification.error,
    })

    if notification.outcome not in (CONFIRMED, FAILED):
        logger.info("%s event %s acknowledged for payment %s", method, notification.event, payment.pk)
        return payment, False

    outcome, mismatch = check_amount(payment, notification.outcome, notification.amount)
    payment, changed = ledger.settle(
        payment.pk,
        outcome == CONFIRMED,
        details=notification.details,
        error=mismatch or notification.error,
    )
    logger.info("%s event %s payment=%s status=%s changed=%s", method, notification.event, payment.pk, payment.status, changed)
    return payment, changed
