"""
Gateway-specific detail records.

Each payment method owns exactly one detail shape. ``Payment.gateway_details``
stores the dict form of the record selected by ``Payment.method``; merging
keys that belong to another gateway is rejected so an M-Pesa record can never
carry a Stripe intent id and vice versa.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional, Type

from .exceptions import ValidationError


@dataclass
class MpesaDetails:
    phone_number: Optional[str] = None
    merchant_request_id: Optional[str] = None
    checkout_request_id: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    transaction_date: Optional[str] = None
    result_code: Optional[int] = None
    raw_response: Optional[Dict[str, Any]] = None


@dataclass
class StripeDetails:
    payment_intent_id: Optional[str] = None
    customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    charge_id: Optional[str] = None
    receipt_url: Optional[str] = None
    refund_id: Optional[str] = None
    raw_response: Optional[Dict[str, Any]] = None


@dataclass
class PaypalDetails:
    payment_id: Optional[str] = None
    approval_url: Optional[str] = None
    payer_id: Optional[str] = None
    sale_id: Optional[str] = None
    payer_email: Optional[str] = None
    usd_total: Optional[str] = None
    refund_id: Optional[str] = None
    raw_response: Optional[Dict[str, Any]] = None


@dataclass
class PaystackDetails:
    reference: Optional[str] = None
    authorization_url: Optional[str] = None
    access_code: Optional[str] = None
    status: Optional[str] = None
    channel: Optional[str] = None
    currency: Optional[str] = None
    paid_at: Optional[str] = None
    refund_id: Optional[str] = None
    raw_response: Optional[Dict[str, Any]] = None


@dataclass
class ManualDetails:
    """Bank transfer or cash paid at the office, confirmed by an admin."""

    receipt_number: Optional[str] = None
    confirmed_by: Optional[int] = None
    note: Optional[str] = None


DETAILS_BY_METHOD: Dict[str, Type] = {
    "mpesa": MpesaDetails,
    "stripe": StripeDetails,
    "paypal": PaypalDetails,
    "paystack": PaystackDetails,
    "bank": ManualDetails,
    "cash": ManualDetails,
}

# Field holding the identifier the gateway uses when it calls us back.
REFERENCE_FIELD: Dict[str, Optional[str]] = {
    "mpesa": "checkout_request_id",
    "stripe": "payment_intent_id",
    "paypal": "payment_id",
    "paystack": "reference",
    "bank": None,
    "cash": None,
}


def details_class(method: str) -> Type:
    try:
        return DETAILS_BY_METHOD[method]
    except KeyError:
        raise ValidationError(f"Unsupported payment method: {method}")


def empty_details(method: str) -> Dict[str, Any]:
    return asdict(details_class(method)())


def merge_details(method: str, current: Optional[Dict[str, Any]], updates: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Overlay ``updates`` onto ``current`` for the detail shape of ``method``.
    Keys with value None in ``updates`` do not erase existing values.
    """
    cls = details_class(method)
    allowed = {f.name for f in fields(cls)}
    foreign = set(updates or {}) - allowed
    if foreign:
        raise ValidationError(
            f"Fields {sorted(foreign)} do not belong to {method} payments",
            code="details_mismatch",
        )
    base = {k: v for k, v in (current or {}).items() if k in allowed}
    merged = asdict(cls(**base))
    for key, value in (updates or {}).items():
        if value is not None:
            merged[key] = value
    return merged
