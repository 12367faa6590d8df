# payments/gateways/base.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import requests
from django.conf import settings
from django.utils import timezone

from .. import ledger
from ..exceptions import GatewayError, InvalidTransitionError, ValidationError
from ..models import STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING, STATUS_PROCESSING, STATUS_REFUNDED, GatewayLog, Payment

logger = logging.getLogger(__name__)

MAX_RETRIES = 1  # only when the request never reached the gateway

CONFIRMED = "confirmed"
PENDING = "pending"
FAILED = "failed"

Session = requests.Session()


# ============================================================================
# Results
# ============================================================================

@dataclass
class Initiation:
    payment_id: str
    gateway_reference: Optional[str]
    instruction: Dict[str, Any]


@dataclass
class Verification:
    outcome: str
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    amount: Optional[int] = None  # whole home-currency units the gateway reports


@dataclass
class Notification:
    event: str
    reference_field: str
    reference: Optional[str]
    outcome: Optional[str] = None  # None: acknowledged, nothing to settle
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    amount: Optional[int] = None


# ============================================================================
# HTTP helpers
# ============================================================================

def default_timeout() -> Tuple[int, int]:
    return (settings.GATEWAY_CONNECT_TIMEOUT, settings.GATEWAY_READ_TIMEOUT)


def _safe_json(resp: requests.Response) -> Dict:
    try:
        body = resp.json()
        if isinstance(body, dict):
            body.setdefault("http_status", resp.status_code)
            return body
        return {"raw": body, "http_status": resp.status_code}
    except ValueError:
        return {"raw": getattr(resp, "text", ""), "http_status": resp.status_code}


MASKED_KEYS = {
    "phone", "phone_number", "PhoneNumber", "PartyA", "email", "Password",
    "access_token", "client_secret", "Authorization", "authorization_code",
}


def _mask_value(val: Optional[str]) -> str:
    if not val:
        return ""
    s = str(val)
    if "@" in s:
        name, _, domain = s.partition("@")
        return (name[:2] + "***@" + domain) if name else "***@" + domain
    if s.isdigit() and len(s) >= 7:
        return f"{s[:3]}***{s[-4:]}"
    if len(s) > 6:
        return s[:3] + "***" + s[-3:]
    return "***"


def _mask_payload(payload: Optional[Dict]) -> Dict:
    if not payload:
        return {}
    masked = {}
    for k, v in payload.items():
        if k in MASKED_KEYS:
            masked[k] = _mask_value(v)
        elif isinstance(v, dict):
            masked[k] = _mask_payload(v)
        else:
            masked[k] = v
    return masked


def log_call(provider, endpoint, *, payment=None, http_method="POST", status_code=0,
             elapsed_ms=None, request=None, response=None, error=""):
    try:
        GatewayLog.objects.create(
            payment=payment,
            provider=provider,
            endpoint=endpoint[:255],
            http_method=http_method,
            status_code=status_code,
            response_time_ms=elapsed_ms,
            error_message=(error or "")[:255],
            request_payload=_mask_payload(request),
            response_payload=_mask_payload(response),
        )
    except Exception as e:
        logger.warning("gateway log write failed provider=%s endpoint=%s: %s", provider, endpoint, e)


def request(
    provider: str,
    method: str,
    url: str,
    *,
    endpoint: Optional[str] = None,
    payment: Optional[Payment] = None,
    headers: Optional[Dict] = None,
    json: Optional[Dict] = None,
    data: Optional[Dict] = None,
    params: Optional[Dict] = None,
    auth=None,
    retries: int = MAX_RETRIES,
) -> Tuple[int, Dict]:
    """
    Call a gateway and return ``(status_code, body)``. Any HTTP response is
    returned as-is for the adapter to judge. A connection that never opened
    is retried; a read timeout is not, since the gateway may already have
    acted on the request.
    """
    endpoint = endpoint or url
    sent = json or data or params or {}

    for attempt in range(retries + 1):
        started = time.monotonic()
        try:
            resp = Session.request(
                method=method, url=url, headers=headers, json=json, data=data,
                params=params, auth=auth, timeout=default_timeout(),
            )
        except (requests.exceptions.ConnectTimeout, requests.exceptions.ConnectionError) as e:
            if attempt < retries:
                logger.info("%s %s connection failed, retrying: %s", provider, endpoint, e)
                time.sleep(0.8)
                continue
            timed_out = isinstance(e, requests.exceptions.Timeout)
            log_call(provider, endpoint, payment=payment, http_method=method, request=sent, error=str(e))
            raise GatewayError(
                "Payment provider timed out" if timed_out else "Payment provider unreachable",
                code="GATEWAY_TIMEOUT" if timed_out else "GATEWAY_UNREACHABLE",
            )
        except requests.exceptions.Timeout as e:
            log_call(provider, endpoint, payment=payment, http_method=method, request=sent, error=str(e))
            raise GatewayError("Payment provider timed out", code="GATEWAY_TIMEOUT")
        except requests.exceptions.RequestException as e:
            log_call(provider, endpoint, payment=payment, http_method=method, request=sent, error=str(e))
            raise GatewayError("Payment provider request failed", code="GATEWAY_ERROR")

        elapsed_ms = int((time.monotonic() - started) * 1000)
        body = _safe_json(resp)
        log_call(
            provider, endpoint, payment=payment, http_method=method, status_code=resp.status_code,
            elapsed_ms=elapsed_ms, request=sent, response=body,
        )
        return resp.status_code, body

    raise GatewayError(code="GATEWAY_UNREACHABLE")


# ============================================================================
# Adapter contract
# ============================================================================

class GatewayAdapter:
    """
    One per payment method. Subclasses implement the ``_initiate`` /
    ``_refund`` hooks and, where the gateway offers them, ``verify`` and the
    notification pair ``authenticate`` + ``parse_notification``.
    """

    method: str = ""
    reference_field: Optional[str] = None
    supports_verify = False
    supports_refund = True  # False: refund is recorded in the ledger only

    # ---- initiation ---------------------------------------------------------

    def initiate(self, payment: Payment, **data) -> Initiation:
        if payment.method != self.method:
            raise ValidationError(f"Payment {payment.pk} is not a {self.method} payment")
        if payment.status != STATUS_PENDING:
            raise InvalidTransitionError(f"Payment is already {payment.status}")

        try:
            reference, details, instruction = self._initiate(payment, **data)
        except GatewayError as e:
            ledger.transition(payment.pk, STATUS_FAILED, error=e.as_error_details(), response=e.response or None)
            logger.warning("%s initiate failed payment=%s code=%s: %s", self.method, payment.pk, e.code, e.message)
            raise
        except ValidationError as e:
            ledger.transition(payment.pk, STATUS_FAILED, error={"error_code": "INVALID_REQUEST", "error_message": e.message})
            raise
        except Exception as e:
            logger.exception("%s initiate crashed payment=%s", self.method, payment.pk)
            ledger.transition(payment.pk, STATUS_FAILED, error={"error_code": "GATEWAY_ERROR", "error_message": str(e)[:255]})
            raise GatewayError(code="GATEWAY_ERROR") from e

        instruction = {"payment_id": str(payment.pk), "method": self.method, **instruction}
        ledger.transition(
            payment.pk, STATUS_PROCESSING, details=details, reference=reference, response=instruction,
        )
        return Initiation(payment_id=str(payment.pk), gateway_reference=reference, instruction=instruction)

    def _initiate(self, payment: Payment, **data) -> Tuple[Optional[str], Dict[str, Any], Dict[str, Any]]:
        raise NotImplementedError

    # ---- pull verification --------------------------------------------------

    def verify(self, reference: str) -> Verification:
        raise ValidationError(f"{self.method} payments cannot be verified on demand", code="verify_unsupported")

    def cancel(self, payment: Payment) -> bool:
        """Void an open payment at the gateway. False when the gateway offers no way to."""
        return False

    # ---- refunds ------------------------------------------------------------

    def refund(self, payment: Payment, amount: Optional[int], reason: str, actor) -> Payment:
        if payment.status != STATUS_COMPLETED:
            raise InvalidTransitionError("Can only refund completed payments")
        amount = payment.amount if amount is None else amount
        if not isinstance(amount, int) or amount <= 0 or amount > payment.amount:
            raise ValidationError("Refund amount must be between 1 and the amount paid")

        refund_id, details = (None, {})
        if self.supports_refund:
            refund_id, details = self._refund(payment, amount, reason)

        record = {
            "refund_id": refund_id,
            "refund_amount": amount,
            "refund_reason": reason,
            "refunded_by": getattr(actor, "pk", None),
            "refunded_at": timezone.now().isoformat(),
            "gateway_refund": self.supports_refund,
        }
        logger.info("refund payment=%s amount=%s by=%s", payment.pk, amount, record["refunded_by"])
        return ledger.transition(payment.pk, STATUS_REFUNDED, details=details, refund=record, note=f"Refunded: {reason}")

    def _refund(self, payment: Payment, amount: int, reason: str) -> Tuple[Optional[str], Dict[str, Any]]:
        raise NotImplementedError

    # ---- push notifications -------------------------------------------------

    def authenticate(self, raw_body: bytes, headers) -> None:
        raise ValidationError(f"{self.method} does not send notifications", code="notifications_unsupported")

    def parse_notification(self, payload: Dict[str, Any]) -> Notification:
        raise ValidationError(f"{self.method} does not send notifications", code="notifications_unsupported")


def check_amount(payment: Payment, outcome, home_amount: Optional[int]) -> Tuple[str, Optional[Dict[str, Any]]]:
    """Downgrade a confirmation whose reported amount differs from the ledger."""
    if outcome == CONFIRMED and home_amount is not None and int(home_amount) != payment.amount:
        logger.warning("amount mismatch payment=%s expected=%s got=%s", payment.pk, payment.amount, home_amount)
        return FAILED, {
            "error_code": "AMOUNT_MISMATCH",
            "error_message": f"Gateway reported {home_amount}, expected {payment.amount}",
        }
    return outcome, None



def describe(payment: Payment) -> str:
    if payment.property_id:
        return "CampusNest Property Unlock"
    return f"CampusNest {payment.get_purpose_display()}"
