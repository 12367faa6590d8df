from __future__ import annotations

from typing import Any, Dict, Optional


class PaymentError(Exception):
    """Base for every error the payment workflow raises on purpose."""

    status_code = 400
    default_code = "payment_error"
    default_message = "Payment error"

    def __init__(self, message: Optional[str] = None, *, code: Optional[str] = None):
        self.message = message or self.default_message
        self.code = code or self.default_code
        super().__init__(self.message)


class ValidationError(PaymentError):
    status_code = 400
    default_code = "invalid"
    default_message = "Invalid payment request"


class NotFoundError(PaymentError):
    status_code = 404
    default_code = "not_found"
    default_message = "Payment not found"


class InvalidTransitionError(PaymentError):
    status_code = 409
    default_code = "invalid_transition"
    default_message = "Payment status change not allowed"


class AuthenticationError(PaymentError):
    status_code = 401
    default_code = "unauthenticated"
    default_message = "Invalid signature"


class UnknownPaymentError(PaymentError):
    """A gateway notification referenced an identifier we never issued."""

    status_code = 404
    default_code = "unknown_payment"
    default_message = "Reference not found"


class GatewayError(PaymentError):
    """Remote gateway call failed, was rejected, or timed out."""

    status_code = 502
    default_code = "GATEWAY_ERROR"
    default_message = "Error processing payment"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
        response: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code)
        self.http_status = http_status
        self.response = response or {}

    def as_error_details(self) -> Dict[str, Any]:
        return {"error_code": self.code, "error_message": self.message}


class PermissionDeniedError(PaymentError):
    status_code = 403
    default_code = "forbidden"
    default_message = "Not authorized"
