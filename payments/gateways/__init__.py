from ..exceptions import ValidationError
from ..models import METHOD_BANK, METHOD_CASH
from .base import CONFIRMED, FAILED, PENDING, GatewayAdapter, Initiation, Notification, Verification
from .manual import ManualAdapter
from .mpesa import MpesaAdapter
from .paypal import PaypalAdapter
from .paystack import PaystackAdapter
from .stripe_gateway import StripeAdapter

ADAPTERS = {
    a.method: a
    for a in (
        MpesaAdapter(),
        StripeAdapter(),
        PaypalAdapter(),
        PaystackAdapter(),
        ManualAdapter(METHOD_BANK),
        ManualAdapter(METHOD_CASH),
    )
}


def get_adapter(method: str) -> GatewayAdapter:
    try:
        return ADAPTERS[method]
    except KeyError:
        raise ValidationError(f"Invalid payment method: {method}")
