# payments/gateways/manual.py
from django.conf import settings

from ..models import METHOD_BANK, METHOD_CASH
from . import base

INSTRUCTIONS = {
    METHOD_BANK: "Transfer {currency} {amount} to the CampusNest account and quote reference {reference}.",
    METHOD_CASH: "Pay {currency} {amount} at the CampusNest office and quote reference {reference}.",
}


class ManualAdapter(base.GatewayAdapter):
    """Bank transfer and cash. Nothing leaves the building; an admin confirms receipt."""

    supports_verify = False
    supports_refund = False

    def __init__(self, method):
        self.method = method

    def _initiate(self, payment, **_):
        reference = f"CN-{payment.pk.hex[:10].upper()}"
        instruction = {
            "reference": reference,
            "message": INSTRUCTIONS[self.method].format(
                currency=payment.currency, amount=payment.amount, reference=reference,
            ),
            "support_email": settings.DEFAULT_FROM_EMAIL,
        }
        # No gateway identifier to correlate on.
        return None, {}, instruction
