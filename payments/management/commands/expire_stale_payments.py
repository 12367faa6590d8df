# payments/management/commands/expire_stale_payments.py
import logging
from datetime import timedelta

from django.conf import settings
from django.core.management.base import BaseCommand
from django.utils import timezone

from payments import ledger
from payments.exceptions import PaymentError
from payments.gateways import get_adapter
from payments.models import MANUAL_METHODS, OPEN_STATUSES, STATUS_FAILED, Payment
from payments.services import reverify

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = (
        "Resolve pending/processing payments older than the stale TTL: ask the gateway, "
        "void what it still holds open, and fail the rest."
    )

    def add_arguments(self, parser):
        parser.add_argument("--age-mins", type=int, default=None,
                            help="Only consider payments older than N minutes (default: PAYMENT_STALE_TTL_MINUTES)")
        parser.add_argument("--max", type=int, default=200,
                            help="Max payments to process (default: 200)")

    def handle(self, *args, **opts):
        age = opts["age_mins"] if opts["age_mins"] is not None else settings.PAYMENT_STALE_TTL_MINUTES
        cutoff = timezone.now() - timedelta(minutes=age)

        stale = list(
            Payment.objects.filter(status__in=OPEN_STATUSES, updated_at__lte=cutoff)
            .exclude(method__in=MANUAL_METHODS)
            .order_by("created_at")[: opts["max"]]
        )

        settled = 0
        expired = 0
        waiting = 0
        for payment in stale:
            try:
                adapter = get_adapter(payment.method)
                if adapter.supports_verify and payment.gateway_reference:
                    payment, changed = reverify(payment)
                    if changed:
                        settled += 1
                        continue
                    # only void records the gateway still holds open
                    if not adapter.cancel(payment):
                        waiting += 1
                        logger.warning("payment %s still open at %s after %s minutes", payment.pk, payment.method, age)
                        continue
                payment, changed = ledger.settle(payment.pk, False, error={
                    "error_code": "EXPIRED",
                    "error_message": f"No gateway outcome after {age} minutes",
                })
                if changed and payment.status == STATUS_FAILED:
                    expired += 1
            except PaymentError as e:
                self.stderr.write(f"{payment.pk}: {e.message}")

        self.stdout.write(self.style.SUCCESS(
            f"Done. Checked {len(stale)} payment(s). Settled {settled}, expired {expired}, still open at gateway {waiting}."
        ))
