# payments/entitlements.py
from __future__ import annotations

import logging

from django.db import IntegrityError, transaction
from django.db.models import F
from django.db.models.functions import Greatest

from properties.models import Property
from .models import Entitlement

logger = logging.getLogger(__name__)


def has_entitlement(payer, property_id) -> bool:
    return Entitlement.objects.filter(payer=payer, property_id=property_id).exists()


def grant(payer, property, method: str, payment) -> bool:
    """
    Record that `payer` unlocked `property` through `payment`.

    Idempotent: the (payer, property) unique constraint decides the race, so
    concurrent callers end up with exactly one row and exactly one counter
    increment. Returns True only for the caller whose insert won.
    """
    try:
        # Savepoint: a lost race must not poison the caller's transaction.
        with transaction.atomic():
            Entitlement.objects.create(payer=payer, property=property, method=method, payment=payment)
    except IntegrityError:
        logger.info(
            "entitlement exists payer=%s property=%s payment=%s",
            payer.pk, property.pk, payment.pk,
        )
        return False

    Property.objects.filter(pk=property.pk).update(stats_unlocks=F("stats_unlocks") + 1)
    logger.info("entitlement granted payer=%s property=%s payment=%s", payer.pk, property.pk, payment.pk)
    return True


def revoke(payer, property, payment) -> bool:
    """
    Remove the entitlement that `payment` produced. An entitlement that came
    from a different payment is left alone.
    """
    deleted, _ = Entitlement.objects.filter(payer=payer, property=property, payment=payment).delete()
    if not deleted:
        logger.info(
            "no entitlement to revoke payer=%s property=%s payment=%s",
            payer.pk, property.pk, payment.pk,
        )
        return False

    Property.objects.filter(pk=property.pk).update(stats_unlocks=Greatest(F("stats_unlocks") - 1, 0))
    logger.info("entitlement revoked payer=%s property=%s payment=%s", payer.pk, property.pk, payment.pk)
    return True
