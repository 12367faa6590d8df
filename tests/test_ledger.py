"""Ledger: creation, idempotency, the status machine and its side effects."""
import pytest

from notifications.models import PaymentEmail
from payments import ledger
from payments.details import merge_details
from payments.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from payments.models import (
    METHOD_MPESA,
    METHOD_PAYSTACK,
    METHOD_STRIPE,
    PURPOSE_UNLOCK,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_REFUNDED,
    Entitlement,
    Payment,
    PaymentEvent,
)

pytestmark = pytest.mark.django_db

ALL_STATUSES = [STATUS_PENDING, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED, STATUS_REFUNDED, STATUS_CANCELLED]
LEGAL = {
    (STATUS_PENDING, STATUS_PROCESSING),
    (STATUS_PENDING, STATUS_CANCELLED),
    (STATUS_PENDING, STATUS_FAILED),
    (STATUS_PROCESSING, STATUS_COMPLETED),
    (STATUS_PROCESSING, STATUS_FAILED),
    (STATUS_COMPLETED, STATUS_REFUNDED),
}


def test_create_starts_pending_with_derived_key(student, listing):
    payment, created = ledger.create(student, listing, 200, method=METHOD_MPESA, purpose=PURPOSE_UNLOCK)
    assert created
    assert payment.status == STATUS_PENDING
    assert payment.currency == "KES"
    assert payment.idempotency_key == f"unlock:{listing.pk}"
    assert payment.gateway_details["checkout_request_id"] is None
    assert list(payment.events.values_list("to_status", flat=True)) == [STATUS_PENDING]


def test_create_is_idempotent_while_open(student, listing):
    first, _ = ledger.create(student, listing, 200, method=METHOD_MPESA, purpose=PURPOSE_UNLOCK, idempotency_key="k-1")
    again, created = ledger.create(student, listing, 200, method=METHOD_MPESA, purpose=PURPOSE_UNLOCK, idempotency_key="k-1")
    assert not created
    assert again.pk == first.pk
    assert Payment.objects.count() == 1


def test_create_after_terminal_record_starts_fresh(student, listing):
    first, _ = ledger.create(student, listing, 200, method=METHOD_MPESA, purpose=PURPOSE_UNLOCK)
    ledger.transition(first.pk, STATUS_FAILED, error={"error_code": "1032", "error_message": "Cancelled"})
    second, created = ledger.create(student, listing, 200, method=METHOD_MPESA, purpose=PURPOSE_UNLOCK)
    assert created
    assert second.pk != first.pk


@pytest.mark.parametrize("kwargs, message", [
    ({"method": "bitcoin", "purpose": PURPOSE_UNLOCK}, "Invalid payment method"),
    ({"method": METHOD_MPESA, "purpose": "tip"}, "Invalid payment type"),
])
def test_create_rejects_values_outside_the_enums(student, listing, kwargs, message):
    with pytest.raises(ValidationError, match=message):
        ledger.create(student, listing, 200, **kwargs)
    assert Payment.objects.count() == 0


@pytest.mark.parametrize("amount", [0, -200, 12.5, True])
def test_create_rejects_non_positive_or_fractional_amounts(student, listing, amount):
    with pytest.raises(ValidationError):
        ledger.create(student, listing, amount, method=METHOD_MPESA, purpose=PURPOSE_UNLOCK)


def test_unlock_requires_a_property(student):
    with pytest.raises(ValidationError):
        ledger.create(student, None, 200, method=METHOD_MPESA, purpose=PURPOSE_UNLOCK)


def _force_status(payment, status):
    Payment.objects.filter(pk=payment.pk).update(status=status)


@pytest.mark.parametrize("current", ALL_STATUSES)
@pytest.mark.parametrize("new", ALL_STATUSES)
def test_only_listed_edges_are_allowed(unlock_payment, current, new):
    payment = unlock_payment(method=METHOD_STRIPE)
    _force_status(payment, current)
    assert ledger.can_transition(current, new) == ((current, new) in LEGAL)
    if (current, new) in LEGAL:
        assert ledger.transition(payment.pk, new).status == new
    else:
        with pytest.raises(InvalidTransitionError):
            ledger.transition(payment.pk, new)
        payment.refresh_from_db()
        assert payment.status == current


@pytest.mark.parametrize("status", [STATUS_PENDING, STATUS_PROCESSING, STATUS_FAILED, STATUS_CANCELLED])
def test_refund_of_anything_but_completed_is_refused(unlock_payment, status):
    payment = unlock_payment()
    _force_status(payment, status)
    with pytest.raises(InvalidTransitionError, match="Can only refund completed payments"):
        ledger.transition(payment.pk, STATUS_REFUNDED)
    payment.refresh_from_db()
    assert payment.status == status


def test_transition_of_unknown_payment():
    with pytest.raises(NotFoundError):
        ledger.transition("8d6c2a8e-3c57-4a47-9d5e-1d7f0f5e2b11", STATUS_PROCESSING)
    with pytest.raises(NotFoundError):
        ledger.get("not-a-uuid")


def test_settle_from_pending_steps_through_processing(unlock_payment, student, listing):
    payment = unlock_payment()
    payment, changed = ledger.settle(payment.pk, True, details={"mpesa_receipt_number": "SJK4H2L9QX"})
    assert changed
    assert payment.status == STATUS_COMPLETED
    assert payment.completed_at is not None
    assert payment.invoice_number == f"INV-{payment.completed_at:%Y%m}-{payment.pk.hex[:8].upper()}"
    assert payment.gateway_details["mpesa_receipt_number"] == "SJK4H2L9QX"
    steps = list(payment.events.filter(kind=PaymentEvent.KIND_TRANSITION).values_list("from_status", "to_status"))
    assert steps == [("", STATUS_PENDING), (STATUS_PENDING, STATUS_PROCESSING), (STATUS_PROCESSING, STATUS_COMPLETED)]
    assert Entitlement.objects.filter(payer=student, property=listing).count() == 1


def test_settle_twice_changes_nothing(unlock_payment, listing):
    payment = unlock_payment()
    ledger.settle(payment.pk, True)
    payment, changed = ledger.settle(payment.pk, True)
    assert not changed
    listing.refresh_from_db()
    assert listing.stats_unlocks == 1


def test_confirmation_after_failure_is_flagged_for_reconciliation(unlock_payment, student, listing, caplog):
    payment = unlock_payment()
    ledger.settle(payment.pk, False, error={"error_code": "EXPIRED"})

    with caplog.at_level("ERROR", logger="payments.ledger"):
        payment, changed = ledger.settle(payment.pk, True, details={"mpesa_receipt_number": "SJK4H2L9QX"})

    assert not changed
    assert payment.status == STATUS_FAILED
    assert not Entitlement.objects.filter(payer=student, property=listing).exists()
    flag = payment.events.get(kind=PaymentEvent.KIND_RECONCILE)
    assert flag.from_status == STATUS_FAILED
    assert flag.payload["details"]["mpesa_receipt_number"] == "SJK4H2L9QX"
    assert "manual reconciliation needed" in caplog.text
    assert list(ledger.needs_reconciliation()) == [payment]


def test_late_failure_on_closed_payment_is_not_flagged(unlock_payment):
    payment = unlock_payment()
    ledger.settle(payment.pk, True)
    ledger.settle(payment.pk, False)
    assert not payment.events.filter(kind=PaymentEvent.KIND_RECONCILE).exists()


def test_failure_records_error_and_attempts(unlock_payment, student, listing):
    first = unlock_payment()
    first, _ = ledger.settle(first.pk, False, error={"error_code": "1032", "error_message": "Request cancelled by user"})
    assert first.error_details == {"error_code": "1032", "error_message": "Request cancelled by user", "attempts": 1}

    second = unlock_payment()
    second, _ = ledger.settle(second.pk, False, error={"error_message": "Insufficient balance"})
    assert second.error_details["error_code"] == "PAYMENT_FAILED"
    assert second.error_details["attempts"] == 2


def test_find_by_gateway_reference(unlock_payment):
    payment = unlock_payment(method=METHOD_PAYSTACK)
    ledger.transition(
        payment.pk, STATUS_PROCESSING,
        reference=f"CN-{payment.pk.hex}",
        details={"reference": f"CN-{payment.pk.hex}", "access_code": "acc_9x"},
    )
    assert ledger.find_by_gateway_reference(METHOD_PAYSTACK, "reference", f"CN-{payment.pk.hex}").pk == payment.pk
    assert ledger.find_by_gateway_reference(METHOD_PAYSTACK, "access_code", "acc_9x").pk == payment.pk
    assert ledger.find_by_gateway_reference(METHOD_PAYSTACK, "reference", "CN-unknown") is None
    assert ledger.find_by_gateway_reference(METHOD_STRIPE, "payment_intent_id", f"CN-{payment.pk.hex}") is None
    with pytest.raises(ValidationError):
        ledger.find_by_gateway_reference(METHOD_PAYSTACK, "checkout_request_id", "x")


def test_details_of_another_gateway_are_rejected(unlock_payment):
    payment = unlock_payment(method=METHOD_MPESA)
    with pytest.raises(ValidationError) as exc:
        ledger.transition(payment.pk, STATUS_PROCESSING, details={"payment_intent_id": "pi_123"})
    assert exc.value.code == "details_mismatch"
    payment.refresh_from_db()
    assert payment.status == STATUS_PENDING


def test_merge_details_keeps_values_not_overwritten():
    merged = merge_details(METHOD_MPESA, {"checkout_request_id": "ws_1", "phone_number": "254712345678"},
                           {"checkout_request_id": None, "mpesa_receipt_number": "SJK"})
    assert merged["checkout_request_id"] == "ws_1"
    assert merged["mpesa_receipt_number"] == "SJK"


def test_completion_and_refund_send_receipts(unlock_payment, django_capture_on_commit_callbacks, mailoutbox):
    payment = unlock_payment()
    with django_capture_on_commit_callbacks(execute=True):
        ledger.settle(payment.pk, True)
    with django_capture_on_commit_callbacks(execute=True):
        ledger.transition(payment.pk, STATUS_REFUNDED, refund={"refund_amount": 200, "refund_reason": "duplicate"})

    assert [m.subject for m in mailoutbox] == ["CampusNest payment received", "CampusNest payment refunded"]
    assert list(payment.emails.values_list("event", "status")) == [("completed", "sent"), ("refunded", "sent")]


def test_email_failure_is_recorded_not_raised(unlock_payment, django_capture_on_commit_callbacks, monkeypatch):
    def boom(*args, **kwargs):
        raise ConnectionRefusedError("smtp down")

    monkeypatch.setattr("notifications.utils.send_mail", boom)
    payment = unlock_payment()
    with django_capture_on_commit_callbacks(execute=True):
        payment, _ = ledger.settle(payment.pk, True)

    assert payment.status == STATUS_COMPLETED
    log = PaymentEmail.objects.get(payment=payment)
    assert log.status == "failed"
    assert "smtp down" in log.error


def test_disabled_emails_are_logged_as_skipped(unlock_payment, django_capture_on_commit_callbacks, mailoutbox, settings):
    settings.PAYMENT_EMAILS_ENABLED = False
    payment = unlock_payment()
    with django_capture_on_commit_callbacks(execute=True):
        ledger.settle(payment.pk, True)

    assert mailoutbox == []
    assert PaymentEmail.objects.get(payment=payment).status == PaymentEmail.STATUS_SKIPPED
