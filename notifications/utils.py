import logging

from django.conf import settings
from django.core.mail import send_mail
from django.utils import timezone

from .models import PaymentEmail

logger = logging.getLogger(__name__)

SUBJECTS = {
    "completed": "CampusNest payment received",
    "refunded": "CampusNest payment refunded",
}


def _body(payment, event: str) -> str:
    listing = payment.property.title if payment.property_id else payment.get_purpose_display()
    if event == "refunded":
        refunded = (payment.refund_details or {}).get("refund_amount", payment.amount)
        return (
            f"Your {payment.get_method_display()} payment of {payment.currency} {payment.amount} "
            f"for {listing} has been refunded ({payment.currency} {refunded})."
        )
    return (
        f"We received your {payment.get_method_display()} payment of {payment.currency} {payment.amount} "
        f"for {listing}. Invoice: {payment.invoice_number or '-'}."
    )


def send_payment_email(payment_id, event: str):
    """
    Receipt for a completed or refunded payment. Runs after the payment
    transaction commits; a mail failure is stored on the PaymentEmail row and
    never propagates.
    """
    from payments.models import Payment

    payment = Payment.objects.select_related("payer", "property").filter(pk=payment_id).first()
    if payment is None or not payment.payer.email:
        return None

    email = PaymentEmail.objects.create(
        payment=payment,
        event=event,
        to=payment.payer.email,
        subject=SUBJECTS.get(event, "CampusNest payment update"),
        body=_body(payment, event),
    )
    if not settings.PAYMENT_EMAILS_ENABLED:
        email.status = PaymentEmail.STATUS_SKIPPED
        email.save(update_fields=["status"])
        return email

    try:
        send_mail(email.subject, email.body, None, [email.to], fail_silently=False)
        email.status = PaymentEmail.STATUS_SENT
        email.sent_at = timezone.now()
    except Exception as e:
        logger.warning("payment email failed payment=%s event=%s: %s", payment_id, event, e)
        email.status = PaymentEmail.STATUS_FAILED
        email.error = str(e)
    finally:
        email.save()
    return email
