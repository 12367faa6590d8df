"""REST endpoints: unlock, verify, PayPal execute, refunds, history and the premium paywall."""
import json

import pytest
import requests

from payments import ledger
from payments.models import (
    METHOD_BANK,
    METHOD_MPESA,
    METHOD_PAYPAL,
    METHOD_PAYSTACK,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    PURPOSE_SUBSCRIPTION,
    STATUS_REFUNDED,
    Entitlement,
    Payment,
)

pytestmark = pytest.mark.django_db


def _unlock(client, listing, method=METHOD_MPESA, key=None, **body):
    headers = {"HTTP_IDEMPOTENCY_KEY": key} if key else {}
    return client.post(f"/api/payments/unlock/{listing.pk}/", {"payment_method": method, **body}, format="json", **headers)


def test_unlock_requires_login(api, listing):
    assert _unlock(api(), listing).status_code in (401, 403)
    assert not Payment.objects.exists()


def test_mpesa_unlock(api, student, listing, mpesa_ok):
    r = _unlock(api(student), listing, phone_number="+254712345678")
    assert r.status_code == 201
    body = r.json()
    assert body["success"] is True
    assert body["message"] == "Payment initiated"
    assert body["data"]["message"] == "Please check your phone for the M-Pesa prompt"

    payment = Payment.objects.get(pk=body["data"]["payment_id"])
    assert payment.status == STATUS_PROCESSING
    assert payment.amount == 200
    assert payment.metadata["ip_address"] == "127.0.0.1"


def test_unlock_falls_back_to_profile_phone(api, student, listing, mpesa_ok):
    assert _unlock(api(student), listing).status_code == 201
    assert mpesa_ok.calls_to("/stkpush/")[0]["json"]["PhoneNumber"] == "254712345678"


def test_repeat_unlock_returns_original_instruction(api, student, listing, mpesa_ok):
    first = _unlock(api(student), listing, key="tap-1")
    again = _unlock(api(student), listing, key="tap-1")

    assert again.status_code == 200
    assert again.json()["data"] == first.json()["data"]
    assert Payment.objects.count() == 1
    assert len(mpesa_ok.calls_to("/stkpush/")) == 1


def test_switching_method_mid_payment_is_refused(api, student, listing, mpesa_ok):
    assert _unlock(api(student), listing).status_code == 201

    r = _unlock(api(student), listing, method=METHOD_PAYSTACK)
    assert r.status_code == 409
    assert r.json() == {
        "success": False,
        "message": "A payment for this property is already in progress via M-Pesa",
        "code": "method_mismatch",
    }
    assert mpesa_ok.calls_to("/transaction/initialize") == []
    assert Payment.objects.count() == 1


def test_unlock_while_record_still_pending(api, student, listing, unlock_payment, fake_gateway):
    unlock_payment(idempotency_key="tap-1")
    r = _unlock(api(student), listing, key="tap-1")
    assert r.status_code == 409
    assert fake_gateway.calls == []


def test_already_unlocked_is_rejected_before_gateway(api, student, listing, unlock_payment, fake_gateway):
    ledger.settle(unlock_payment().pk, True)
    r = _unlock(api(student), listing, key="another-tab")
    assert r.status_code == 400
    assert r.json() == {"success": False, "message": "Property already unlocked", "code": "already_unlocked"}
    assert Payment.objects.count() == 1
    assert fake_gateway.calls == []


def test_unlock_unknown_property(api, student, listing):
    r = api(student).post("/api/payments/unlock/999999/", {"payment_method": METHOD_MPESA}, format="json")
    assert r.status_code == 404
    assert r.json()["message"] == "Property not found"


def test_unlock_rejects_bad_phone_without_creating_a_record(api, student, listing, fake_gateway):
    r = _unlock(api(student), listing, phone_number="12345")
    assert r.status_code == 400
    assert Payment.objects.count() == 0


def test_unlock_rejects_unknown_method(api, student, listing):
    assert _unlock(api(student), listing, method="bitcoin").status_code == 400


def test_gateway_failure_envelope(api, student, listing, fake_gateway, settings):
    fake_gateway.on("POST", "/transaction/initialize", status=401, body={"status": False, "message": "Invalid key"})
    r = _unlock(api(student), listing, method=METHOD_PAYSTACK)
    assert r.status_code == 502
    assert r.json() == {"success": False, "message": "Error processing payment", "code": "PAYSTACK_REJECTED"}
    assert Payment.objects.get().status == STATUS_FAILED

    settings.DEBUG = True
    r = _unlock(api(student), listing, method=METHOD_PAYSTACK)
    assert r.json()["error"] == "Invalid key"


def test_transport_error_does_not_block_a_retry(api, student, listing, fake_gateway):
    fake_gateway.on("GET", "/oauth/v1/generate", exc=requests.exceptions.TooManyRedirects("Exceeded 30 redirects."))
    r = _unlock(api(student), listing)
    assert r.status_code == 502
    assert r.json()["code"] == "GATEWAY_ERROR"
    assert Payment.objects.get().status == STATUS_FAILED

    fake_gateway.on("GET", "/oauth/v1/generate", body={"access_token": "daraja-token"})
    fake_gateway.on("POST", "/stkpush/", body={
        "MerchantRequestID": "1", "CheckoutRequestID": "ws_CO_retry", "ResponseCode": "0",
    })
    r = _unlock(api(student), listing)
    assert r.status_code == 201
    assert Payment.objects.filter(status=STATUS_PROCESSING).count() == 1


def test_bank_unlock_and_admin_confirmation(api, student, listing, staff_user):
    r = _unlock(api(student), listing, method=METHOD_BANK)
    assert r.status_code == 201
    payment_id = r.json()["data"]["payment_id"]
    assert "CampusNest account" in r.json()["data"]["message"]

    assert api(student).post(f"/api/payments/{payment_id}/confirm/", {}, format="json").status_code == 403

    r = api(staff_user).post(f"/api/payments/{payment_id}/confirm/", {"receipt_number": "FT26292XK1"}, format="json")
    assert r.status_code == 200
    payment = Payment.objects.get(pk=payment_id)
    assert payment.status == STATUS_COMPLETED
    assert payment.gateway_details["receipt_number"] == "FT26292XK1"
    assert payment.gateway_details["confirmed_by"] == staff_user.pk
    assert Entitlement.objects.filter(payer=student, property=listing).exists()


def test_verify_paystack(api, student, listing, fake_gateway, unlock_payment):
    payment = unlock_payment(method=METHOD_PAYSTACK)
    reference = f"CN-{payment.pk.hex}"
    ledger.transition(payment.pk, STATUS_PROCESSING, reference=reference, details={"reference": reference})
    fake_gateway.on("GET", f"/transaction/verify/{reference}", body={
        "status": True, "data": {"status": "success", "reference": reference, "amount": 20000, "currency": "KES"},
    })

    r = api(student).get(f"/api/payments/verify/{reference}/")
    assert r.status_code == 200
    assert r.json()["message"] == "Payment verified successfully"
    assert r.json()["data"]["status"] == STATUS_COMPLETED

    r = api(student).get(f"/api/payments/verify/{reference}/")
    assert r.json()["message"] == "Payment is completed"
    assert len(fake_gateway.calls) == 1


def test_verify_other_users_reference(api, other_student, unlock_payment):
    payment = unlock_payment(method=METHOD_PAYSTACK)
    ledger.transition(payment.pk, STATUS_PROCESSING, reference="CN-x", details={"reference": "CN-x"})
    assert api(other_student).get("/api/payments/verify/CN-x/").status_code == 404


def test_paypal_execute(api, student, listing, fake_gateway, unlock_payment):
    payment = unlock_payment(method=METHOD_PAYPAL)
    ledger.transition(payment.pk, STATUS_PROCESSING, reference="PAYID-MZ7", details={"payment_id": "PAYID-MZ7"})
    fake_gateway.on("POST", "/v1/oauth2/token", body={"access_token": "A21AA"})
    fake_gateway.on("POST", "/v1/payments/payment/PAYID-MZ7/execute", body={
        "id": "PAYID-MZ7", "state": "approved",
        "transactions": [{"related_resources": [{"sale": {"id": "5SA12345", "state": "completed"}}]}],
    })

    r = api(student).post("/api/payments/paypal/execute/", {"paymentId": "PAYID-MZ7", "PayerID": "QYR5Z8"}, format="json")
    assert r.status_code == 200
    assert r.json()["message"] == "Payment successful"
    payment.refresh_from_db()
    assert payment.status == STATUS_COMPLETED
    assert payment.gateway_details["sale_id"] == "5SA12345"


def test_refund_is_admin_only(api, student, unlock_payment):
    payment = unlock_payment(method=METHOD_BANK)
    ledger.settle(payment.pk, True)
    r = api(student).post("/api/payments/refund/", {"payment_id": str(payment.pk), "reason": "please"}, format="json")
    assert r.status_code == 403
    payment.refresh_from_db()
    assert payment.status == STATUS_COMPLETED


def test_admin_refund(api, staff_user, student, listing, unlock_payment):
    payment = unlock_payment(method=METHOD_BANK)
    ledger.settle(payment.pk, True)
    r = api(staff_user).post("/api/payments/refund/",
                             {"payment_id": str(payment.pk), "amount": 200, "reason": "duplicate"}, format="json")
    assert r.status_code == 200
    assert r.json()["data"]["status"] == STATUS_REFUNDED
    assert r.json()["data"]["refund_details"]["refund_reason"] == "duplicate"
    assert not Entitlement.objects.filter(payer=student, property=listing).exists()


def test_refund_of_pending_payment(api, staff_user, unlock_payment):
    payment = unlock_payment(method=METHOD_BANK)
    r = api(staff_user).post("/api/payments/refund/", {"payment_id": str(payment.pk), "reason": "x"}, format="json")
    assert r.status_code == 409
    assert r.json()["message"] == "Can only refund completed payments"


def test_cancel_pending_payment(api, student, other_student, unlock_payment):
    payment = unlock_payment()
    assert api(other_student).post(f"/api/payments/{payment.pk}/cancel/").status_code == 404
    r = api(student).post(f"/api/payments/{payment.pk}/cancel/")
    assert r.status_code == 200
    payment.refresh_from_db()
    assert payment.status == STATUS_CANCELLED
    assert api(student).post(f"/api/payments/{payment.pk}/cancel/").status_code == 409


def test_history_and_detail(api, student, other_student, unlock_payment):
    done = unlock_payment(idempotency_key="a")
    ledger.settle(done.pk, True)
    unlock_payment(idempotency_key="b")

    r = api(student).get("/api/payments/history/")
    assert r.status_code == 200
    assert r.json()["count"] == 2

    r = api(student).get("/api/payments/history/", {"status": STATUS_COMPLETED})
    assert [p["id"] for p in r.json()["results"]] == [str(done.pk)]
    assert r.json()["results"][0]["property"]["title"] == "Bedsitter near JKUAT gate C"

    r = api(student).get(f"/api/payments/{done.pk}/")
    assert r.status_code == 200
    assert [e["to_status"] for e in r.json()["data"]["events"]] == ["pending", "processing", "completed"]

    assert api(other_student).get(f"/api/payments/{done.pk}/").status_code == 404
    assert api(other_student).get("/api/payments/history/").json()["count"] == 0


def test_premium_details_paywall(api, student, landlord, staff_user, listing, unlock_payment):
    url = f"/api/properties/{listing.pk}/premium/"
    r = api(student).get(url)
    assert r.status_code == 403
    assert r.json()["unlock_required"] is True

    assert api(landlord).get(url).status_code == 200
    assert api(staff_user).get(url).status_code == 200

    ledger.settle(unlock_payment().pk, True)
    r = api(student).get(url)
    assert r.status_code == 200
    assert r.json()["data"]["premium_details"]["exact_address"] == "Plot 14, Gachororo Rd"


def test_unlocked_properties(api, student, other_student, listing, unlock_payment):
    assert api().get("/api/users/unlocked-properties/").status_code in (401, 403)
    assert api(student).get("/api/users/unlocked-properties/").json() == {"success": True, "count": 0, "data": []}

    payment = unlock_payment()
    ledger.settle(payment.pk, True)

    r = api(student).get("/api/users/unlocked-properties/")
    assert r.status_code == 200
    assert r.json()["count"] == 1
    item = r.json()["data"][0]
    assert item["property"] == {"id": listing.pk, "title": "Bedsitter near JKUAT gate C",
                                "location": "Juja", "price": "6500.00"}
    assert item["method"] == METHOD_MPESA
    assert item["payment_id"] == str(payment.pk)
    assert item["unlocked_at"]

    assert api(other_student).get("/api/users/unlocked-properties/").json()["count"] == 0


def _subscribe(client, plan="premium", method=METHOD_MPESA, **body):
    return client.post("/api/users/subscription/", {"plan": plan, "payment_method": method, **body}, format="json")


def test_subscription_is_paid_through_the_gateway(api, student, mpesa_ok, mpesa_callback):
    assert api(student).get("/api/users/subscription/").json()["data"] is None

    r = _subscribe(api(student), duration=2)
    assert r.status_code == 201
    assert r.json()["data"]["message"] == "Please check your phone for the M-Pesa prompt"

    payment = Payment.objects.get(pk=r.json()["data"]["payment_id"])
    assert payment.purpose == PURPOSE_SUBSCRIPTION
    assert payment.property is None
    assert payment.amount == 3000
    assert payment.metadata["plan"] == "premium"
    stk = mpesa_ok.calls_to("/stkpush/")[0]["json"]
    assert stk["Amount"] == 3000
    assert stk["TransactionDesc"] == "CampusNest Subscription"

    # not active until the money arrives
    assert api(student).get("/api/users/subscription/").json()["data"] is None

    r = api().post(f"/api/payments/mpesa/callback/{payment.pk}/", data=json.dumps(mpesa_callback(amount=3000)),
                   content_type="application/json")
    assert r.json()["changed"] is True
    payment.refresh_from_db()
    assert payment.status == STATUS_COMPLETED
    assert not Entitlement.objects.exists()

    current = api(student).get("/api/users/subscription/").json()["data"]
    assert current["plan"] == "premium"
    assert current["unlocks"] == 20
    assert current["payment_id"] == str(payment.pk)


def test_repeat_subscription_request_replays(api, student, mpesa_ok):
    first = _subscribe(api(student), plan="basic")
    again = _subscribe(api(student), plan="basic")
    assert again.status_code == 200
    assert again.json()["data"] == first.json()["data"]
    assert len(mpesa_ok.calls_to("/stkpush/")) == 1

    r = _subscribe(api(student), plan="basic", method=METHOD_PAYSTACK)
    assert r.status_code == 409
    assert r.json()["code"] == "method_mismatch"


def test_subscription_rejects_unknown_plan(api, student, fake_gateway):
    assert _subscribe(api(student), plan="platinum").status_code == 400
    assert _subscribe(api(student), duration=0).status_code == 400
    assert _subscribe(api()).status_code in (401, 403)
    assert not Payment.objects.exists()
    assert fake_gateway.calls == []


def test_paystack_subscription_has_no_property(api, student, fake_gateway):
    fake_gateway.on("POST", "/transaction/initialize", body={
        "status": True, "data": {"authorization_url": "https://checkout.paystack.com/x", "reference": "CN-sub"},
    })
    r = _subscribe(api(student), plan="enterprise", method=METHOD_PAYSTACK)
    assert r.status_code == 201
    sent = fake_gateway.calls_to("/transaction/initialize")[0]["json"]
    assert sent["amount"] == 300000
    assert sent["metadata"]["property_id"] == ""
