"""Pytest fixtures: accounts, a listing, API clients and a fake gateway transport."""
import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest
from rest_framework.test import APIClient

from payments import ledger
from payments.gateways import base as gateway_base
from payments.models import METHOD_MPESA, PURPOSE_UNLOCK
from properties.models import Property
from users.models import User

CHECKOUT_ID = "ws_CO_19102026120000123456"
MERCHANT_ID = "29115-34620561-1"


@pytest.fixture(autouse=True)
def gateway_settings(settings):
    settings.MPESA_BASE_URL = "https://sandbox.safaricom.co.ke"
    settings.MPESA_CONSUMER_KEY = "mpesa-key"
    settings.MPESA_CONSUMER_SECRET = "mpesa-secret"
    settings.MPESA_SHORTCODE = "174379"
    settings.MPESA_PASSKEY = "bfb279f9aa9bdbcf158e97dd71a467cd"
    settings.MPESA_CALLBACK_URL = "https://api.campusnest.test/api/payments/mpesa/callback"
    settings.STRIPE_SECRET_KEY = "sk_test_campusnest"
    settings.STRIPE_WEBHOOK_SECRET = "whsec_campusnest"
    settings.PAYPAL_MODE = "sandbox"
    settings.PAYPAL_CLIENT_ID = "paypal-id"
    settings.PAYPAL_CLIENT_SECRET = "paypal-secret"
    settings.PAYPAL_KES_PER_USD = 100
    settings.PAYSTACK_SECRET_KEY = "sk_test_paystack"
    settings.PAYSTACK_WEBHOOK_SECRET = ""
    settings.PAYSTACK_BASE_URL = "https://api.paystack.co"
    settings.UNLOCK_FEE = 200
    settings.DEBUG = False
    return settings


# ---------------------------------------------------------------------------
# People and listings
# ---------------------------------------------------------------------------

@pytest.fixture
def student(db):
    return User.objects.create_user(email="wanjiku@students.test", password="pass12345", phone_number="0712345678")


@pytest.fixture
def other_student(db):
    return User.objects.create_user(email="otieno@students.test", password="pass12345", phone_number="0722000111")


@pytest.fixture
def landlord(db):
    return User.objects.create_user(email="kamau@landlords.test", password="pass12345", role=User.ROLE_LANDLORD)


@pytest.fixture
def staff_user(db):
    return User.objects.create_superuser(email="ops@campusnest.test", password="pass12345")


@pytest.fixture
def listing(landlord):
    return Property.objects.create(
        landlord=landlord,
        title="Bedsitter near JKUAT gate C",
        location="Juja",
        price=Decimal("6500.00"),
        premium_details={"caretaker_phone": "0733000222", "exact_address": "Plot 14, Gachororo Rd"},
    )


@pytest.fixture
def api():
    def make(user=None):
        client = APIClient()
        if user is not None:
            client.force_authenticate(user=user)
        return client
    return make


@pytest.fixture
def unlock_payment(student, listing):
    def make(method=METHOD_MPESA, **kwargs):
        payment, _ = ledger.create(student, listing, 200, method=method, purpose=PURPOSE_UNLOCK, **kwargs)
        return payment
    return make


# ---------------------------------------------------------------------------
# Gateway transport
# ---------------------------------------------------------------------------

class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body
        self.text = json.dumps(body) if body is not None else ""
        self.headers = {"Content-Type": "application/json"}

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeGateway:
    """Stands in for ``requests.Session.request``. Routes match on method + URL fragment, newest first."""

    def __init__(self):
        self.routes = []
        self.calls = []

    def on(self, method, fragment, status=200, body=None, exc=None):
        self.routes.insert(0, (method.upper(), fragment, status, body, exc))
        return self

    def __call__(self, method, url, **kwargs):
        self.calls.append(dict(kwargs, method=method.upper(), url=url))
        for m, fragment, status, body, exc in self.routes:
            if m == method.upper() and fragment in url:
                if exc is not None:
                    raise exc
                return FakeResponse(status, body)
        raise AssertionError(f"unexpected gateway call {method} {url}")

    def calls_to(self, fragment):
        return [c for c in self.calls if fragment in c["url"]]


@pytest.fixture
def fake_gateway(monkeypatch):
    fake = FakeGateway()
    monkeypatch.setattr(gateway_base.Session, "request", fake)
    monkeypatch.setattr(gateway_base.time, "sleep", lambda _s: None)
    return fake


@pytest.fixture
def mpesa_ok(fake_gateway):
    fake_gateway.on("GET", "/oauth/v1/generate", body={"access_token": "daraja-token", "expires_in": "3599"})
    fake_gateway.on("POST", "/mpesa/stkpush/v1/processrequest", body={
        "MerchantRequestID": MERCHANT_ID,
        "CheckoutRequestID": CHECKOUT_ID,
        "ResponseCode": "0",
        "ResponseDescription": "Success. Request accepted for processing",
        "CustomerMessage": "Success. Request accepted for processing",
    })
    return fake_gateway


@pytest.fixture
def mpesa_callback():
    def build(checkout_id=CHECKOUT_ID, result_code=0, amount=200, receipt="SJK4H2L9QX"):
        callback = {
            "MerchantRequestID": MERCHANT_ID,
            "CheckoutRequestID": checkout_id,
            "ResultCode": result_code,
            "ResultDesc": "The service request is processed successfully." if result_code == 0
            else "Request cancelled by user",
        }
        if result_code == 0:
            callback["CallbackMetadata"] = {"Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20261019120512},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]}
        return {"Body": {"stkCallback": callback}}
    return build


# ---------------------------------------------------------------------------
# Webhook signing
# ---------------------------------------------------------------------------

@pytest.fixture
def paystack_signature(settings):
    def sign(raw: bytes) -> str:
        return hmac.new(settings.PAYSTACK_SECRET_KEY.encode(), raw, hashlib.sha512).hexdigest()
    return sign


@pytest.fixture
def stripe_signature(settings):
    def sign(raw: bytes, secret=None) -> str:
        ts = int(time.time())
        signed = f"{ts}.{raw.decode()}".encode()
        digest = hmac.new((secret or settings.STRIPE_WEBHOOK_SECRET).encode(), signed, hashlib.sha256).hexdigest()
        return f"t={ts},v1={digest}"
    return sign
