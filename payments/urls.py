# payments/urls.py
from django.urls import path

from .views import (
    CancelView,
    ConfirmView,
    MpesaCallbackView,
    PaymentDetailView,
    PaymentHistoryView,
    PaypalExecuteView,
    PaystackWebhookView,
    RefundView,
    StripeWebhookView,
    UnlockView,
    VerifyView,
)

urlpatterns = [
    path("unlock/<int:property_id>/", UnlockView.as_view(), name="payments_unlock"),
    path("verify/<str:reference>/", VerifyView.as_view(), name="payments_verify"),
    path("paypal/execute/", PaypalExecuteView.as_view(), name="payments_paypal_execute"),
    path("mpesa/callback/<uuid:payment_id>/", MpesaCallbackView.as_view(), name="payments_mpesa_callback"),
    path("stripe/webhook/", StripeWebhookView.as_view(), name="payments_stripe_webhook"),
    path("paystack/webhook/", PaystackWebhookView.as_view(), name="payments_paystack_webhook"),
    path("refund/", RefundView.as_view(), name="payments_refund"),
    path("history/", PaymentHistoryView.as_view(), name="payments_history"),
    path("<uuid:payment_id>/", PaymentDetailView.as_view(), name="payments_detail"),
    path("<uuid:payment_id>/confirm/", ConfirmView.as_view(), name="payments_confirm"),
    path("<uuid:payment_id>/cancel/", CancelView.as_view(), name="payments_cancel"),
]
