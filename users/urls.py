# users/urls.py

from django.urls import path
from .views import SubscriptionView, UnlockedPropertiesView

urlpatterns = [
    path('unlocked-properties/', UnlockedPropertiesView.as_view(), name='user-unlocked-properties'),
    path('subscription/',        SubscriptionView.as_view(),       name='user-subscription'),
]
