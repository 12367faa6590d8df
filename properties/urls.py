from django.urls import path

from .views import PremiumDetailsView

urlpatterns = [
    path("<int:property_id>/premium/", PremiumDetailsView.as_view(), name="property_premium"),
]
