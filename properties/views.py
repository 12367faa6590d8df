# properties/views.py
from django.db.models import F
from drf_spectacular.utils import extend_schema
from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from payments.entitlements import has_entitlement
from payments.services import is_admin
from .models import Property


@extend_schema(description="Premium details of a listing: only for accounts that unlocked it, its landlord and admins.")
class PremiumDetailsView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, property_id: int):
        prop = Property.objects.filter(pk=property_id).first()
        if prop is None:
            return Response({"success": False, "message": "Property not found"}, status=status.HTTP_404_NOT_FOUND)

        user = request.user
        if not (prop.landlord_id == user.pk or is_admin(user) or has_entitlement(user, prop.pk)):
            return Response(
                {"success": False, "message": "Unlock this property to view its details", "unlock_required": True},
                status=status.HTTP_403_FORBIDDEN,
            )

        if prop.landlord_id != user.pk:
            Property.objects.filter(pk=prop.pk).update(stats_views=F("stats_views") + 1)
        return Response({
            "success": True,
            "data": {
                "id": prop.pk,
                "title": prop.title,
                "location": prop.location,
                "price": str(prop.price),
                "premium_details": prop.premium_details,
            },
        })
