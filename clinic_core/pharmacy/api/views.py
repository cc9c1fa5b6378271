from __future__ import annotations

from uuid import UUID

from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import NotFound
from rest_framework.response import Response

from clinic_core.common.api.pagination import paginate
from clinic_core.common.permissions import PharmacyPermission, request_actor
from clinic_core.pharmacy.api.serializers import (
    DispenseSerializer,
    MedicationSerializer,
    PrescriptionCreateSerializer,
    PrescriptionSerializer,
)
from clinic_core.pharmacy.models import Prescription
from clinic_core.pharmacy.selectors import list_prescriptions, low_stock_medications
from clinic_core.pharmacy.services import PharmacyService


class PrescriptionViewSet(viewsets.ViewSet):
    permission_classes = [PharmacyPermission]
    serializer_class = PrescriptionSerializer
    queryset = Prescription.objects.none()

    @extend_schema(
        tags=["Pharmacy"],
        responses={200: PrescriptionSerializer(many=True)},
        parameters=[
            OpenApiParameter(name="visit", type=OpenApiTypes.UUID, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(name="status", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False),
        ],
    )
    def list(self, request):
        visit_raw = request.query_params.get("visit")
        qs = list_prescriptions(
            visit_id=UUID(str(visit_raw)) if visit_raw else None,
            status=request.query_params.get("status"),
        )
        return paginate(request, qs, PrescriptionSerializer)

    @extend_schema(tags=["Pharmacy"], responses={200: PrescriptionSerializer})
    def retrieve(self, request, pk=None):
        rx = list_prescriptions().filter(id=pk).first()
        if rx is None:
            raise NotFound("Prescription not found.")
        return Response(PrescriptionSerializer(rx).data, status=status.HTTP_200_OK)

    @extend_schema(tags=["Pharmacy"], request=PrescriptionCreateSerializer, responses={201: PrescriptionSerializer})
    def create(self, request):
        actor_user_id, roles = request_actor(request)

        ser = PrescriptionCreateSerializer(data=request.data or {})
        ser.is_valid(raise_exception=True)

        rx = PharmacyService.prescribe(actor_user_id=actor_user_id, actor_roles=roles, **ser.validated_data)
        return Response(PrescriptionSerializer(rx).data, status=status.HTTP_201_CREATED)

    @extend_schema(tags=["Pharmacy"], request=DispenseSerializer, responses={200: PrescriptionSerializer})
    @action(detail=True, methods=["post"], url_path="dispense")
    def dispense(self, request, pk=None):
        actor_user_id, roles = request_actor(request)

        ser = DispenseSerializer(data=request.data or {})
        ser.is_valid(raise_exception=True)

        rx = PharmacyService.dispense_prescription(
            prescription_id=UUID(str(pk)),
            quantity=ser.validated_data.get("quantity"),
            actor_user_id=actor_user_id,
            actor_roles=roles,
        )
        return Response(PrescriptionSerializer(rx).data, status=status.HTTP_200_OK)

    @extend_schema(tags=["Pharmacy"], responses={200: MedicationSerializer(many=True)})
    @action(detail=False, methods=["get"], url_path="low-stock")
    def low_stock(self, request):
        return Response(MedicationSerializer(low_stock_medications(), many=True).data, status=status.HTTP_200_OK)
