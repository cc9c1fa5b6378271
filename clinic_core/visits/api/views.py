# clinic_core/visits/api/views.py
from __future__ import annotations

from uuid import UUID

from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import NotFound, ValidationError as DRFValidationError
from rest_framework.response import Response

from clinic_core.common.api.pagination import paginate
from clinic_core.common.permissions import VisitPermission, request_actor
from clinic_core.lab.api.serializers import LabTestSerializer
from clinic_core.visits.api.serializers import (
    CancelVisitSerializer,
    CompleteStageSerializer,
    OrderLabsSerializer,
    VisitCreateSerializer,
    VisitEventSerializer,
    VisitSerializer,
)
from clinic_core.visits.models import Visit
from clinic_core.visits.selectors import VisitSelectors
from clinic_core.visits.services import VisitService


def _uuid_or_none(value: str | None, field_name: str) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        raise DRFValidationError({field_name: "Invalid UUID"})


class VisitViewSet(viewsets.ViewSet):
    permission_classes = [VisitPermission]
    serializer_class = VisitSerializer
    queryset = Visit.objects.none()

    def get_object(self, pk) -> Visit:
        visit_id = _uuid_or_none(pk, "id")
        visit = VisitSelectors.list_visits().filter(id=visit_id).first()
        if visit is None:
            raise NotFound("Visit not found.")
        return visit

    # ------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------
    @extend_schema(
        tags=["Visits"],
        responses={200: VisitSerializer(many=True)},
        parameters=[
            OpenApiParameter(name="patient", type=OpenApiTypes.UUID, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(name="stage", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(name="status", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False),
        ],
    )
    def list(self, request):
        qs = VisitSelectors.list_visits(
            patient_id=_uuid_or_none(request.query_params.get("patient"), "patient"),
            stage=request.query_params.get("stage"),
            status=request.query_params.get("status"),
        )
        return paginate(request, qs, VisitSerializer)

    @extend_schema(tags=["Visits"], responses={200: VisitSerializer})
    def retrieve(self, request, pk=None):
        return Response(VisitSerializer(self.get_object(pk)).data, status=status.HTTP_200_OK)

    @extend_schema(tags=["Visits"], responses={200: VisitEventSerializer(many=True)})
    @action(detail=True, methods=["get"], url_path="timeline")
    def timeline(self, request, pk=None):
        visit = self.get_object(pk)
        events = VisitSelectors.timeline(visit_id=visit.id)
        return Response(VisitEventSerializer(events, many=True).data, status=status.HTTP_200_OK)

    # ------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------
    @extend_schema(tags=["Visits"], request=VisitCreateSerializer, responses={201: VisitSerializer})
    def create(self, request):
        actor_user_id, roles = request_actor(request)

        ser = VisitCreateSerializer(data=request.data or {})
        ser.is_valid(raise_exception=True)

        visit = VisitService.check_in(
            patient_id=ser.validated_data["patient_id"],
            appointment_id=ser.validated_data.get("appointment_id"),
            notes=ser.validated_data.get("notes", ""),
            actor_user_id=actor_user_id,
            actor_roles=roles,
        )
        return Response(VisitSerializer(visit).data, status=status.HTTP_201_CREATED)

    @extend_schema(tags=["Visits"], request=CompleteStageSerializer, responses={200: VisitSerializer})
    @action(detail=True, methods=["post"], url_path="complete-stage")
    def complete_stage(self, request, pk=None):
        actor_user_id, roles = request_actor(request)

        ser = CompleteStageSerializer(data=request.data or {})
        ser.is_valid(raise_exception=True)

        visit = VisitService.complete_stage(
            visit_id=_uuid_or_none(pk, "id"),
            stage=ser.validated_data["stage"],
            payload=ser.to_payload(),
            actor_user_id=actor_user_id,
            actor_roles=roles,
        )
        return Response(VisitSerializer(visit).data, status=status.HTTP_200_OK)

    @extend_schema(tags=["Visits"], request=OrderLabsSerializer, responses={201: LabTestSerializer(many=True)})
    @action(detail=True, methods=["post"], url_path="order-labs")
    def order_labs(self, request, pk=None):
        actor_user_id, roles = request_actor(request)

        ser = OrderLabsSerializer(data=request.data or {})
        ser.is_valid(raise_exception=True)

        tests = VisitService.order_lab_tests(
            visit_id=_uuid_or_none(pk, "id"),
            tests=ser.validated_data["tests"],
            actor_user_id=actor_user_id,
            actor_roles=roles,
        )
        return Response(LabTestSerializer(tests, many=True).data, status=status.HTTP_201_CREATED)

    @extend_schema(tags=["Visits"], request=CancelVisitSerializer, responses={200: VisitSerializer})
    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, pk=None):
        actor_user_id, roles = request_actor(request)

        ser = CancelVisitSerializer(data=request.data or {})
        ser.is_valid(raise_exception=True)

        visit = VisitService.cancel(
            visit_id=_uuid_or_none(pk, "id"),
            reason=ser.validated_data.get("reason", ""),
            actor_user_id=actor_user_id,
            actor_roles=roles,
        )
        return Response(VisitSerializer(visit).data, status=status.HTTP_200_OK)
