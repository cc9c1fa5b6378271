from __future__ import annotations

from uuid import UUID

from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import NotFound
from rest_framework.response import Response

from clinic_core.common.api.pagination import paginate
from clinic_core.common.permissions import LabPermission, request_actor
from clinic_core.lab.api.serializers import LabTestCompleteSerializer, LabTestSerializer
from clinic_core.lab.models import LabTest
from clinic_core.lab.selectors import list_lab_tests
from clinic_core.lab.services import LabService


class LabTestViewSet(viewsets.ViewSet):
    """
    Lab worklist:
    - list/retrieve ordered tests
    - complete (records the result; the last open test returns the visit to Doctor)
    """
    permission_classes = [LabPermission]
    serializer_class = LabTestSerializer
    queryset = LabTest.objects.none()

    @extend_schema(
        tags=["Lab"],
        responses={200: LabTestSerializer(many=True)},
        parameters=[
            OpenApiParameter(name="visit", type=OpenApiTypes.UUID, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(name="status", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False),
        ],
    )
    def list(self, request):
        visit_raw = request.query_params.get("visit")
        qs = list_lab_tests(
            visit_id=UUID(str(visit_raw)) if visit_raw else None,
            status=request.query_params.get("status"),
        )
        return paginate(request, qs, LabTestSerializer)

    @extend_schema(tags=["Lab"], responses={200: LabTestSerializer})
    def retrieve(self, request, pk=None):
        test = list_lab_tests().filter(id=pk).first()
        if test is None:
            raise NotFound("Lab test not found.")
        return Response(LabTestSerializer(test).data, status=status.HTTP_200_OK)

    @extend_schema(tags=["Lab"], request=LabTestCompleteSerializer, responses={200: LabTestSerializer})
    @action(detail=True, methods=["post"], url_path="complete")
    def complete(self, request, pk=None):
        actor_user_id, roles = request_actor(request)

        ser = LabTestCompleteSerializer(data=request.data or {})
        ser.is_valid(raise_exception=True)

        test = LabService.complete_test(
            lab_test_id=UUID(str(pk)),
            result=ser.validated_data["result"],
            notes=ser.validated_data.get("notes", ""),
            actor_user_id=actor_user_id,
            actor_roles=roles,
        )
        return Response(LabTestSerializer(test).data, status=status.HTTP_200_OK)
