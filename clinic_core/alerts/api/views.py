# clinic_core/alerts/api/views.py
from __future__ import annotations

from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from clinic_core.alerts.api.serializers import AlertResolveSerializer, AlertSerializer
from clinic_core.alerts.selectors import alerts_qs
from clinic_core.alerts.services import AlertContext, AlertService
from clinic_core.common.permissions import AlertPermission, request_actor


class AlertViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    """
    Operator queue: payment timeouts, unapplied money, reconciliation misses,
    low stock. Staff acknowledge an alert when they pick it up and resolve it
    once handled.
    """
    serializer_class = AlertSerializer
    permission_classes = [AlertPermission]

    def get_queryset(self):
        params = self.request.query_params
        return alerts_qs(status=params.get("status"), code=params.get("code"), severity=params.get("severity"))

    @extend_schema(
        tags=["Alerts"],
        parameters=[
            OpenApiParameter(name="status", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(name="code", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(name="severity", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False),
        ],
    )
    def list(self, request, *args, **kwargs):
        return super().list(request, *args, **kwargs)

    @extend_schema(tags=["Alerts"], request=None, responses={200: AlertSerializer})
    @action(methods=["post"], detail=True, url_path="ack")
    def ack(self, request, pk=None):
        actor_user_id, _ = request_actor(request)
        alert = AlertService.ack_alert(ctx=AlertContext(actor_user_id=actor_user_id), alert_id=self.get_object().id)
        return Response(AlertSerializer(alert).data, status=status.HTTP_200_OK)

    @extend_schema(tags=["Alerts"], request=AlertResolveSerializer, responses={200: AlertSerializer})
    @action(methods=["post"], detail=True, url_path="resolve")
    def resolve(self, request, pk=None):
        actor_user_id, _ = request_actor(request)
        ser = AlertResolveSerializer(data=request.data or {})
        ser.is_valid(raise_exception=True)

        alert = AlertService.resolve_alert(
            ctx=AlertContext(actor_user_id=actor_user_id),
            alert_id=self.get_object().id,
            note=ser.validated_data["note"],
        )
        return Response(AlertSerializer(alert).data, status=status.HTTP_200_OK)
