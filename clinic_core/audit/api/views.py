# clinic_core/audit/api/views.py
from __future__ import annotations

from uuid import UUID

from django.utils.dateparse import parse_datetime
from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import viewsets
from rest_framework.exceptions import ValidationError as DRFValidationError

from clinic_core.audit.api.serializers import AuditEventSerializer
from clinic_core.audit.models import AuditEvent
from clinic_core.audit.selectors import activity_log
from clinic_core.common.api.pagination import paginate
from clinic_core.common.permissions import AuditPermission


def _uuid_or_none(value: str | None, field_name: str) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        raise DRFValidationError({field_name: "Invalid UUID"})


class AuditEventViewSet(viewsets.ViewSet):
    """
    Read-only activity log for administrators.
    """
    permission_classes = [AuditPermission]
    serializer_class = AuditEventSerializer
    queryset = AuditEvent.objects.none()

    @extend_schema(
        tags=["Activity log"],
        responses={200: AuditEventSerializer(many=True)},
        parameters=[
            OpenApiParameter(name="entity_type", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(name="entity_id", type=OpenApiTypes.UUID, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(
                name="area",
                type=OpenApiTypes.STR,
                location=OpenApiParameter.QUERY,
                required=False,
                description="Event code prefix: visit, lab, pharmacy, billing, mobile_payments.",
            ),
            OpenApiParameter(name="actor_user_id", type=OpenApiTypes.INT, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(name="since", type=OpenApiTypes.DATETIME, location=OpenApiParameter.QUERY, required=False),
        ],
    )
    def list(self, request):
        params = request.query_params

        actor_user_id = None
        if params.get("actor_user_id"):
            try:
                actor_user_id = int(params["actor_user_id"])
            except ValueError:
                raise DRFValidationError({"actor_user_id": "Must be an integer."})

        since = None
        if params.get("since"):
            since = parse_datetime(params["since"])
            if since is None:
                raise DRFValidationError({"since": "Must be an ISO-8601 datetime."})

        area = (params.get("area") or "").strip().rstrip(".")
        qs = activity_log(
            entity_type=params.get("entity_type") or None,
            entity_id=_uuid_or_none(params.get("entity_id"), "entity_id"),
            event_prefix=f"{area}." if area else None,
            actor_user_id=actor_user_id,
            since=since,
        )
        return paginate(request, qs, AuditEventSerializer)
