# clinic_core/visits/selectors.py
from __future__ import annotations

from uuid import UUID

from django.db.models import QuerySet

from clinic_core.visits.constants import OverallStatus
from clinic_core.visits.models import Visit, VisitEvent


class VisitSelectors:
    @staticmethod
    def list_visits(
        *,
        patient_id: UUID | None = None,
        stage: str | None = None,
        status: str | None = None,
    ) -> QuerySet[Visit]:
        qs = Visit.objects.select_related("patient").prefetch_related("stages")
        if patient_id:
            qs = qs.filter(patient_id=patient_id)
        if stage:
            qs = qs.filter(current_stage=stage)
        if status:
            qs = qs.filter(overall_status=status)
        return qs.order_by("-created_at")

    @staticmethod
    def active_visit_for_patient(*, patient_id: UUID, stage: str | None = None) -> Visit | None:
        qs = Visit.objects.filter(patient_id=patient_id, overall_status=OverallStatus.ACTIVE)
        if stage:
            qs = qs.filter(current_stage=stage)
        return qs.order_by("-created_at").first()

    @staticmethod
    def timeline(*, visit_id: UUID) -> QuerySet[VisitEvent]:
        return VisitEvent.objects.filter(visit_id=visit_id).order_by("timestamp", "created_at", "id")
