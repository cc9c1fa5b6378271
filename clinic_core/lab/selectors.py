# clinic_core/lab/selectors.py
from __future__ import annotations

from uuid import UUID

from django.db.models import QuerySet

from clinic_core.lab.models import OPEN_LAB_STATUSES, LabTest


def list_lab_tests(*, visit_id: UUID | None = None, status: str | None = None) -> QuerySet[LabTest]:
    qs = LabTest.objects.select_related("patient")
    if visit_id:
        qs = qs.filter(visit_id=visit_id)
    if status:
        qs = qs.filter(status=status)
    return qs.order_by("-created_at")


def open_tests_for_visit(*, visit_id: UUID) -> QuerySet[LabTest]:
    return LabTest.objects.filter(visit_id=visit_id, status__in=OPEN_LAB_STATUSES)
