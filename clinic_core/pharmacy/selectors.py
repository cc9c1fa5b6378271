# clinic_core/pharmacy/selectors.py
from __future__ import annotations

from uuid import UUID

from django.db.models import F, QuerySet

from clinic_core.pharmacy.models import Medication, Prescription


def list_prescriptions(*, visit_id: UUID | None = None, status: str | None = None) -> QuerySet[Prescription]:
    qs = Prescription.objects.select_related("medication", "patient")
    if visit_id:
        qs = qs.filter(visit_id=visit_id)
    if status:
        qs = qs.filter(status=status)
    return qs.order_by("-created_at")


def low_stock_medications() -> QuerySet[Medication]:
    return Medication.objects.filter(quantity_in_stock__lte=F("reorder_level")).order_by("quantity_in_stock", "name")
