# clinic_core/billing/selectors.py
from __future__ import annotations

from uuid import UUID

from django.db.models import QuerySet

from clinic_core.billing.models import Invoice, Payment


def list_invoices(
    *,
    patient_id: UUID | None = None,
    visit_id: UUID | None = None,
    status: str | None = None,
) -> QuerySet[Invoice]:
    qs = Invoice.objects.select_related("patient").prefetch_related("items")
    if patient_id:
        qs = qs.filter(patient_id=patient_id)
    if visit_id:
        qs = qs.filter(visit_id=visit_id)
    if status:
        qs = qs.filter(status=status)
    return qs.order_by("-created_at")


def invoice_payments(*, invoice_id: UUID) -> QuerySet[Payment]:
    return Payment.objects.filter(invoice_id=invoice_id).order_by("created_at", "id")
