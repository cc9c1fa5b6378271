from __future__ import annotations

from django.db.models import Case, IntegerField, QuerySet, Value, When

from clinic_core.alerts.models import Alert, AlertSeverity


def alerts_qs(*, status: str | None = None, code: str | None = None, severity: str | None = None) -> QuerySet[Alert]:
    """
    Critical first, then newest.
    """
    qs = Alert.objects.all()
    if status:
        qs = qs.filter(status=status)
    if code:
        qs = qs.filter(code=code)
    if severity:
        qs = qs.filter(severity=severity)

    rank = Case(
        When(severity=AlertSeverity.CRITICAL, then=Value(0)),
        When(severity=AlertSeverity.WARNING, then=Value(1)),
        default=Value(2),
        output_field=IntegerField(),
    )
    return qs.annotate(severity_rank=rank).order_by("severity_rank", "-created_at")
