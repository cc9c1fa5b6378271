# clinic_core/audit/selectors.py
from __future__ import annotations

from datetime import datetime
from uuid import UUID

from django.db.models import QuerySet

from clinic_core.audit.models import AuditEvent


def activity_log(
    *,
    entity_type: str | None = None,
    entity_id: UUID | None = None,
    event_prefix: str | None = None,
    actor_user_id: int | None = None,
    since: datetime | None = None,
) -> QuerySet[AuditEvent]:
    """
    Newest first. `event_prefix="billing."` narrows to one area of the clinic.
    """
    qs = AuditEvent.objects.all()
    if entity_type:
        qs = qs.filter(entity_type=entity_type)
    if entity_id:
        qs = qs.filter(entity_id=entity_id)
    if event_prefix:
        qs = qs.filter(event_code__startswith=event_prefix)
    if actor_user_id is not None:
        qs = qs.filter(actor_user_id=actor_user_id)
    if since:
        qs = qs.filter(occurred_at__gte=since)
    return qs.order_by("-occurred_at", "-id")
