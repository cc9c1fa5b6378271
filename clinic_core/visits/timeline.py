# clinic_core/visits/timeline.py
from __future__ import annotations

from typing import Any, Dict, Optional

from django.utils.timezone import now

from clinic_core.visits.models import VisitEvent


class EventCode:
    VISIT_CREATED = "VISIT_CREATED"
    STAGE_COMPLETED = "STAGE_COMPLETED"
    LAB_ORDERED = "LAB_ORDERED"
    VISIT_COMPLETED = "VISIT_COMPLETED"
    VISIT_CANCELLED = "VISIT_CANCELLED"


def emit_event(
    *,
    visit_id,
    event_key: str,
    code: str,
    title: str = "",
    timestamp=None,
    meta: Optional[Dict[str, Any]] = None,
) -> VisitEvent:
    """
    Idempotent, transaction-safe timeline write.

    Written inside the caller's transaction: if the transition rolls back, the
    event row rolls back too. Re-emitting the same event_key returns the
    existing row.
    """
    if timestamp is None:
        timestamp = now()
    if meta is None:
        meta = {}

    event, _ = VisitEvent.objects.get_or_create(
        visit_id=visit_id,
        event_key=event_key,
        defaults={
            "code": code,
            "title": title,
            "timestamp": timestamp,
            "meta": meta,
        },
    )
    return event
