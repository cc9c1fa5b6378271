# clinic_core/audit/services.py
from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from clinic_core.audit.models import AuditEvent

logger = logging.getLogger(__name__)


class AuditService:
    @staticmethod
    def log(
        *,
        event_code: str,
        entity_type: str,
        entity_id: UUID,
        actor_user_id: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Append one activity row inside the caller's transaction, so the row
        exists only if the change it describes commits.
        """
        event = AuditEvent.objects.create(
            event_code=event_code,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_user_id=actor_user_id,
            metadata=metadata or {},
        )
        logger.debug("activity %s on %s:%s by user %s", event_code, entity_type, entity_id, actor_user_id)
        return event
