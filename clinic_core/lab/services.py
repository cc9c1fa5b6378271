# clinic_core/lab/services.py
from __future__ import annotations

import logging
from typing import Any, Iterable
from uuid import UUID

from django.db import transaction
from django.utils import timezone
from rest_framework.exceptions import NotFound

from clinic_core.audit.services import AuditService
from clinic_core.billing.models import BillableItem, BillableKind
from clinic_core.common.api.exceptions import ConflictError
from clinic_core.common.exceptions import StageGuardViolation
from clinic_core.lab.models import OPEN_LAB_STATUSES, LabTest, LabTestStatus
from clinic_core.lab.selectors import open_tests_for_visit
from clinic_core.visits import gate
from clinic_core.visits.constants import Stage
from clinic_core.visits.services import VisitService

logger = logging.getLogger(__name__)


class LabService:
    """
    Write-model operations for the Lab station.
    - Complete a test (records the result and its billable usage once)
    - Return the visit to Doctor when no ordered test is left open
    """

    @staticmethod
    @transaction.atomic
    def complete_test(
        *,
        lab_test_id: UUID,
        result: dict[str, Any],
        actor_user_id: int | None = None,
        actor_roles: Iterable[str] = (),
        notes: str = "",
    ) -> LabTest:
        if not gate.actor_owns_stage(Stage.LAB, actor_roles):
            raise StageGuardViolation("Only LAB can record results.", unmet=gate.Unmet.ACTOR_ROLE)

        try:
            test = LabTest.objects.select_for_update().get(id=lab_test_id)
        except LabTest.DoesNotExist:
            raise NotFound("Lab test not found.")

        if test.status not in OPEN_LAB_STATUSES:
            raise ConflictError(detail=f"Lab test is already {test.status}.")

        now = timezone.now()
        test.status = LabTestStatus.COMPLETED
        test.result = dict(result or {})
        test.completed_at = now
        test.completed_by_user_id = actor_user_id
        test.save(update_fields=["status", "result", "completed_at", "completed_by_user_id", "updated_at"])

        BillableItem.objects.create(
            kind=BillableKind.LAB_TEST,
            visit_id=test.visit_id,
            patient_id=test.patient_id,
            lab_test=test,
            description=f"Lab: {test.test_name}",
            unit_price=test.price,
            quantity=1,
            total_price=test.price,
        )

        AuditService.log(
            event_code="lab.test_completed",
            entity_type="LabTest",
            entity_id=test.id,
            actor_user_id=actor_user_id,
            metadata={"visit_id": str(test.visit_id), "test_name": test.test_name},
        )
        logger.info("Lab test %s completed for visit %s", test.id, test.visit_id)

        if not open_tests_for_visit(visit_id=test.visit_id).exists():
            VisitService.complete_stage(
                visit_id=test.visit_id,
                stage=Stage.LAB,
                payload={"notes": notes} if notes else {},
                actor_user_id=actor_user_id,
                actor_roles=actor_roles,
            )

        return test
