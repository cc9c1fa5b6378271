# clinic_core/pharmacy/services.py
from __future__ import annotations

import logging
from typing import Iterable
from uuid import UUID

from django.db import transaction
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from clinic_core.alerts.models import AlertCode, AlertSeverity
from clinic_core.alerts.services import AlertContext, AlertService
from clinic_core.audit.services import AuditService
from clinic_core.billing.models import BillableItem, BillableKind
from clinic_core.common.api.exceptions import ConflictError
from clinic_core.common.exceptions import NoActiveVisit, StageGuardViolation
from clinic_core.pharmacy.ledger import DispenseLine, InventoryLedger
from clinic_core.pharmacy.models import Medication, Prescription, PrescriptionStatus
from clinic_core.visits import gate
from clinic_core.visits.constants import OverallStatus, Stage
from clinic_core.visits.models import Visit

logger = logging.getLogger(__name__)


class PharmacyService:
    # ---------------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------------
    @staticmethod
    def _active_visit(visit_id: UUID) -> Visit:
        visit = Visit.objects.filter(id=visit_id, overall_status=OverallStatus.ACTIVE).first()
        if visit is None:
            raise NoActiveVisit(visit_id=visit_id)
        return visit

    @staticmethod
    def _raise_low_stock_alert(*, line: DispenseLine, actor_user_id: int | None) -> None:
        AlertService.raise_once(
            ctx=AlertContext(actor_user_id=actor_user_id),
            code=AlertCode.LOW_STOCK,
            title=f"Low stock: {line.description}",
            message=f"{line.remaining_stock} left in stock.",
            severity=AlertSeverity.WARNING,
            medication_id=line.medication_id,
            meta={"remaining_stock": line.remaining_stock},
        )

    @staticmethod
    def _dispense(*, prescription: Prescription, actor_user_id: int | None, quantity: int | None = None) -> Prescription:
        if prescription.status != PrescriptionStatus.PENDING:
            raise ConflictError(detail="Prescription is already dispensed.")

        qty = quantity or prescription.quantity
        if qty > prescription.quantity:
            raise ValidationError({"quantity": "Cannot dispense more than prescribed."})

        line = InventoryLedger.dispense(medication_id=prescription.medication_id, quantity=qty)

        BillableItem.objects.create(
            kind=BillableKind.MEDICATION,
            visit_id=prescription.visit_id,
            patient_id=prescription.patient_id,
            prescription=prescription,
            description=line.description,
            unit_price=line.unit_price,
            quantity=line.quantity,
            total_price=line.total_price,
        )

        prescription.status = PrescriptionStatus.DISPENSED
        prescription.dispensed_quantity = qty
        prescription.dispensed_at = timezone.now()
        prescription.dispensed_by_user_id = actor_user_id
        prescription.save(
            update_fields=["status", "dispensed_quantity", "dispensed_at", "dispensed_by_user_id", "updated_at"]
        )

        AuditService.log(
            event_code="pharmacy.dispensed",
            entity_type="Prescription",
            entity_id=prescription.id,
            actor_user_id=actor_user_id,
            metadata={
                "medication_id": str(prescription.medication_id),
                "quantity": qty,
                "remaining_stock": line.remaining_stock,
            },
        )

        if line.low_stock:
            PharmacyService._raise_low_stock_alert(line=line, actor_user_id=actor_user_id)

        return prescription

    # ---------------------------------------------------------------------
    # Writes
    # ---------------------------------------------------------------------
    @staticmethod
    @transaction.atomic
    def prescribe(
        *,
        visit_id: UUID,
        medication_id: UUID,
        quantity: int,
        actor_user_id: int | None = None,
        actor_roles: Iterable[str] = (),
        dosage: str = "",
        frequency: str = "",
        duration: str = "",
        instructions: str = "",
    ) -> Prescription:
        visit = PharmacyService._active_visit(visit_id)
        if visit.current_stage != Stage.DOCTOR:
            raise StageGuardViolation(
                f"Prescriptions are written at the Doctor stage; visit is at {visit.current_stage}.",
                unmet=gate.Unmet.CURRENT_STAGE,
            )
        if not gate.actor_owns_stage(Stage.DOCTOR, actor_roles):
            raise StageGuardViolation("Only DOCTOR can prescribe.", unmet=gate.Unmet.ACTOR_ROLE)
        if not quantity or quantity <= 0:
            raise ValidationError({"quantity": "Quantity must be > 0."})
        if not Medication.objects.filter(id=medication_id).exists():
            raise NotFound("Medication not found.")

        rx = Prescription.objects.create(
            visit=visit,
            patient_id=visit.patient_id,
            medication_id=medication_id,
            quantity=quantity,
            dosage=dosage or "",
            frequency=frequency or "",
            duration=duration or "",
            instructions=instructions or "",
            prescribed_by_user_id=actor_user_id,
        )

        AuditService.log(
            event_code="pharmacy.prescribed",
            entity_type="Prescription",
            entity_id=rx.id,
            actor_user_id=actor_user_id,
            metadata={"visit_id": str(visit.id), "medication_id": str(medication_id), "quantity": quantity},
        )
        return rx

    @staticmethod
    @transaction.atomic
    def dispense_prescription(
        *,
        prescription_id: UUID,
        actor_user_id: int | None = None,
        actor_roles: Iterable[str] = (),
        quantity: int | None = None,
    ) -> Prescription:
        """
        Dispense one prescription ahead of the Pharmacy sign-off.
        Stock deduction, billable item and status change commit together.
        """
        if not gate.actor_owns_stage(Stage.PHARMACY, actor_roles):
            raise StageGuardViolation("Only PHARMACY can dispense.", unmet=gate.Unmet.ACTOR_ROLE)

        try:
            rx = Prescription.objects.select_for_update().get(id=prescription_id)
        except Prescription.DoesNotExist:
            raise NotFound("Prescription not found.")

        visit = PharmacyService._active_visit(rx.visit_id)
        if visit.current_stage != Stage.PHARMACY:
            raise StageGuardViolation(
                f"Visit is at {visit.current_stage}, not Pharmacy.",
                unmet=gate.Unmet.CURRENT_STAGE,
            )

        return PharmacyService._dispense(prescription=rx, actor_user_id=actor_user_id, quantity=quantity)

    @staticmethod
    @transaction.atomic
    def dispense_for_visit(*, visit_id: UUID, actor_user_id: int | None = None) -> list[Prescription]:
        """
        Dispense every Pending prescription of a visit. Called inside the
        Pharmacy sign-off; any InsufficientStock aborts the whole batch.
        """
        pending = list(
            Prescription.objects.select_for_update()
            .filter(visit_id=visit_id, status=PrescriptionStatus.PENDING)
            .order_by("created_at", "id")
        )
        dispensed = [
            PharmacyService._dispense(prescription=rx, actor_user_id=actor_user_id)
            for rx in pending
        ]
        if dispensed:
            logger.info("Dispensed %s prescription(s) for visit %s", len(dispensed), visit_id)
        return dispensed
