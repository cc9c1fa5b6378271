# clinic_core/visits/services.py
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from clinic_core.audit.services import AuditService
from clinic_core.common.events import publish
from clinic_core.common.exceptions import (
    ActiveVisitExists,
    ConcurrentModification,
    NoActiveVisit,
    StageGuardViolation,
)
from clinic_core.common.permissions import ROLE_ADMIN, ROLE_BILLING, ROLE_RECEPTION
from clinic_core.lab.models import OPEN_LAB_STATUSES, LabTest, LabTestPriority, LabTestStatus
from clinic_core.patients.models import Patient
from clinic_core.pharmacy.services import PharmacyService
from clinic_core.visits import gate
from clinic_core.visits.constants import NEXT_STAGE, OverallStatus, Stage, StageStatus
from clinic_core.visits.models import Visit, VisitStage
from clinic_core.visits.selectors import VisitSelectors
from clinic_core.visits.timeline import EventCode, emit_event
from clinic_core.visits.vitals import parse_vitals

logger = logging.getLogger(__name__)

# Settlement signs off Billing on behalf of the cashier desk.
SETTLEMENT_ROLES = frozenset({ROLE_BILLING})
CANCEL_ROLES = frozenset({ROLE_ADMIN, ROLE_RECEPTION})


class VisitService:
    # ---------------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------------
    @staticmethod
    def _reload(visit_id) -> Visit:
        return Visit.objects.select_related("patient").prefetch_related("stages").get(id=visit_id)

    @staticmethod
    def _load(visit_id) -> Visit:
        try:
            visit = VisitService._reload(visit_id)
        except Visit.DoesNotExist:
            raise NoActiveVisit("Visit not found.", visit_id=visit_id)
        if not visit.is_active:
            raise NoActiveVisit(f"Visit is {visit.overall_status}.", visit_id=visit_id)
        return visit

    @staticmethod
    def _claim(*, visit: Visit, to_stage: str, **fields) -> None:
        """
        Compare-and-swap on `version`: the write lands only if nobody changed
        the visit since it was read. Zero rows means another actor won.
        """
        updated = Visit.objects.filter(
            id=visit.id,
            version=visit.version,
            overall_status=OverallStatus.ACTIVE,
        ).update(
            current_stage=to_stage,
            version=F("version") + 1,
            updated_at=timezone.now(),
            **fields,
        )
        if updated != 1:
            raise ConcurrentModification(entity_id=visit.id)

        visit.current_stage = to_stage
        visit.version += 1
        for name, value in fields.items():
            setattr(visit, name, value)

    @staticmethod
    def _open_stage(*, visit: Visit, stage: str, now) -> VisitStage:
        rec, created = VisitStage.objects.get_or_create(
            visit=visit,
            stage=stage,
            defaults={"status": StageStatus.PENDING, "started_at": now},
        )
        if not created:
            # Re-entry (Doctor after lab, Lab after a second order)
            rec.status = StageStatus.PENDING
            rec.started_at = now
            rec.completed_at = None
            rec.completed_by_user_id = None
            rec.save(update_fields=["status", "started_at", "completed_at", "completed_by_user_id", "updated_at"])
        return rec

    @staticmethod
    def _sign_off(*, visit: Visit, stage: str, actor_user_id: int | None, notes: str, data: dict, now) -> VisitStage:
        rec, _ = VisitStage.objects.get_or_create(visit=visit, stage=stage, defaults={"started_at": now})
        rec.status = StageStatus.COMPLETED
        rec.completed_at = now
        rec.completed_by_user_id = actor_user_id
        if notes:
            rec.notes = notes
        if data:
            rec.data = {**(rec.data or {}), **data}
        rec.save(update_fields=["status", "completed_at", "completed_by_user_id", "notes", "data", "updated_at"])
        return rec

    @staticmethod
    def _stage_payload(*, visit: Visit, stage: str, payload: dict[str, Any]) -> tuple[str, dict, dict]:
        """
        Split a sign-off payload into (notes, stage data, visit fields).
        Vitals are only accepted, and required, at the Nurse stage.
        """
        notes = str(payload.get("notes") or "")
        data = {k: v for k, v in payload.items() if k not in ("notes", "vitals") and v not in (None, "")}
        fields: dict[str, Any] = {}

        raw_vitals = payload.get("vitals")
        if stage == Stage.NURSE:
            if raw_vitals is None:
                raise ValidationError({"vitals": "Vitals are required to complete the Nurse stage."})
            fields["nurse_vitals"] = parse_vitals(raw_vitals).as_json()
        elif raw_vitals is not None:
            raise ValidationError({"vitals": "Vitals can only be recorded at the Nurse stage."})

        return notes, data, fields

    @staticmethod
    def _event_payload(visit: Visit, **extra) -> dict[str, Any]:
        return {"visit_id": str(visit.id), "patient_id": str(visit.patient_id), **extra}

    # ---------------------------------------------------------------------
    # Lookups
    # ---------------------------------------------------------------------
    @staticmethod
    def find_active_visit(*, patient_id: UUID, stage: str | None = None) -> Visit:
        """
        Active visit for a patient (optionally at a given stage).
        A miss is an error the caller must handle, never a silent None.
        """
        visit = VisitSelectors.active_visit_for_patient(patient_id=patient_id, stage=stage)
        if visit is None:
            raise NoActiveVisit(patient_id=patient_id, stage=stage)
        return visit

    # ---------------------------------------------------------------------
    # Lifecycle writes
    # ---------------------------------------------------------------------
    @staticmethod
    @transaction.atomic
    def check_in(
        *,
        patient_id: UUID,
        actor_user_id: int | None = None,
        actor_roles: Iterable[str] = (),
        appointment_id: UUID | None = None,
        notes: str = "",
    ) -> Visit:
        if appointment_id:
            existing = Visit.objects.filter(appointment_id=appointment_id).first()
            if existing:
                return VisitService._reload(existing.id)

        if not gate.actor_owns_stage(Stage.RECEPTION, actor_roles):
            raise StageGuardViolation("Only RECEPTION can check patients in.", unmet=gate.Unmet.ACTOR_ROLE)

        try:
            patient = Patient.objects.get(id=patient_id)
        except Patient.DoesNotExist:
            raise NotFound("Patient not found.")

        active = VisitSelectors.active_visit_for_patient(patient_id=patient.id)
        if active:
            raise ActiveVisitExists(visit_id=active.id)

        try:
            with transaction.atomic():
                visit = Visit.objects.create(
                    patient=patient,
                    appointment_id=appointment_id,
                    current_stage=Stage.RECEPTION,
                    overall_status=OverallStatus.ACTIVE,
                    created_by_user_id=actor_user_id,
                )
        except IntegrityError:
            raise ActiveVisitExists()

        now = timezone.now()
        VisitStage.objects.create(
            visit=visit,
            stage=Stage.RECEPTION,
            status=StageStatus.PENDING,
            notes=notes or "",
            started_at=now,
        )

        emit_event(
            visit_id=visit.id,
            event_key=f"{EventCode.VISIT_CREATED}:{visit.id}",
            code=EventCode.VISIT_CREATED,
            title="Patient checked in",
            timestamp=now,
            meta={"patient_id": str(patient.id), "appointment_id": str(appointment_id) if appointment_id else None},
        )

        AuditService.log(
            event_code="visit.created",
            entity_type="Visit",
            entity_id=visit.id,
            actor_user_id=actor_user_id,
            metadata={"patient_id": str(patient.id)},
        )
        logger.info("Visit created visit_id=%s patient_id=%s", visit.id, patient.id)

        publish("visit.stage_entered", VisitService._event_payload(visit, stage=Stage.RECEPTION, from_stage=None, actor_user_id=actor_user_id))
        return VisitService._reload(visit.id)

    @staticmethod
    def complete_stage(
        *,
        visit_id: UUID,
        stage: str,
        payload: dict[str, Any] | None = None,
        actor_user_id: int | None = None,
        actor_roles: Iterable[str] = (),
    ) -> Visit:
        """
        Sign off `stage` and advance the visit along the station graph.

        A lost version race is retried once against fresh state; if the other
        actor already moved the visit past `stage`, the caller gets
        ConcurrentModification.
        """
        if stage == Stage.BILLING:
            raise StageGuardViolation(
                "Billing is completed by payment settlement, not by sign-off.",
                unmet=gate.Unmet.PAYMENT_SETTLEMENT,
            )
        if stage not in NEXT_STAGE:
            raise StageGuardViolation(f"{stage} is not a stage that can be completed.", unmet=gate.Unmet.VALID_EDGE)

        kwargs = dict(
            visit_id=visit_id,
            stage=stage,
            payload=dict(payload or {}),
            actor_user_id=actor_user_id,
            actor_roles=frozenset(actor_roles or ()),
        )
        try:
            return VisitService._complete_stage_once(retrying=False, **kwargs)
        except ConcurrentModification:
            logger.warning("Concurrent modification on visit_id=%s stage=%s, retrying once", visit_id, stage)
            return VisitService._complete_stage_once(retrying=True, **kwargs)

    @staticmethod
    @transaction.atomic
    def _complete_stage_once(
        *,
        visit_id: UUID,
        stage: str,
        payload: dict[str, Any],
        actor_user_id: int | None,
        actor_roles: frozenset,
        retrying: bool,
    ) -> Visit:
        visit = VisitService._load(visit_id)
        if retrying and visit.current_stage != stage:
            raise ConcurrentModification("Visit was advanced by another user.", entity_id=visit.id)

        to_stage = NEXT_STAGE[stage]
        gate.enforce(visit, stage, to_stage, actor_roles, completing=True)
        if stage == Stage.LAB and LabTest.objects.filter(visit=visit, status__in=OPEN_LAB_STATUSES).exists():
            # Lab hands back to the Doctor only through the last recorded result
            raise StageGuardViolation(
                "Ordered lab tests still have no results.", unmet=gate.Unmet.LAB_RESULTS_PENDING
            )
        notes, data, fields = VisitService._stage_payload(visit=visit, stage=stage, payload=payload)

        VisitService._claim(visit=visit, to_stage=to_stage, **fields)
        now = timezone.now()

        if stage == Stage.PHARMACY:
            # InsufficientStock here rolls back the claim above
            dispensed = PharmacyService.dispense_for_visit(visit_id=visit.id, actor_user_id=actor_user_id)
            data["dispensed_prescription_ids"] = [str(p.id) for p in dispensed]

        VisitService._sign_off(visit=visit, stage=stage, actor_user_id=actor_user_id, notes=notes, data=data, now=now)

        if stage == Stage.DOCTOR and visit.stage_record(Stage.LAB) is None:
            VisitStage.objects.create(visit=visit, stage=Stage.LAB, status=StageStatus.SKIPPED, completed_at=now)

        VisitService._open_stage(visit=visit, stage=to_stage, now=now)

        emit_event(
            visit_id=visit.id,
            event_key=f"{EventCode.STAGE_COMPLETED}:{stage}:{visit.version}",
            code=EventCode.STAGE_COMPLETED,
            title=f"{stage} stage completed",
            timestamp=now,
            meta={"stage": stage, "next_stage": to_stage, "actor_user_id": actor_user_id},
        )
        AuditService.log(
            event_code="visit.stage_completed",
            entity_type="Visit",
            entity_id=visit.id,
            actor_user_id=actor_user_id,
            metadata={"stage": stage, "next_stage": to_stage, "version": visit.version},
        )
        logger.info("Visit %s: %s completed, now at %s (version %s)", visit.id, stage, to_stage, visit.version)

        publish("visit.stage_completed", VisitService._event_payload(visit, stage=stage, next_stage=to_stage, actor_user_id=actor_user_id))
        publish("visit.stage_entered", VisitService._event_payload(visit, stage=to_stage, from_stage=stage, actor_user_id=actor_user_id))

        return VisitService._reload(visit.id)

    @staticmethod
    def complete_on_settlement(*, visit_id: UUID, invoice_id: UUID, actor_user_id: int | None = None) -> Visit:
        """
        Billing -> Completed. Only the payment reconciler calls this, once the
        visit's invoice is Paid.
        """
        try:
            return VisitService._settle_once(visit_id=visit_id, invoice_id=invoice_id, actor_user_id=actor_user_id)
        except ConcurrentModification:
            logger.warning("Concurrent modification settling visit_id=%s, retrying once", visit_id)
            return VisitService._settle_once(visit_id=visit_id, invoice_id=invoice_id, actor_user_id=actor_user_id)

    @staticmethod
    @transaction.atomic
    def _settle_once(*, visit_id: UUID, invoice_id: UUID, actor_user_id: int | None) -> Visit:
        visit = VisitService._load(visit_id)
        if visit.current_stage != Stage.BILLING:
            raise NoActiveVisit(
                f"Visit is at {visit.current_stage}, not awaiting billing.",
                visit_id=visit.id,
                stage=Stage.BILLING,
            )

        gate.enforce(visit, Stage.BILLING, Stage.COMPLETED, SETTLEMENT_ROLES, completing=True)

        now = timezone.now()
        VisitService._claim(
            visit=visit,
            to_stage=Stage.COMPLETED,
            overall_status=OverallStatus.COMPLETED,
            completed_at=now,
        )
        VisitService._sign_off(
            visit=visit,
            stage=Stage.BILLING,
            actor_user_id=actor_user_id,
            notes="",
            data={"invoice_id": str(invoice_id)},
            now=now,
        )

        emit_event(
            visit_id=visit.id,
            event_key=f"{EventCode.STAGE_COMPLETED}:{Stage.BILLING}:{visit.version}",
            code=EventCode.STAGE_COMPLETED,
            title="Billing stage completed",
            timestamp=now,
            meta={"stage": Stage.BILLING, "next_stage": Stage.COMPLETED, "invoice_id": str(invoice_id)},
        )
        emit_event(
            visit_id=visit.id,
            event_key=f"{EventCode.VISIT_COMPLETED}:{visit.id}",
            code=EventCode.VISIT_COMPLETED,
            title="Visit completed",
            timestamp=now,
            meta={"invoice_id": str(invoice_id)},
        )
        AuditService.log(
            event_code="visit.completed",
            entity_type="Visit",
            entity_id=visit.id,
            actor_user_id=actor_user_id,
            metadata={"invoice_id": str(invoice_id)},
        )
        logger.info("Visit %s completed on settlement of invoice %s", visit.id, invoice_id)

        publish("visit.completed", VisitService._event_payload(visit, invoice_id=str(invoice_id), actor_user_id=actor_user_id))
        return VisitService._reload(visit.id)

    @staticmethod
    @transaction.atomic
    def order_lab_tests(
        *,
        visit_id: UUID,
        tests: Iterable[dict[str, Any]],
        actor_user_id: int | None = None,
        actor_roles: Iterable[str] = (),
    ) -> list[LabTest]:
        """
        Doctor -> Lab detour. The Doctor stage stays open (InProgress) and is
        re-opened as Pending once the last ordered test completes.
        """
        tests = list(tests or [])
        if not tests:
            raise ValidationError({"tests": "At least one lab test is required."})
        for t in tests:
            if not str(t.get("test_name") or "").strip():
                raise ValidationError({"tests": "Every lab test needs a test_name."})

        visit = VisitService._load(visit_id)
        gate.enforce(visit, Stage.DOCTOR, Stage.LAB, actor_roles)

        VisitService._claim(visit=visit, to_stage=Stage.LAB)
        now = timezone.now()

        VisitStage.objects.filter(visit=visit, stage=Stage.DOCTOR).update(
            status=StageStatus.IN_PROGRESS, updated_at=now
        )
        VisitService._open_stage(visit=visit, stage=Stage.LAB, now=now)

        created = LabTest.objects.bulk_create(
            [
                LabTest(
                    visit=visit,
                    patient_id=visit.patient_id,
                    test_name=str(t["test_name"]).strip(),
                    test_type=t.get("test_type") or "",
                    priority=t.get("priority") or LabTestPriority.ROUTINE,
                    price=Decimal(str(t.get("price") or "0.00")),
                    status=LabTestStatus.ORDERED,
                    ordered_by_user_id=actor_user_id,
                )
                for t in tests
            ]
        )

        emit_event(
            visit_id=visit.id,
            event_key=f"{EventCode.LAB_ORDERED}:{visit.version}",
            code=EventCode.LAB_ORDERED,
            title="Lab tests ordered",
            timestamp=now,
            meta={"lab_test_ids": [str(t.id) for t in created], "tests": [t.test_name for t in created]},
        )
        AuditService.log(
            event_code="visit.lab_ordered",
            entity_type="Visit",
            entity_id=visit.id,
            actor_user_id=actor_user_id,
            metadata={"count": len(created)},
        )
        logger.info("Visit %s: %s lab test(s) ordered", visit.id, len(created))

        publish("visit.stage_entered", VisitService._event_payload(visit, stage=Stage.LAB, from_stage=Stage.DOCTOR, actor_user_id=actor_user_id))
        return created

    @staticmethod
    @transaction.atomic
    def cancel(
        *,
        visit_id: UUID,
        reason: str = "",
        actor_user_id: int | None = None,
        actor_roles: Iterable[str] = (),
    ) -> Visit:
        if not set(actor_roles or ()) & CANCEL_ROLES:
            raise StageGuardViolation("Only RECEPTION can cancel a visit.", unmet=gate.Unmet.ACTOR_ROLE)

        visit = VisitService._load(visit_id)
        now = timezone.now()
        VisitService._claim(
            visit=visit,
            to_stage=visit.current_stage,
            overall_status=OverallStatus.CANCELLED,
            cancelled_at=now,
            cancel_reason=(reason or "")[:255],
        )

        LabTest.objects.filter(visit=visit, status__in=OPEN_LAB_STATUSES).update(
            status=LabTestStatus.CANCELLED, updated_at=now
        )

        emit_event(
            visit_id=visit.id,
            event_key=f"{EventCode.VISIT_CANCELLED}:{visit.id}",
            code=EventCode.VISIT_CANCELLED,
            title="Visit cancelled",
            timestamp=now,
            meta={"reason": reason or "", "stage": visit.current_stage},
        )
        AuditService.log(
            event_code="visit.cancelled",
            entity_type="Visit",
            entity_id=visit.id,
            actor_user_id=actor_user_id,
            metadata={"reason": reason or "", "stage": visit.current_stage},
        )
        logger.info("Visit %s cancelled at %s", visit.id, visit.current_stage)
        return VisitService._reload(visit.id)
