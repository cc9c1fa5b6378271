# clinic_core/visits/models.py
from __future__ import annotations

import uuid

from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q

from clinic_core.common.models import UUIDModel
from clinic_core.patients.models import Patient
from clinic_core.visits.constants import OverallStatus, Stage, StageStatus


class Visit(UUIDModel):
    """
    One clinical encounter moving through the service stations.

    `version` is bumped by every workflow write; writers update with
    `filter(version=<read version>)` so a stale reader loses instead of
    overwriting.
    """
    patient = models.ForeignKey(Patient, on_delete=models.PROTECT, related_name="visits")

    # Explicit link from the appointment that triggered check-in.
    appointment_id = models.UUIDField(null=True, blank=True, unique=True)

    current_stage = models.CharField(
        max_length=16, choices=Stage.choices, default=Stage.RECEPTION, db_index=True
    )
    overall_status = models.CharField(
        max_length=16, choices=OverallStatus.choices, default=OverallStatus.ACTIVE, db_index=True
    )

    # Written once at Nurse sign-off (see visits.vitals.VitalsRecord).
    nurse_vitals = models.JSONField(null=True, blank=True)

    version = models.PositiveIntegerField(default=0)

    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancel_reason = models.CharField(max_length=255, blank=True, default="")

    created_by_user_id = models.IntegerField(null=True, blank=True)

    class Meta:
        db_table = "visits_visit"
        indexes = [
            models.Index(fields=["patient", "overall_status"]),
            models.Index(fields=["current_stage", "overall_status"]),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["patient"],
                condition=Q(overall_status=OverallStatus.ACTIVE),
                name="uq_active_visit_per_patient",
            ),
        ]

    def __str__(self) -> str:
        return f"Visit({self.patient_id}, {self.current_stage}, {self.overall_status})"

    @property
    def is_active(self) -> bool:
        return self.overall_status == OverallStatus.ACTIVE

    def stage_record(self, stage: str) -> "VisitStage | None":
        # Iterates the (usually prefetched) stage set.
        for rec in self.stages.all():
            if rec.stage == stage:
                return rec
        return None

    def stage_status(self, stage: str) -> str | None:
        rec = self.stage_record(stage)
        return rec.status if rec else None


class VisitStage(UUIDModel):
    """
    Per-station sub-state of a visit. Created when the visit enters the stage.
    """
    visit = models.ForeignKey(Visit, on_delete=models.CASCADE, related_name="stages")
    stage = models.CharField(max_length=16, choices=Stage.choices)
    status = models.CharField(
        max_length=16, choices=StageStatus.choices, default=StageStatus.PENDING, db_index=True
    )

    notes = models.TextField(blank=True, default="")
    data = models.JSONField(default=dict, blank=True)

    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    completed_by_user_id = models.IntegerField(null=True, blank=True)

    class Meta:
        db_table = "visits_stage"
        constraints = [
            models.UniqueConstraint(fields=["visit", "stage"], name="uq_visit_stage"),
        ]

    def __str__(self) -> str:
        return f"{self.stage}:{self.status}"


class VisitEvent(models.Model):
    """
    Immutable history stream for a visit.
    Timeline must ONLY read from this table.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    visit_id = models.UUIDField(db_index=True)

    # Stable event identity for idempotency (writers can safely re-fire)
    event_key = models.CharField(max_length=128, db_index=True)

    code = models.CharField(max_length=64, db_index=True)
    title = models.CharField(max_length=255, blank=True, default="")

    timestamp = models.DateTimeField(db_index=True)

    meta = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "visits_event"
        constraints = [
            models.UniqueConstraint(
                fields=["visit_id", "event_key"],
                name="uq_visitevent_key",
            )
        ]
        indexes = [
            models.Index(fields=["visit_id", "timestamp", "created_at", "id"]),
        ]

    def __str__(self):
        return f"{self.code} @ {self.timestamp}"

    def save(self, *args, **kwargs):
        # UUID PK exists even before first save, so use _state.adding
        if not self._state.adding:
            raise ValidationError("VisitEvent is immutable and cannot be modified once created.")
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("VisitEvent is immutable and cannot be deleted.")
