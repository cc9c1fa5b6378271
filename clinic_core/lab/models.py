# clinic_core/lab/models.py
from __future__ import annotations

from decimal import Decimal

from django.db import models

from clinic_core.common.models import UUIDModel


class LabTestStatus(models.TextChoices):
    ORDERED = "Ordered", "Ordered"
    IN_PROGRESS = "InProgress", "In Progress"
    COMPLETED = "Completed", "Completed"
    CANCELLED = "Cancelled", "Cancelled"


class LabTestPriority(models.TextChoices):
    ROUTINE = "Routine", "Routine"
    URGENT = "Urgent", "Urgent"
    STAT = "STAT", "STAT"


OPEN_LAB_STATUSES = (LabTestStatus.ORDERED, LabTestStatus.IN_PROGRESS)


class LabTest(UUIDModel):
    """
    A test the doctor ordered during the Lab detour.
    Completing the last open test of a visit routes the visit back to Doctor.
    """
    visit = models.ForeignKey("visits.Visit", on_delete=models.PROTECT, related_name="lab_tests")
    patient = models.ForeignKey("patients.Patient", on_delete=models.PROTECT, related_name="lab_tests")

    test_name = models.CharField(max_length=255)
    test_type = models.CharField(max_length=64, blank=True, default="")
    priority = models.CharField(
        max_length=16, choices=LabTestPriority.choices, default=LabTestPriority.ROUTINE
    )
    price = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))

    status = models.CharField(
        max_length=16, choices=LabTestStatus.choices, default=LabTestStatus.ORDERED, db_index=True
    )
    result = models.JSONField(default=dict, blank=True)

    ordered_by_user_id = models.IntegerField(null=True, blank=True)
    completed_by_user_id = models.IntegerField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "lab_test"
        indexes = [
            models.Index(fields=["visit", "status"]),
            models.Index(fields=["status", "created_at"]),
        ]

    def __str__(self) -> str:
        return f"{self.test_name} [{self.status}]"
