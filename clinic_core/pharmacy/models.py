# clinic_core/pharmacy/models.py
from __future__ import annotations

from decimal import Decimal

from django.db import models
from django.db.models import Q

from clinic_core.common.models import UUIDModel


class Medication(UUIDModel):
    """
    Stock-keeping item. `quantity_in_stock` only moves through conditional
    updates in the inventory ledger; the check constraint backs that up.
    """
    name = models.CharField(max_length=255)
    strength = models.CharField(max_length=64, blank=True, default="")
    quantity_in_stock = models.IntegerField(default=0)
    reorder_level = models.PositiveIntegerField(default=0)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))

    class Meta:
        db_table = "pharmacy_medication"
        constraints = [
            models.CheckConstraint(condition=Q(quantity_in_stock__gte=0), name="ck_medication_stock_non_negative"),
        ]
        indexes = [
            models.Index(fields=["name"]),
        ]

    def __str__(self) -> str:
        return f"{self.name} {self.strength}".strip()

    @property
    def is_low_stock(self) -> bool:
        return self.quantity_in_stock <= self.reorder_level


class PrescriptionStatus(models.TextChoices):
    PENDING = "Pending", "Pending"
    DISPENSED = "Dispensed", "Dispensed"


class Prescription(UUIDModel):
    visit = models.ForeignKey("visits.Visit", on_delete=models.PROTECT, related_name="prescriptions")
    patient = models.ForeignKey("patients.Patient", on_delete=models.PROTECT, related_name="prescriptions")
    medication = models.ForeignKey(Medication, on_delete=models.PROTECT, related_name="prescriptions")

    quantity = models.PositiveIntegerField()
    dosage = models.CharField(max_length=128, blank=True, default="")
    frequency = models.CharField(max_length=128, blank=True, default="")
    duration = models.CharField(max_length=128, blank=True, default="")
    instructions = models.TextField(blank=True, default="")

    status = models.CharField(
        max_length=16, choices=PrescriptionStatus.choices, default=PrescriptionStatus.PENDING, db_index=True
    )
    dispensed_quantity = models.PositiveIntegerField(default=0)
    dispensed_at = models.DateTimeField(null=True, blank=True)
    dispensed_by_user_id = models.IntegerField(null=True, blank=True)
    prescribed_by_user_id = models.IntegerField(null=True, blank=True)

    class Meta:
        db_table = "pharmacy_prescription"
        indexes = [
            models.Index(fields=["visit", "status"]),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(quantity__gt=0), name="ck_prescription_quantity_positive"),
        ]

    def __str__(self) -> str:
        return f"{self.medication_id} x{self.quantity} [{self.status}]"
