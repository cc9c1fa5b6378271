# clinic_core/visits/constants.py
from django.db import models

from clinic_core.common.permissions import (
    ROLE_BILLING,
    ROLE_DOCTOR,
    ROLE_LAB,
    ROLE_NURSE,
    ROLE_PHARMACY,
    ROLE_RECEPTION,
)


class Stage(models.TextChoices):
    RECEPTION = "Reception", "Reception"
    NURSE = "Nurse", "Nurse"
    DOCTOR = "Doctor", "Doctor"
    LAB = "Lab", "Lab"
    PHARMACY = "Pharmacy", "Pharmacy"
    BILLING = "Billing", "Billing"
    COMPLETED = "Completed", "Completed"


class OverallStatus(models.TextChoices):
    ACTIVE = "Active", "Active"
    COMPLETED = "Completed", "Completed"
    CANCELLED = "Cancelled", "Cancelled"


class StageStatus(models.TextChoices):
    PENDING = "Pending", "Pending"
    IN_PROGRESS = "InProgress", "In Progress"
    COMPLETED = "Completed", "Completed"
    SKIPPED = "Skipped", "Skipped"


# Where completing a stage leads.
NEXT_STAGE = {
    Stage.RECEPTION: Stage.NURSE,
    Stage.NURSE: Stage.DOCTOR,
    Stage.DOCTOR: Stage.PHARMACY,
    Stage.LAB: Stage.DOCTOR,
    Stage.PHARMACY: Stage.BILLING,
    Stage.BILLING: Stage.COMPLETED,
}

# Doctor orders tests without completing the consult.
LAB_DETOUR = (Stage.DOCTOR, Stage.LAB)

ALLOWED_EDGES = frozenset(NEXT_STAGE.items()) | {LAB_DETOUR}

# Role that signs off each station.
STAGE_OWNER = {
    Stage.RECEPTION: ROLE_RECEPTION,
    Stage.NURSE: ROLE_NURSE,
    Stage.DOCTOR: ROLE_DOCTOR,
    Stage.LAB: ROLE_LAB,
    Stage.PHARMACY: ROLE_PHARMACY,
    Stage.BILLING: ROLE_BILLING,
}

OPEN_STAGE_STATUSES = (StageStatus.PENDING, StageStatus.IN_PROGRESS)
