# clinic_core/patients/models.py
from django.db import models

from clinic_core.common.models import UUIDModel


class Patient(UUIDModel):
    """
    Minimal patient record. Registration screens own the rest of the profile;
    the workflow only needs identity and a phone to bill against.
    """
    full_name = models.CharField(max_length=255)
    phone = models.CharField(max_length=32, blank=True)
    email = models.EmailField(blank=True)

    # clinic-local medical record number
    mrn = models.CharField(max_length=64, unique=True)

    class Meta:
        db_table = "patients_patient"
        indexes = [
            models.Index(fields=["full_name"]),
            models.Index(fields=["phone"]),
        ]

    def __str__(self) -> str:
        return f"{self.full_name} ({self.mrn})"
