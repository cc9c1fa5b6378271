# clinic_core/audit/models.py
from django.db import models
from django.utils import timezone

from clinic_core.common.models import UUIDModel


class AuditEvent(UUIDModel):
    """
    Activity log row: which staff member did what to which record.
    Rows are inserted by AuditService.log and never changed afterwards.
    """
    event_code = models.CharField(max_length=64, db_index=True)  # "visit.stage_completed", "billing.payment_applied"
    entity_type = models.CharField(max_length=32)  # "Visit", "Invoice", "Payment", "Prescription", "LabTest"
    entity_id = models.UUIDField()

    # Loose reference; provider callbacks and Celery tasks act with no user.
    actor_user_id = models.IntegerField(null=True, blank=True, db_index=True)

    occurred_at = models.DateTimeField(default=timezone.now, db_index=True)
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        db_table = "audit_audit_event"
        ordering = ["-occurred_at"]
        indexes = [
            models.Index(fields=["entity_type", "entity_id"]),
        ]

    def __str__(self) -> str:
        return f"{self.event_code} {self.entity_type}:{self.entity_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Activity log entries are append-only.")
        super().save(*args, **kwargs)
