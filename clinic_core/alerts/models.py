# clinic_core/alerts/models.py
from __future__ import annotations

from django.db import models

from clinic_core.common.models import UUIDModel


class AlertSeverity(models.TextChoices):
    INFO = "INFO", "Info"
    WARNING = "WARNING", "Warning"
    CRITICAL = "CRITICAL", "Critical"


class AlertStatus(models.TextChoices):
    OPEN = "OPEN", "Open"
    ACKED = "ACKED", "Acknowledged"
    RESOLVED = "RESOLVED", "Resolved"


UNRESOLVED_STATUSES = (AlertStatus.OPEN, AlertStatus.ACKED)


class AlertCode:
    PAYMENT_TIMEOUT = "payment-timeout"
    PAYMENT_OVERPAID = "payment-overpaid"
    LATE_CONFIRMATION = "payment-late-confirmation"
    RECONCILIATION_MISS = "reconciliation-miss"
    LOW_STOCK = "low-stock"


class Alert(UUIDModel):
    """
    Something a person at the front desk, pharmacy or cashier has to look at:
    a payment that never confirmed, money that did not fit an invoice, a paid
    invoice with no visit to close, a medication running out.

    Links are plain UUIDs so alerts survive independently of the records.
    """
    code = models.SlugField(max_length=64)
    title = models.CharField(max_length=255)
    message = models.TextField(blank=True, default="")
    severity = models.CharField(max_length=16, choices=AlertSeverity.choices, default=AlertSeverity.INFO)
    status = models.CharField(max_length=16, choices=AlertStatus.choices, default=AlertStatus.OPEN)

    visit_id = models.UUIDField(null=True, blank=True, db_index=True)
    patient_id = models.UUIDField(null=True, blank=True)
    invoice_id = models.UUIDField(null=True, blank=True, db_index=True)
    payment_id = models.UUIDField(null=True, blank=True, db_index=True)
    medication_id = models.UUIDField(null=True, blank=True, db_index=True)

    created_by_user_id = models.IntegerField(null=True, blank=True)
    acked_by_user_id = models.IntegerField(null=True, blank=True)
    acked_at = models.DateTimeField(null=True, blank=True)
    resolved_by_user_id = models.IntegerField(null=True, blank=True)
    resolved_at = models.DateTimeField(null=True, blank=True)

    meta = models.JSONField(default=dict, blank=True)

    class Meta:
        db_table = "alerts_alert"
        indexes = [
            models.Index(fields=["code", "status"]),
            models.Index(fields=["status", "severity"]),
        ]

    def __str__(self) -> str:
        return f"{self.code} [{self.status}] {self.title}"
