# clinic_core/alerts/services.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

from django.db import transaction
from django.utils import timezone

from clinic_core.alerts.models import UNRESOLVED_STATUSES, Alert, AlertSeverity, AlertStatus

logger = logging.getLogger(__name__)

_LINK_FIELDS = ("visit_id", "patient_id", "invoice_id", "payment_id", "medication_id")


@dataclass(frozen=True)
class AlertContext:
    actor_user_id: int | None = None


# Raised by reconciliation and polling, where no staff member is acting.
SYSTEM = AlertContext(actor_user_id=None)


class AlertService:
    @staticmethod
    @transaction.atomic
    def create_alert(
        *,
        ctx: AlertContext,
        code: str,
        title: str,
        message: str = "",
        severity: str = AlertSeverity.INFO,
        visit_id: UUID | None = None,
        patient_id: UUID | None = None,
        invoice_id: UUID | None = None,
        payment_id: UUID | None = None,
        medication_id: UUID | None = None,
        meta: dict | None = None,
    ) -> Alert:
        alert = Alert.objects.create(
            code=code,
            title=title,
            message=message,
            severity=severity,
            visit_id=visit_id,
            patient_id=patient_id,
            invoice_id=invoice_id,
            payment_id=payment_id,
            medication_id=medication_id,
            created_by_user_id=ctx.actor_user_id,
            meta=meta or {},
        )
        logger.info("Alert raised code=%s severity=%s alert_id=%s", code, severity, alert.id)
        return alert

    @staticmethod
    @transaction.atomic
    def raise_once(*, ctx: AlertContext, code: str, title: str, **kwargs) -> tuple[Alert, bool]:
        """
        create_alert unless an unresolved alert with the same code already
        points at the same records. Returns (alert, created).
        """
        links = {name: kwargs[name] for name in _LINK_FIELDS if kwargs.get(name) is not None}
        existing = (
            Alert.objects.select_for_update()
            .filter(code=code, status__in=UNRESOLVED_STATUSES, **links)
            .order_by("created_at")
            .first()
        )
        if existing is not None:
            return existing, False
        return AlertService.create_alert(ctx=ctx, code=code, title=title, **kwargs), True

    @staticmethod
    @transaction.atomic
    def ack_alert(*, ctx: AlertContext, alert_id: UUID) -> Alert:
        alert = Alert.objects.select_for_update().get(id=alert_id)
        if alert.status != AlertStatus.OPEN:
            return alert

        alert.status = AlertStatus.ACKED
        alert.acked_by_user_id = ctx.actor_user_id
        alert.acked_at = timezone.now()
        alert.save(update_fields=["status", "acked_by_user_id", "acked_at", "updated_at"])
        return alert

    @staticmethod
    @transaction.atomic
    def resolve_alert(*, ctx: AlertContext, alert_id: UUID, note: str = "") -> Alert:
        alert = Alert.objects.select_for_update().get(id=alert_id)
        if alert.status == AlertStatus.RESOLVED:
            return alert

        alert.status = AlertStatus.RESOLVED
        alert.resolved_by_user_id = ctx.actor_user_id
        alert.resolved_at = timezone.now()
        if note:
            alert.meta = {**(alert.meta or {}), "resolution": note}
        alert.save(update_fields=["status", "resolved_by_user_id", "resolved_at", "meta", "updated_at"])
        logger.info("Alert resolved code=%s alert_id=%s", alert.code, alert.id)
        return alert

    @staticmethod
    def resolve_matching(*, ctx: AlertContext, code: str, note: str = "", **links) -> int:
        """
        Resolve every unresolved alert of `code` linked to the given records,
        e.g. low-stock alerts once the medication is restocked.
        """
        ids = list(
            Alert.objects.filter(code=code, status__in=UNRESOLVED_STATUSES, **links).values_list("id", flat=True)
        )
        for alert_id in ids:
            AlertService.resolve_alert(ctx=ctx, alert_id=alert_id, note=note)
        return len(ids)
