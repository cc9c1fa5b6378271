# clinic_core/billing/subscribers.py
from __future__ import annotations

import logging
from typing import Any, Dict

from clinic_core.alerts.models import AlertCode, AlertSeverity
from clinic_core.alerts.services import AlertContext, AlertService
from clinic_core.billing.services import InvoiceComposer
from clinic_core.common.api.exceptions import ConflictError
from clinic_core.common.events import subscribe
from clinic_core.common.exceptions import InvoiceAlreadyOpen
from clinic_core.visits.constants import Stage

logger = logging.getLogger(__name__)


@subscribe("visit.stage_entered")
def compose_invoice_on_billing_entry(payload: Dict[str, Any]) -> None:
    """
    Billing-stage entry composes the visit's invoice. An invoice the patient
    already has open is reused for the visit instead of billing twice.
    """
    if payload.get("stage") != Stage.BILLING:
        return

    patient_id = payload["patient_id"]
    visit_id = payload["visit_id"]
    actor_user_id = payload.get("actor_user_id")

    try:
        InvoiceComposer.compose(patient_id=patient_id, visit_id=visit_id, actor_user_id=actor_user_id)
    except InvoiceAlreadyOpen as exc:
        try:
            InvoiceComposer.attach_to_visit(invoice_id=exc.invoice_id, visit_id=visit_id, actor_user_id=actor_user_id)
        except ConflictError as attach_exc:
            logger.warning("Visit %s entered Billing but open invoice %s is unusable: %s", visit_id, exc.invoice_id, attach_exc.detail)
            AlertService.create_alert(
                ctx=AlertContext(actor_user_id=actor_user_id),
                code=AlertCode.RECONCILIATION_MISS,
                title="Visit entered Billing without a usable invoice",
                message=str(attach_exc.detail),
                severity=AlertSeverity.WARNING,
                visit_id=visit_id,
                patient_id=patient_id,
                invoice_id=exc.invoice_id,
            )
