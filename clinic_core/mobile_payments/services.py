# clinic_core/mobile_payments/services.py
from __future__ import annotations

import logging
import re
import string
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone
from django.utils.crypto import get_random_string
from rest_framework.exceptions import NotFound, ValidationError

from clinic_core.alerts.models import AlertCode, AlertSeverity
from clinic_core.alerts.services import SYSTEM, AlertService
from clinic_core.audit.services import AuditService
from clinic_core.billing.models import MOBILE_METHODS, ZERO, Invoice, InvoiceStatus, Payment, PaymentStatus
from clinic_core.billing.services import PaymentReconciler, _money
from clinic_core.common.api.exceptions import ConflictError
from clinic_core.common.exceptions import (
    DuplicatePaymentConfirmation,
    ExcessPayment,
    PaymentAlreadyPending,
    PaymentTimeout,
)
from clinic_core.mobile_payments.client import get_client

logger = logging.getLogger(__name__)

PROVIDER_COMPLETED = "COMPLETED"
PROVIDER_FAILED = frozenset({"FAILED", "CANCELLED", "CANCELED", "REJECTED"})

_PHONE_RE = re.compile(r"^255\d{9}$")


class PollOutcome:
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class InitiationResult:
    transaction_id: str
    order_id: str
    payment_id: UUID


def normalize_phone(raw: str) -> str:
    """
    0712345678 / 712345678 / +255712345678 -> 255712345678
    """
    digits = re.sub(r"\D", "", raw or "")
    if digits.startswith("0"):
        digits = "255" + digits[1:]
    elif len(digits) == 9:
        digits = "255" + digits

    if not _PHONE_RE.match(digits):
        raise ValidationError({"phone": "Enter a valid Tanzanian mobile number."})
    return digits


def new_order_id(invoice_id) -> str:
    suffix = get_random_string(6, allowed_chars=string.ascii_lowercase + string.digits)
    return f"{invoice_id}-{int(time.time() * 1000)}-{suffix}"


def _schedule_poll(order_id: str) -> None:
    from clinic_core.mobile_payments.tasks import poll_mobile_payment

    delay = settings.MOBILE_PAYMENTS["POLL_INITIAL_DELAY"]
    poll_mobile_payment.apply_async(args=[order_id], countdown=delay)


class MobilePaymentService:
    # ---------------------------------------------------------------------
    # Initiation
    # ---------------------------------------------------------------------
    @staticmethod
    @transaction.atomic
    def initiate(
        *,
        invoice_id: UUID,
        amount,
        phone: str,
        method: str,
        actor_user_id: int | None = None,
        buyer_email: str = "",
        supersede: bool = False,
    ) -> InitiationResult:
        if method not in MOBILE_METHODS:
            raise ValidationError({"method": f"Unsupported mobile payment method: {method}"})

        amount = _money(amount)
        if amount <= ZERO:
            raise ValidationError({"amount": "Amount must be > 0."})
        buyer_phone = normalize_phone(phone)

        try:
            invoice = Invoice.objects.select_for_update().get(id=invoice_id)
        except Invoice.DoesNotExist:
            raise NotFound("Invoice not found.")

        if invoice.status == InvoiceStatus.VOID:
            raise ConflictError(detail="Invoice is void.")
        if invoice.status == InvoiceStatus.PAID:
            raise ConflictError(detail="Invoice is already paid.")
        if amount > invoice.balance:
            raise ExcessPayment(amount=amount, balance=invoice.balance)

        pending = list(
            invoice.payments.select_for_update().filter(status=PaymentStatus.PENDING, order_id__isnull=False)
        )
        if pending and not supersede:
            raise PaymentAlreadyPending(order_id=pending[0].order_id)

        now = timezone.now()
        for prior in pending:
            prior.status = PaymentStatus.FAILED
            prior.failure_reason = "superseded"
            prior.resolved_at = now
            prior.save(update_fields=["status", "failure_reason", "resolved_at", "updated_at"])
            logger.info("Pending payment %s superseded on invoice %s", prior.order_id, invoice.invoice_number)

        order_id = new_order_id(invoice.id)
        conf = settings.MOBILE_PAYMENTS

        # Provider errors propagate and roll back the supersede above.
        order = get_client().create_order(
            order_id=order_id,
            buyer_phone=buyer_phone,
            buyer_email=buyer_email or "",
            amount=int(amount.to_integral_value(rounding=ROUND_HALF_UP)),
            webhook_url=conf.get("WEBHOOK_URL", ""),
            metadata={
                "invoice_id": str(invoice.id),
                "payment_method": method,
                "description": f"Payment for invoice {invoice.invoice_number}",
            },
        )
        transaction_id = order.reference or order_id

        payment = Payment.objects.create(
            invoice=invoice,
            amount=amount,
            method=method,
            status=PaymentStatus.PENDING,
            order_id=order_id,
            reference=transaction_id,
            buyer_phone=buyer_phone,
            recorded_by_user_id=actor_user_id,
        )

        AuditService.log(
            event_code="mobile_payments.initiated",
            entity_type="Payment",
            entity_id=payment.id,
            actor_user_id=actor_user_id,
            metadata={
                "invoice_id": str(invoice.id),
                "order_id": order_id,
                "amount": str(amount),
                "method": method,
                "superseded": [p.order_id for p in pending],
            },
        )
        logger.info("Mobile payment %s initiated for invoice %s (%s)", order_id, invoice.invoice_number, amount)

        transaction.on_commit(lambda: _schedule_poll(order_id))
        return InitiationResult(transaction_id=transaction_id, order_id=order_id, payment_id=payment.id)

    # ---------------------------------------------------------------------
    # Resolution
    # ---------------------------------------------------------------------
    @staticmethod
    @transaction.atomic
    def resolve(*, order_id: str, outcome: str, reference: str = "", reason: str = "") -> Payment:
        """
        Single convergence point for poll and webhook. Locks the payment row;
        the first resolution wins and repeats are logged no-ops. The one
        exception is money: a COMPLETED for a payment already failed (timed
        out, superseded, invoice voided) is still recorded and escalated.
        """
        payment = Payment.objects.select_for_update().filter(order_id=order_id).first()
        if payment is None:
            raise NotFound("Payment not found.")

        late_from = ""
        if payment.is_terminal:
            if payment.status == PaymentStatus.COMPLETED or outcome != PollOutcome.COMPLETED:
                duplicate = DuplicatePaymentConfirmation(order_id=order_id, status=payment.status)
                logger.info("Ignoring %s for %s: %s", outcome, order_id, duplicate.detail)
                return payment
            late_from = payment.failure_reason or PaymentStatus.FAILED
            logger.error("Mobile payment %s confirmed after it was marked failed (%s)", order_id, late_from)

        if outcome == PollOutcome.COMPLETED:
            payment = PaymentReconciler.settle_pending(payment_id=payment.id, reference=reference, reopen=bool(late_from))
            if late_from:
                MobilePaymentService._escalate_late_confirmation(payment=payment, late_from=late_from)
        elif outcome == PollOutcome.FAILED:
            payment.status = PaymentStatus.FAILED
            payment.failure_reason = (reason or "provider_failed")[:255]
            payment.reference = reference or payment.reference
            payment.resolved_at = timezone.now()
            payment.save(update_fields=["status", "failure_reason", "reference", "resolved_at", "updated_at"])
            logger.info("Mobile payment %s failed (%s)", order_id, payment.failure_reason)
        else:
            raise ValueError(f"Unknown payment outcome: {outcome}")

        AuditService.log(
            event_code="mobile_payments.resolved",
            entity_type="Payment",
            entity_id=payment.id,
            actor_user_id=None,
            metadata={
                "order_id": order_id,
                "outcome": outcome,
                "reference": payment.reference,
                "late_from": late_from or None,
            },
        )
        return payment

    @staticmethod
    def _escalate_late_confirmation(*, payment: Payment, late_from: str) -> None:
        invoice = payment.invoice
        AlertService.create_alert(
            ctx=SYSTEM,
            code=AlertCode.LATE_CONFIRMATION,
            title=f"Mobile payment {payment.order_id} confirmed after it was marked failed",
            message=(
                f"{payment.amount} received; {payment.amount - payment.unapplied_amount} applied to "
                f"{invoice.invoice_number}, {payment.unapplied_amount} unapplied."
            ),
            severity=AlertSeverity.CRITICAL,
            patient_id=invoice.patient_id,
            invoice_id=invoice.id,
            payment_id=payment.id,
            meta={
                "order_id": payment.order_id,
                "previous_failure": late_from,
                "unapplied_amount": str(payment.unapplied_amount),
            },
        )
        AlertService.resolve_matching(
            ctx=SYSTEM,
            code=AlertCode.PAYMENT_TIMEOUT,
            note="Provider confirmed the payment late.",
            payment_id=payment.id,
        )

    @staticmethod
    def _outcome_for(provider_status: str) -> str:
        provider_status = (provider_status or "").upper()
        if provider_status == PROVIDER_COMPLETED:
            return PollOutcome.COMPLETED
        if provider_status in PROVIDER_FAILED:
            return PollOutcome.FAILED
        return PollOutcome.PENDING

    @staticmethod
    def poll_status(*, order_id: str) -> str:
        payment = Payment.objects.filter(order_id=order_id).first()
        if payment is None:
            raise NotFound("Payment not found.")
        if payment.is_terminal:
            return payment.status

        Payment.objects.filter(id=payment.id).update(poll_attempts=F("poll_attempts") + 1)

        status = get_client().order_status(order_id)
        outcome = MobilePaymentService._outcome_for(status.payment_status)
        if outcome == PollOutcome.PENDING:
            return outcome

        payment = MobilePaymentService.resolve(
            order_id=order_id,
            outcome=outcome,
            reference=status.reference,
            reason=f"provider_{status.payment_status.lower()}",
        )
        return payment.status

    @staticmethod
    def handle_webhook(payload: dict) -> bool:
        """
        Returns True when the notification resolved (or had already resolved)
        a known payment.
        """
        order_id = str(payload.get("order_id") or "").strip()
        if not order_id:
            raise ValidationError({"order_id": "This field is required."})

        provider_status = str(payload.get("payment_status") or "").upper()
        outcome = MobilePaymentService._outcome_for(provider_status)
        if outcome == PollOutcome.PENDING:
            logger.info("Webhook for %s with non-final status %r", order_id, provider_status)
            return False

        try:
            MobilePaymentService.resolve(
                order_id=order_id,
                outcome=outcome,
                reference=str(payload.get("reference") or ""),
                reason=f"provider_{provider_status.lower()}",
            )
        except NotFound:
            logger.warning("Webhook for unknown order %s", order_id)
            return False
        return True

    @staticmethod
    @transaction.atomic
    def expire(*, order_id: str) -> Payment:
        payment = Payment.objects.select_for_update().select_related("invoice").filter(order_id=order_id).first()
        if payment is None:
            raise NotFound("Payment not found.")
        if payment.is_terminal:
            return payment

        payment.status = PaymentStatus.FAILED
        payment.failure_reason = "timeout"
        payment.resolved_at = timezone.now()
        payment.save(update_fields=["status", "failure_reason", "resolved_at", "updated_at"])

        AlertService.create_alert(
            ctx=SYSTEM,
            code=AlertCode.PAYMENT_TIMEOUT,
            title=f"Mobile payment {order_id} timed out",
            message=str(PaymentTimeout.default_detail),
            severity=AlertSeverity.WARNING,
            patient_id=payment.invoice.patient_id,
            invoice_id=payment.invoice_id,
            payment_id=payment.id,
            meta={"order_id": order_id, "poll_attempts": payment.poll_attempts},
        )
        AuditService.log(
            event_code="mobile_payments.expired",
            entity_type="Payment",
            entity_id=payment.id,
            actor_user_id=None,
            metadata={"order_id": order_id, "poll_attempts": payment.poll_attempts},
        )
        logger.error(
            "Mobile payment %s not confirmed after %s poll(s); marked failed",
            order_id, payment.poll_attempts,
        )
        return payment
