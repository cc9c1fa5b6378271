# clinic_core/billing/services.py
from __future__ import annotations

import logging
from decimal import Decimal
from uuid import UUID

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from clinic_core.alerts.models import AlertCode, AlertSeverity
from clinic_core.alerts.services import SYSTEM, AlertContext, AlertService
from clinic_core.audit.services import AuditService
from clinic_core.billing.models import (
    BILLED_INVOICE_STATUSES,
    OPEN_INVOICE_STATUSES,
    ZERO,
    BillableItem,
    BillableKind,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    derive_invoice_status,
)
from clinic_core.common.api.exceptions import ConflictError
from clinic_core.common.exceptions import (
    ConcurrentModification,
    DuplicatePaymentConfirmation,
    ExcessPayment,
    InvoiceAlreadyOpen,
    NoActiveVisit,
    StageGuardViolation,
)
from clinic_core.patients.models import Patient
from clinic_core.visits.constants import Stage
from clinic_core.visits.services import VisitService

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS)


def _consultation_fee() -> Decimal:
    return _money(getattr(settings, "CLINIC_CONSULTATION_FEE", ZERO))


class InvoiceComposer:
    # ---------------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------------
    @staticmethod
    def _next_invoice_number() -> str:
        last = Invoice.objects.order_by("-invoice_number").values_list("invoice_number", flat=True).first()
        seq = int(last.split("-")[-1]) + 1 if last else 1
        return f"INV-{seq:06d}"

    @staticmethod
    def _unbilled_items(*, patient_id: UUID, visit_id: UUID | None):
        qs = BillableItem.objects.filter(patient_id=patient_id).exclude(
            invoice_items__invoice__status__in=BILLED_INVOICE_STATUSES
        )
        if visit_id:
            qs = qs.filter(visit_id=visit_id)
        return qs.order_by("created_at", "id")

    @staticmethod
    def _consultation_item(*, patient_id: UUID, visit_id: UUID | None) -> BillableItem | None:
        """
        Flat consultation fee: billed once per visit (every time for a
        visit-less administrative invoice).
        """
        fee = _consultation_fee()
        if fee <= ZERO:
            return None
        if visit_id and BillableItem.objects.filter(visit_id=visit_id, kind=BillableKind.CONSULTATION).exists():
            return None
        return BillableItem.objects.create(
            kind=BillableKind.CONSULTATION,
            visit_id=visit_id,
            patient_id=patient_id,
            description="Consultation fee",
            unit_price=fee,
            quantity=1,
            total_price=fee,
        )

    @staticmethod
    def _bill_items(*, invoice: Invoice, visit_id: UUID | None, include_fee: bool = True) -> Decimal:
        """
        Creates invoice items for everything still unbilled and returns the
        amount added.
        """
        added = ZERO
        if include_fee:
            InvoiceComposer._consultation_item(patient_id=invoice.patient_id, visit_id=visit_id)
        for item in InvoiceComposer._unbilled_items(patient_id=invoice.patient_id, visit_id=visit_id):
            InvoiceItem.objects.create(
                invoice=invoice,
                billable_item=item,
                description=item.description,
                unit_price=item.unit_price,
                quantity=item.quantity,
                total_price=item.total_price,
            )
            added += item.total_price
        return added

    @staticmethod
    def _create_invoice(**fields) -> Invoice:
        for _ in range(3):
            try:
                with transaction.atomic():
                    return Invoice.objects.create(invoice_number=InvoiceComposer._next_invoice_number(), **fields)
            except IntegrityError:
                logger.warning("Invoice number collision, retrying")
        raise ConcurrentModification("Could not allocate an invoice number.")

    # ---------------------------------------------------------------------
    # Writes
    # ---------------------------------------------------------------------
    @staticmethod
    @transaction.atomic
    def compose(
        *,
        patient_id: UUID,
        visit_id: UUID | None = None,
        actor_user_id: int | None = None,
        notes: str = "",
    ) -> Invoice:
        """
        Sum the consultation fee and every completed, unbilled service usage
        into a new Unpaid invoice. Refuses to open a second invoice while the
        patient still has an open one.
        """
        if not Patient.objects.filter(id=patient_id).exists():
            raise NotFound("Patient not found.")

        open_invoice = (
            Invoice.objects.select_for_update()
            .filter(patient_id=patient_id, status__in=OPEN_INVOICE_STATUSES)
            .order_by("created_at")
            .first()
        )
        if open_invoice:
            raise InvoiceAlreadyOpen(invoice_id=open_invoice.id)

        invoice = InvoiceComposer._create_invoice(
            patient_id=patient_id,
            visit_id=visit_id,
            status=InvoiceStatus.UNPAID,
            total_amount=ZERO,
            paid_amount=ZERO,
            notes=notes or "",
            created_by_user_id=actor_user_id,
        )

        invoice.total_amount = InvoiceComposer._bill_items(invoice=invoice, visit_id=visit_id)
        invoice.status = derive_invoice_status(invoice.total_amount, invoice.paid_amount)
        if invoice.status == InvoiceStatus.PAID:
            invoice.paid_at = timezone.now()
        invoice.save(update_fields=["total_amount", "status", "paid_at", "updated_at"])

        AuditService.log(
            event_code="billing.invoice_composed",
            entity_type="Invoice",
            entity_id=invoice.id,
            actor_user_id=actor_user_id,
            metadata={
                "invoice_number": invoice.invoice_number,
                "visit_id": str(visit_id) if visit_id else None,
                "total_amount": str(invoice.total_amount),
            },
        )
        logger.info(
            "Invoice %s composed patient_id=%s visit_id=%s total=%s",
            invoice.invoice_number, patient_id, visit_id, invoice.total_amount,
        )

        if invoice.status == InvoiceStatus.PAID:
            # Nothing to collect: settle right away.
            PaymentReconciler.settle_visit(invoice=invoice, actor_user_id=actor_user_id)

        return invoice

    @staticmethod
    @transaction.atomic
    def attach_to_visit(*, invoice_id: UUID, visit_id: UUID, actor_user_id: int | None = None) -> Invoice:
        """
        Reuse an already open invoice for a visit entering Billing: link it and
        append the visit's unbilled items instead of opening a second bill.
        """
        invoice = Invoice.objects.select_for_update().get(id=invoice_id)
        if not invoice.is_open:
            raise ConflictError(detail=f"Invoice {invoice.invoice_number} is {invoice.status}.")
        if invoice.visit_id and invoice.visit_id != visit_id:
            raise ConflictError(detail=f"Invoice {invoice.invoice_number} belongs to another visit.")

        has_fee = invoice.items.filter(billable_item__kind=BillableKind.CONSULTATION).exists()
        added = InvoiceComposer._bill_items(invoice=invoice, visit_id=visit_id, include_fee=not has_fee)
        Invoice.objects.filter(id=invoice.id).update(
            visit_id=visit_id,
            total_amount=F("total_amount") + added,
            updated_at=timezone.now(),
        )
        invoice.refresh_from_db()

        AuditService.log(
            event_code="billing.invoice_attached",
            entity_type="Invoice",
            entity_id=invoice.id,
            actor_user_id=actor_user_id,
            metadata={"visit_id": str(visit_id), "added": str(added)},
        )
        logger.info("Invoice %s linked to visit %s (+%s)", invoice.invoice_number, visit_id, added)
        return PaymentReconciler.refresh_status(invoice_id=invoice.id)


class InvoiceService:
    @staticmethod
    @transaction.atomic
    def void(*, invoice_id: UUID, reason: str = "", actor_user_id: int | None = None) -> Invoice:
        try:
            invoice = Invoice.objects.select_for_update().get(id=invoice_id)
        except Invoice.DoesNotExist:
            raise NotFound("Invoice not found.")

        if invoice.status == InvoiceStatus.VOID:
            return invoice
        if invoice.payments.filter(status=PaymentStatus.COMPLETED).exists():
            raise ConflictError(detail="Invoice has recorded payments and cannot be voided.")

        now = timezone.now()
        failed = invoice.payments.filter(status=PaymentStatus.PENDING).update(
            status=PaymentStatus.FAILED,
            failure_reason="invoice_voided",
            resolved_at=now,
            updated_at=now,
        )

        invoice.status = InvoiceStatus.VOID
        invoice.voided_at = now
        invoice.void_reason = (reason or "")[:255]
        invoice.save(update_fields=["status", "voided_at", "void_reason", "updated_at"])

        AuditService.log(
            event_code="billing.invoice_voided",
            entity_type="Invoice",
            entity_id=invoice.id,
            actor_user_id=actor_user_id,
            metadata={"reason": invoice.void_reason, "failed_pending_payments": failed},
        )
        logger.info("Invoice %s voided (%s pending payment(s) failed)", invoice.invoice_number, failed)
        return invoice


class PaymentReconciler:
    # ---------------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------------
    @staticmethod
    def _increment_paid(*, invoice_id: UUID, amount: Decimal) -> bool:
        """
        Single conditional increment: lands only while the amount still fits
        into the balance, so paid_amount can never pass total_amount.
        """
        updated = (
            Invoice.objects.filter(
                id=invoice_id,
                status__in=OPEN_INVOICE_STATUSES,
                paid_amount__lte=F("total_amount") - amount,
            )
            .update(paid_amount=F("paid_amount") + amount, updated_at=timezone.now())
        )
        return updated == 1

    @staticmethod
    @transaction.atomic
    def refresh_status(*, invoice_id: UUID) -> Invoice:
        invoice = Invoice.objects.select_for_update().get(id=invoice_id)
        if invoice.status == InvoiceStatus.VOID:
            return invoice
        status = derive_invoice_status(invoice.total_amount, invoice.paid_amount)
        if status != invoice.status:
            invoice.status = status
            invoice.paid_at = timezone.now() if status == InvoiceStatus.PAID else None
            invoice.save(update_fields=["status", "paid_at", "updated_at"])
        return invoice

    @staticmethod
    def settle_visit(*, invoice: Invoice, actor_user_id: int | None = None) -> bool:
        """
        Complete the visit billed by a Paid invoice.
        A lookup miss never fails the payment: it is logged and escalated to
        an operator alert, and the caller's money movement still commits.
        """
        visit_id = invoice.visit_id
        try:
            with transaction.atomic():
                if visit_id is None:
                    visit_id = VisitService.find_active_visit(patient_id=invoice.patient_id, stage=Stage.BILLING).id
                VisitService.complete_on_settlement(
                    visit_id=visit_id,
                    invoice_id=invoice.id,
                    actor_user_id=actor_user_id,
                )
        except (NoActiveVisit, StageGuardViolation, ConcurrentModification) as exc:
            logger.warning(
                "Invoice %s paid but visit could not be completed (visit_id=%s): %s",
                invoice.invoice_number, visit_id, exc.detail,
            )
            AlertService.create_alert(
                ctx=AlertContext(actor_user_id=actor_user_id),
                code=AlertCode.RECONCILIATION_MISS,
                title=f"Paid invoice {invoice.invoice_number} did not complete a visit",
                message=str(getattr(exc, "reason", None) or exc.detail),
                severity=AlertSeverity.WARNING,
                visit_id=visit_id,
                patient_id=invoice.patient_id,
                invoice_id=invoice.id,
                meta={"error": exc.default_code},
            )
            return False
        return True

    @staticmethod
    def _after_increment(*, invoice_id: UUID, actor_user_id: int | None) -> Invoice:
        invoice = PaymentReconciler.refresh_status(invoice_id=invoice_id)
        if invoice.status == InvoiceStatus.PAID:
            PaymentReconciler.settle_visit(invoice=invoice, actor_user_id=actor_user_id)
        return invoice

    # ---------------------------------------------------------------------
    # Writes
    # ---------------------------------------------------------------------
    @staticmethod
    @transaction.atomic
    def apply_payment(
        *,
        invoice_id: UUID,
        amount,
        method: str,
        reference: str = "",
        recorded_by_user_id: int | None = None,
    ) -> Invoice:
        """
        Record money received at the counter: increment, record, re-derive
        status and, once Paid, complete the visit. All in one transaction.
        """
        amount = _money(amount)
        if amount <= ZERO:
            raise ValidationError({"amount": "Amount must be > 0."})

        try:
            invoice = Invoice.objects.get(id=invoice_id)
        except Invoice.DoesNotExist:
            raise NotFound("Invoice not found.")

        if invoice.status == InvoiceStatus.VOID:
            raise ConflictError(detail="Invoice is void.")
        if amount > invoice.balance:
            raise ExcessPayment(amount=amount, balance=invoice.balance)

        if not PaymentReconciler._increment_paid(invoice_id=invoice.id, amount=amount):
            # Lost a race against another payment; nothing was written.
            invoice.refresh_from_db()
            raise ExcessPayment(amount=amount, balance=invoice.balance)

        payment = Payment.objects.create(
            invoice=invoice,
            amount=amount,
            method=method,
            status=PaymentStatus.COMPLETED,
            reference=reference or "",
            resolved_at=timezone.now(),
            recorded_by_user_id=recorded_by_user_id,
        )

        AuditService.log(
            event_code="billing.payment_applied",
            entity_type="Invoice",
            entity_id=invoice.id,
            actor_user_id=recorded_by_user_id,
            metadata={"payment_id": str(payment.id), "amount": str(amount), "method": method},
        )
        logger.info("Payment %s of %s applied to invoice %s", payment.id, amount, invoice.invoice_number)

        return PaymentReconciler._after_increment(invoice_id=invoice.id, actor_user_id=recorded_by_user_id)

    @staticmethod
    @transaction.atomic
    def settle_pending(*, payment_id: UUID, reference: str = "", reopen: bool = False) -> Payment:
        """
        Apply a provider-confirmed pending payment through the same increment
        path. Money that no longer fits the balance (paid meanwhile at the
        counter, or invoice voided) is kept as unapplied and escalated.

        reopen=True also accepts a payment already marked failed (timed out or
        superseded) that the provider has since confirmed.
        """
        payment = Payment.objects.select_for_update().select_related("invoice").get(id=payment_id)
        if payment.status == PaymentStatus.COMPLETED or (payment.is_terminal and not reopen):
            raise DuplicatePaymentConfirmation(order_id=payment.order_id or str(payment.id), status=payment.status)

        invoice = payment.invoice
        balance = invoice.balance if invoice.is_open else ZERO
        applied = min(payment.amount, balance)
        if applied > ZERO and not PaymentReconciler._increment_paid(invoice_id=invoice.id, amount=applied):
            invoice.refresh_from_db()
            applied = ZERO

        payment.status = PaymentStatus.COMPLETED
        payment.failure_reason = ""
        payment.reference = reference or payment.reference
        payment.resolved_at = timezone.now()
        payment.unapplied_amount = payment.amount - applied
        payment.save(update_fields=["status", "failure_reason", "reference", "resolved_at", "unapplied_amount", "updated_at"])

        AuditService.log(
            event_code="billing.payment_applied",
            entity_type="Invoice",
            entity_id=invoice.id,
            actor_user_id=None,
            metadata={
                "payment_id": str(payment.id),
                "order_id": payment.order_id,
                "amount": str(payment.amount),
                "applied": str(applied),
                "method": payment.method,
            },
        )
        logger.info(
            "Pending payment %s confirmed: applied %s of %s to invoice %s",
            payment.order_id, applied, payment.amount, invoice.invoice_number,
        )

        if payment.unapplied_amount > ZERO:
            logger.warning(
                "Payment %s over-confirmed invoice %s by %s",
                payment.order_id, invoice.invoice_number, payment.unapplied_amount,
            )
            AlertService.create_alert(
                ctx=SYSTEM,
                code=AlertCode.PAYMENT_OVERPAID,
                title=f"Unapplied mobile payment on {invoice.invoice_number}",
                message=f"{payment.unapplied_amount} received beyond the invoice balance.",
                severity=AlertSeverity.WARNING,
                patient_id=invoice.patient_id,
                invoice_id=invoice.id,
                payment_id=payment.id,
                meta={"order_id": payment.order_id, "unapplied_amount": str(payment.unapplied_amount)},
            )

        if applied > ZERO:
            PaymentReconciler._after_increment(invoice_id=invoice.id, actor_user_id=None)
        return payment
