import re
import uuid
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from rest_framework.exceptions import NotFound, ValidationError

from clinic_core.alerts.models import Alert, AlertCode, AlertSeverity, AlertStatus
from clinic_core.billing.models import Invoice, InvoiceStatus, Payment, PaymentStatus
from clinic_core.billing.services import InvoiceService, PaymentReconciler
from clinic_core.common.exceptions import (
    ExcessPayment,
    PaymentAlreadyPending,
    PaymentProviderError,
    ProviderUnavailable,
)
from clinic_core.mobile_payments.services import MobilePaymentService, PollOutcome, normalize_phone
from clinic_core.visits.constants import OverallStatus
from clinic_core.visits.models import Visit

pytestmark = pytest.mark.django_db


def _initiate(invoice, amount="3000.00", **kwargs):
    kwargs.setdefault("phone", "0712345678")
    kwargs.setdefault("method", "M-Pesa")
    return MobilePaymentService.initiate(invoice_id=invoice.id, amount=amount, **kwargs)


@pytest.mark.parametrize(
    "raw",
    ["0712345678", "712345678", "+255712345678", "255 712 345 678", "0712-345-678"],
)
def test_normalize_phone_accepts_local_formats(raw):
    assert normalize_phone(raw) == "255712345678"


@pytest.mark.parametrize("raw", ["", "12345", "0712345", "+254712345678", "07123456789"])
def test_normalize_phone_rejects_garbage(raw):
    with pytest.raises(ValidationError):
        normalize_phone(raw)


def test_initiate_records_pending_payment(provider, billing_invoice):
    result = _initiate(billing_invoice, phone="0712 345 678", buyer_email="pt@example.com")

    assert result.transaction_id == "REF-1"
    assert re.match(rf"^{billing_invoice.id}-\d+-[a-z0-9]{{6}}$", result.order_id)

    payment = Payment.objects.get(id=result.payment_id)
    assert payment.status == PaymentStatus.PENDING
    assert payment.order_id == result.order_id
    assert payment.reference == "REF-1"
    assert payment.buyer_phone == "255712345678"
    assert payment.amount == Decimal("3000.00")

    sent = provider.orders[0]
    assert sent["amount"] == 3000
    assert sent["buyer_phone"] == "255712345678"
    assert sent["buyer_email"] == "pt@example.com"
    assert sent["webhook_url"] == "https://clinic.test/api/v1/webhooks/zenopay/"
    assert sent["metadata"]["invoice_id"] == str(billing_invoice.id)
    assert sent["metadata"]["payment_method"] == "M-Pesa"

    # Nothing is applied until the provider confirms.
    inv = Invoice.objects.get(id=billing_invoice.id)
    assert inv.paid_amount == Decimal("0.00")
    assert inv.status == InvoiceStatus.UNPAID


def test_initiate_schedules_first_poll_after_commit(provider, billing_invoice, monkeypatch, django_capture_on_commit_callbacks):
    task = MagicMock()
    monkeypatch.setattr("clinic_core.mobile_payments.tasks.poll_mobile_payment", task)

    with django_capture_on_commit_callbacks(execute=True) as callbacks:
        result = _initiate(billing_invoice)

    assert len(callbacks) == 1
    task.apply_async.assert_called_once_with(args=[result.order_id], countdown=5)


def test_initiate_rejects_non_mobile_method(provider, billing_invoice):
    with pytest.raises(ValidationError):
        _initiate(billing_invoice, method="Cash")
    assert provider.orders == []


def test_initiate_rejects_amount_over_balance(provider, billing_invoice):
    with pytest.raises(ExcessPayment):
        _initiate(billing_invoice, amount="3000.01")
    assert provider.orders == []
    assert not Payment.objects.filter(invoice=billing_invoice).exists()


def test_initiate_unknown_invoice(provider):
    with pytest.raises(NotFound):
        MobilePaymentService.initiate(invoice_id=uuid.uuid4(), amount="10.00", phone="0712345678", method="M-Pesa")


def test_second_initiation_blocked_while_pending(provider, billing_invoice):
    first = _initiate(billing_invoice, amount="1000.00")

    with pytest.raises(PaymentAlreadyPending) as exc:
        _initiate(billing_invoice, amount="1000.00")

    assert exc.value.order_id == first.order_id
    assert len(provider.orders) == 1


def test_supersede_fails_prior_pending_payment(provider, billing_invoice):
    first = _initiate(billing_invoice, amount="1000.00")
    second = _initiate(billing_invoice, amount="3000.00", supersede=True)

    prior = Payment.objects.get(order_id=first.order_id)
    assert prior.status == PaymentStatus.FAILED
    assert prior.failure_reason == "superseded"
    assert Payment.objects.get(order_id=second.order_id).status == PaymentStatus.PENDING


def test_provider_error_leaves_nothing_behind(provider, billing_invoice):
    first = _initiate(billing_invoice, amount="1000.00")
    provider.error = PaymentProviderError(detail="Invalid phone")

    with pytest.raises(PaymentProviderError):
        _initiate(billing_invoice, amount="1000.00", supersede=True)

    # The supersede rolled back with the failed provider call.
    assert Payment.objects.get(order_id=first.order_id).status == PaymentStatus.PENDING
    assert Payment.objects.filter(invoice=billing_invoice).count() == 1


def test_webhook_completion_settles_invoice_and_visit(provider, billing_invoice, visit_at_billing):
    result = _initiate(billing_invoice)

    resolved = MobilePaymentService.handle_webhook(
        {"order_id": result.order_id, "payment_status": "COMPLETED", "reference": "MP123"}
    )

    assert resolved is True
    payment = Payment.objects.get(order_id=result.order_id)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.reference == "MP123"
    assert payment.resolved_at is not None

    inv = Invoice.objects.get(id=billing_invoice.id)
    assert inv.status == InvoiceStatus.PAID
    assert inv.paid_amount == Decimal("3000.00")
    assert Visit.objects.get(id=visit_at_billing.id).overall_status == OverallStatus.COMPLETED


def test_repeated_confirmation_applies_once(provider, billing_invoice):
    result = _initiate(billing_invoice, amount="1000.00")
    payload = {"order_id": result.order_id, "payment_status": "COMPLETED", "reference": "MP123"}

    assert MobilePaymentService.handle_webhook(payload) is True
    assert MobilePaymentService.handle_webhook(payload) is True

    provider.status = "COMPLETED"
    assert MobilePaymentService.poll_status(order_id=result.order_id) == PaymentStatus.COMPLETED

    inv = Invoice.objects.get(id=billing_invoice.id)
    assert inv.paid_amount == Decimal("1000.00")
    assert inv.status == InvoiceStatus.PARTIALLY_PAID


def test_webhook_failure_marks_payment_failed(provider, billing_invoice):
    result = _initiate(billing_invoice)

    assert MobilePaymentService.handle_webhook({"order_id": result.order_id, "payment_status": "failed"}) is True

    payment = Payment.objects.get(order_id=result.order_id)
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "provider_failed"
    assert Invoice.objects.get(id=billing_invoice.id).paid_amount == Decimal("0.00")


def test_webhook_ignores_pending_and_unknown_orders(provider, billing_invoice):
    result = _initiate(billing_invoice)

    assert MobilePaymentService.handle_webhook({"order_id": result.order_id, "payment_status": "PENDING"}) is False
    assert MobilePaymentService.handle_webhook({"order_id": "nope", "payment_status": "COMPLETED"}) is False
    assert Payment.objects.get(order_id=result.order_id).status == PaymentStatus.PENDING


def test_webhook_requires_order_id(provider):
    with pytest.raises(ValidationError):
        MobilePaymentService.handle_webhook({"payment_status": "COMPLETED"})


def test_poll_status_counts_attempts_while_pending(provider, billing_invoice):
    result = _initiate(billing_invoice)

    assert MobilePaymentService.poll_status(order_id=result.order_id) == PollOutcome.PENDING
    assert MobilePaymentService.poll_status(order_id=result.order_id) == PollOutcome.PENDING

    assert Payment.objects.get(order_id=result.order_id).poll_attempts == 2


def test_poll_status_resolves_completed(provider, billing_invoice):
    result = _initiate(billing_invoice)
    provider.status = "COMPLETED"
    provider.transid = "TX-99"

    assert MobilePaymentService.poll_status(order_id=result.order_id) == PaymentStatus.COMPLETED

    payment = Payment.objects.get(order_id=result.order_id)
    assert payment.reference == "TX-99"
    assert Invoice.objects.get(id=billing_invoice.id).status == InvoiceStatus.PAID


def test_poll_status_resolves_cancelled_as_failed(provider, billing_invoice):
    result = _initiate(billing_invoice)
    provider.status = "CANCELLED"

    assert MobilePaymentService.poll_status(order_id=result.order_id) == PaymentStatus.FAILED
    assert Payment.objects.get(order_id=result.order_id).failure_reason == "provider_cancelled"


def test_poll_status_propagates_provider_outage(provider, billing_invoice):
    result = _initiate(billing_invoice)
    provider.error = ProviderUnavailable()

    with pytest.raises(ProviderUnavailable):
        MobilePaymentService.poll_status(order_id=result.order_id)
    assert Payment.objects.get(order_id=result.order_id).status == PaymentStatus.PENDING


def test_poll_status_unknown_order(provider):
    with pytest.raises(NotFound):
        MobilePaymentService.poll_status(order_id="missing-order")


def test_expire_fails_payment_and_raises_alert(provider, billing_invoice):
    result = _initiate(billing_invoice)

    payment = MobilePaymentService.expire(order_id=result.order_id)

    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "timeout"
    alert = Alert.objects.get(code=AlertCode.PAYMENT_TIMEOUT)
    assert alert.severity == AlertSeverity.WARNING
    assert alert.payment_id == payment.id
    assert alert.invoice_id == billing_invoice.id
    assert alert.meta["order_id"] == result.order_id


def test_late_confirmation_after_timeout_is_applied_and_escalated(provider, billing_invoice, visit_at_billing):
    result = _initiate(billing_invoice)
    MobilePaymentService.expire(order_id=result.order_id)

    assert MobilePaymentService.handle_webhook(
        {"order_id": result.order_id, "payment_status": "COMPLETED", "reference": "MP-LATE"}
    ) is True

    payment = Payment.objects.get(order_id=result.order_id)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.failure_reason == ""
    assert payment.unapplied_amount == Decimal("0.00")
    inv = Invoice.objects.get(id=billing_invoice.id)
    assert inv.paid_amount == Decimal("3000.00")
    assert inv.status == InvoiceStatus.PAID
    assert Visit.objects.get(id=visit_at_billing.id).overall_status == OverallStatus.COMPLETED

    late = Alert.objects.get(code=AlertCode.LATE_CONFIRMATION, payment_id=payment.id)
    assert late.severity == AlertSeverity.CRITICAL
    assert late.meta["previous_failure"] == "timeout"
    assert Alert.objects.get(code=AlertCode.PAYMENT_TIMEOUT).status == AlertStatus.RESOLVED


def test_late_confirmation_is_recorded_once(provider, billing_invoice):
    result = _initiate(billing_invoice, amount="1000.00")
    MobilePaymentService.expire(order_id=result.order_id)
    payload = {"order_id": result.order_id, "payment_status": "COMPLETED"}

    MobilePaymentService.handle_webhook(payload)
    MobilePaymentService.handle_webhook(payload)

    assert Invoice.objects.get(id=billing_invoice.id).paid_amount == Decimal("1000.00")
    assert Alert.objects.filter(code=AlertCode.LATE_CONFIRMATION).count() == 1


def test_late_failure_after_timeout_changes_nothing(provider, billing_invoice):
    result = _initiate(billing_invoice)
    MobilePaymentService.expire(order_id=result.order_id)

    MobilePaymentService.handle_webhook({"order_id": result.order_id, "payment_status": "FAILED"})

    payment = Payment.objects.get(order_id=result.order_id)
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "timeout"
    assert not Alert.objects.filter(code=AlertCode.LATE_CONFIRMATION).exists()


def test_confirmation_of_superseded_payment_is_kept(provider, billing_invoice):
    first = _initiate(billing_invoice, amount="1000.00")
    _initiate(billing_invoice, amount="3000.00", supersede=True)

    MobilePaymentService.handle_webhook({"order_id": first.order_id, "payment_status": "COMPLETED"})

    payment = Payment.objects.get(order_id=first.order_id)
    assert payment.status == PaymentStatus.COMPLETED
    assert Invoice.objects.get(id=billing_invoice.id).paid_amount == Decimal("1000.00")
    alert = Alert.objects.get(code=AlertCode.LATE_CONFIRMATION, payment_id=payment.id)
    assert alert.meta["previous_failure"] == "superseded"


def test_confirmation_after_void_is_unapplied_and_escalated(provider, billing_invoice):
    result = _initiate(billing_invoice)
    InvoiceService.void(invoice_id=billing_invoice.id, reason="wrong patient")

    MobilePaymentService.handle_webhook({"order_id": result.order_id, "payment_status": "COMPLETED"})

    payment = Payment.objects.get(order_id=result.order_id)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.unapplied_amount == Decimal("3000.00")
    inv = Invoice.objects.get(id=billing_invoice.id)
    assert inv.status == InvoiceStatus.VOID
    assert inv.paid_amount == Decimal("0.00")
    assert Alert.objects.filter(code=AlertCode.LATE_CONFIRMATION, payment_id=payment.id).exists()
    assert Alert.objects.filter(code=AlertCode.PAYMENT_OVERPAID, payment_id=payment.id).exists()


def test_confirmation_after_counter_payment_is_kept_unapplied(provider, billing_invoice):
    result = _initiate(billing_invoice, amount="1000.00")
    PaymentReconciler.apply_payment(invoice_id=billing_invoice.id, amount="3000.00", method="Cash")

    MobilePaymentService.handle_webhook({"order_id": result.order_id, "payment_status": "COMPLETED"})

    payment = Payment.objects.get(order_id=result.order_id)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.unapplied_amount == Decimal("1000.00")
    inv = Invoice.objects.get(id=billing_invoice.id)
    assert inv.paid_amount == Decimal("3000.00")
    assert Alert.objects.filter(code=AlertCode.PAYMENT_OVERPAID, payment_id=payment.id).exists()
