from decimal import Decimal

import pytest

from clinic_core.billing.models import Invoice, InvoiceStatus, Payment, PaymentMethod, PaymentStatus
from clinic_core.billing.services import PaymentReconciler
from clinic_core.common.exceptions import ExcessPayment

pytestmark = pytest.mark.django_db


def _stale_invoice_read(monkeypatch, invoice, competing_amount):
    """
    The balance check sees a snapshot taken before another cashier's payment
    landed, so only the conditional increment stands between the two.
    """
    stale = Invoice.objects.get(id=invoice.id)
    PaymentReconciler.apply_payment(invoice_id=invoice.id, amount=competing_amount, method=PaymentMethod.CARD)
    monkeypatch.setattr(Invoice.objects, "get", lambda **kwargs: stale)
    return stale


def test_lost_balance_race_writes_nothing(billing_invoice, monkeypatch):
    stale = _stale_invoice_read(monkeypatch, billing_invoice, Decimal("2500.00"))
    assert stale.balance == Decimal("3000.00")

    with pytest.raises(ExcessPayment) as exc:
        PaymentReconciler.apply_payment(invoice_id=billing_invoice.id, amount=Decimal("1000.00"), method=PaymentMethod.CASH)
    monkeypatch.undo()

    assert exc.value.balance == Decimal("500.00")
    inv = Invoice.objects.get(id=billing_invoice.id)
    assert inv.paid_amount == Decimal("2500.00")
    assert inv.status == InvoiceStatus.PARTIALLY_PAID
    assert list(Payment.objects.filter(invoice=billing_invoice).values_list("amount", flat=True)) == [
        Decimal("2500.00")
    ]


def test_racing_payment_that_still_fits_lands(billing_invoice, monkeypatch):
    _stale_invoice_read(monkeypatch, billing_invoice, Decimal("2500.00"))

    PaymentReconciler.apply_payment(invoice_id=billing_invoice.id, amount=Decimal("500.00"), method=PaymentMethod.CASH)
    monkeypatch.undo()

    inv = Invoice.objects.get(id=billing_invoice.id)
    assert inv.paid_amount == inv.total_amount == Decimal("3000.00")
    assert inv.status == InvoiceStatus.PAID


def test_increment_never_passes_total(billing_invoice):
    assert PaymentReconciler._increment_paid(invoice_id=billing_invoice.id, amount=Decimal("2000.00")) is True
    assert PaymentReconciler._increment_paid(invoice_id=billing_invoice.id, amount=Decimal("1000.01")) is False
    assert PaymentReconciler._increment_paid(invoice_id=billing_invoice.id, amount=Decimal("1000.00")) is True

    assert Invoice.objects.get(id=billing_invoice.id).paid_amount == Decimal("3000.00")


def test_confirmation_losing_the_increment_is_kept_unapplied(billing_invoice, monkeypatch):
    pending = Payment.objects.create(
        invoice=billing_invoice,
        amount=Decimal("3000.00"),
        method=PaymentMethod.MPESA,
        status=PaymentStatus.PENDING,
        order_id="order-race",
    )
    original = PaymentReconciler._increment_paid

    def counter_payment_lands_first(*, invoice_id, amount):
        Invoice.objects.filter(id=invoice_id).update(paid_amount=Decimal("1000.00"))
        return original(invoice_id=invoice_id, amount=amount)

    monkeypatch.setattr(PaymentReconciler, "_increment_paid", staticmethod(counter_payment_lands_first))

    payment = PaymentReconciler.settle_pending(payment_id=pending.id)

    assert payment.status == PaymentStatus.COMPLETED
    assert payment.unapplied_amount == Decimal("3000.00")
    assert Invoice.objects.get(id=billing_invoice.id).paid_amount == Decimal("1000.00")
