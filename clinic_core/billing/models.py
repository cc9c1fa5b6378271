# clinic_core/billing/models.py
from __future__ import annotations

from decimal import Decimal

from django.db import models
from django.db.models import F, Q

from clinic_core.common.models import UUIDModel

ZERO = Decimal("0.00")


class BillableKind(models.TextChoices):
    CONSULTATION = "CONSULTATION", "Consultation"
    LAB_TEST = "LAB_TEST", "Lab test"
    MEDICATION = "MEDICATION", "Medication"


class BillableStatus(models.TextChoices):
    COMPLETED = "Completed", "Completed"


class BillableItem(UUIDModel):
    """
    One chargeable service usage. Produced by the station that performed the
    service; the invoice composer turns unbilled items into invoice items.
    """
    kind = models.CharField(max_length=16, choices=BillableKind.choices, db_index=True)
    visit = models.ForeignKey(
        "visits.Visit", on_delete=models.PROTECT, related_name="billable_items", null=True, blank=True
    )
    patient = models.ForeignKey("patients.Patient", on_delete=models.PROTECT, related_name="billable_items")

    description = models.CharField(max_length=255)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    quantity = models.PositiveIntegerField(default=1)
    total_price = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(
        max_length=16, choices=BillableStatus.choices, default=BillableStatus.COMPLETED
    )

    # One billable item per source record
    prescription = models.OneToOneField(
        "pharmacy.Prescription", on_delete=models.PROTECT, null=True, blank=True, related_name="billable_item"
    )
    lab_test = models.OneToOneField(
        "lab.LabTest", on_delete=models.PROTECT, null=True, blank=True, related_name="billable_item"
    )

    class Meta:
        db_table = "billing_billable_item"
        indexes = [
            models.Index(fields=["visit", "kind"]),
            models.Index(fields=["patient", "created_at"]),
        ]

    def __str__(self) -> str:
        return f"{self.kind} {self.description} x{self.quantity}"


class InvoiceStatus(models.TextChoices):
    UNPAID = "Unpaid", "Unpaid"
    PARTIALLY_PAID = "Partially Paid", "Partially Paid"
    PAID = "Paid", "Paid"
    VOID = "Void", "Void"


OPEN_INVOICE_STATUSES = (InvoiceStatus.UNPAID, InvoiceStatus.PARTIALLY_PAID)
BILLED_INVOICE_STATUSES = (InvoiceStatus.UNPAID, InvoiceStatus.PARTIALLY_PAID, InvoiceStatus.PAID)


def derive_invoice_status(total_amount: Decimal, paid_amount: Decimal) -> str:
    if paid_amount >= total_amount:
        return InvoiceStatus.PAID
    if paid_amount > ZERO:
        return InvoiceStatus.PARTIALLY_PAID
    return InvoiceStatus.UNPAID


class Invoice(UUIDModel):
    """
    Bill for one visit (or an administrative bill for a patient).
    `paid_amount` only moves through conditional increments, so
    0 <= paid_amount <= total_amount holds at every commit.
    """
    patient = models.ForeignKey("patients.Patient", on_delete=models.PROTECT, related_name="invoices")
    visit = models.ForeignKey(
        "visits.Visit", on_delete=models.PROTECT, related_name="invoices", null=True, blank=True
    )

    invoice_number = models.CharField(max_length=32, unique=True)

    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)

    status = models.CharField(
        max_length=16, choices=InvoiceStatus.choices, default=InvoiceStatus.UNPAID, db_index=True
    )

    paid_at = models.DateTimeField(null=True, blank=True)
    voided_at = models.DateTimeField(null=True, blank=True)
    void_reason = models.CharField(max_length=255, blank=True, default="")
    notes = models.TextField(blank=True, default="")

    created_by_user_id = models.IntegerField(null=True, blank=True)

    class Meta:
        db_table = "billing_invoice"
        indexes = [
            models.Index(fields=["patient", "status"]),
            models.Index(fields=["status", "created_at"]),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(paid_amount__gte=0) & Q(paid_amount__lte=F("total_amount")),
                name="ck_invoice_paid_within_total",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.invoice_number} [{self.status}]"

    @property
    def balance(self) -> Decimal:
        return self.total_amount - self.paid_amount

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_INVOICE_STATUSES


class InvoiceItem(UUIDModel):
    """
    Immutable line of an invoice.
    """
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="items")
    billable_item = models.ForeignKey(
        BillableItem, on_delete=models.PROTECT, null=True, blank=True, related_name="invoice_items"
    )

    description = models.CharField(max_length=255)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    quantity = models.PositiveIntegerField(default=1)
    total_price = models.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        db_table = "billing_invoice_item"

    def __str__(self) -> str:
        return f"{self.description} x{self.quantity} = {self.total_price}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Invoice items are immutable once invoiced.")
        return super().save(*args, **kwargs)


class PaymentMethod(models.TextChoices):
    CASH = "Cash", "Cash"
    CARD = "Card", "Card"
    INSURANCE = "Insurance", "Insurance"
    MPESA = "M-Pesa", "M-Pesa"
    AIRTEL_MONEY = "Airtel Money", "Airtel Money"
    TIGO_PESA = "Tigo Pesa", "Tigo Pesa"
    HALOPESA = "Halopesa", "Halopesa"
    OTHER = "Other", "Other"


MOBILE_METHODS = (
    PaymentMethod.MPESA,
    PaymentMethod.AIRTEL_MONEY,
    PaymentMethod.TIGO_PESA,
    PaymentMethod.HALOPESA,
)


class PaymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


class Payment(UUIDModel):
    """
    Append-only money movement against one invoice.
    Mobile payments start `pending` and reach a terminal state exactly once.
    """
    invoice = models.ForeignKey(Invoice, on_delete=models.PROTECT, related_name="payments")

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    method = models.CharField(max_length=32, choices=PaymentMethod.choices)
    status = models.CharField(
        max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.COMPLETED, db_index=True
    )

    # Provider-issued correlation id (or counter receipt number)
    reference = models.CharField(max_length=128, blank=True, default="", db_index=True)
    # Correlation id issued at initiation; null for counter payments
    order_id = models.CharField(max_length=128, unique=True, null=True, blank=True)

    buyer_phone = models.CharField(max_length=20, blank=True, default="")
    poll_attempts = models.PositiveIntegerField(default=0)
    failure_reason = models.CharField(max_length=255, blank=True, default="")
    resolved_at = models.DateTimeField(null=True, blank=True)
    # Confirmed money that did not fit into the invoice balance
    unapplied_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)

    recorded_by_user_id = models.IntegerField(null=True, blank=True)

    class Meta:
        db_table = "billing_payment"
        indexes = [
            models.Index(fields=["invoice", "status"]),
            models.Index(fields=["status", "created_at"]),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name="ck_payment_amount_positive"),
        ]

    def __str__(self) -> str:
        return f"{self.method} {self.amount} [{self.status}]"

    @property
    def is_terminal(self) -> bool:
        return self.status != PaymentStatus.PENDING
