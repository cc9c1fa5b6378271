# clinic_core/pharmacy/ledger.py
"""
Inventory ledger: every stock movement is a single conditional UPDATE, so two
pharmacists dispensing the same medication can never drive stock negative.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from django.db import transaction
from django.db.models import F
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from clinic_core.alerts.models import AlertCode
from clinic_core.alerts.services import SYSTEM, AlertService
from clinic_core.common.exceptions import InsufficientStock
from clinic_core.pharmacy.models import Medication

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispenseLine:
    medication_id: UUID
    description: str
    quantity: int
    unit_price: Decimal
    remaining_stock: int
    low_stock: bool

    @property
    def total_price(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(Decimal("0.01"))


class InventoryLedger:
    @staticmethod
    def _require_positive(quantity: int) -> int:
        if not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError({"quantity": "Quantity must be a positive whole number."})
        return quantity

    @staticmethod
    @transaction.atomic
    def dispense(*, medication_id: UUID, quantity: int) -> DispenseLine:
        quantity = InventoryLedger._require_positive(quantity)

        updated = Medication.objects.filter(
            id=medication_id,
            quantity_in_stock__gte=quantity,
        ).update(
            quantity_in_stock=F("quantity_in_stock") - quantity,
            updated_at=timezone.now(),
        )

        try:
            med = Medication.objects.get(id=medication_id)
        except Medication.DoesNotExist:
            raise NotFound("Medication not found.")

        if updated != 1:
            logger.info(
                "Dispense rejected medication_id=%s requested=%s available=%s",
                medication_id, quantity, med.quantity_in_stock,
            )
            raise InsufficientStock(
                medication_id=medication_id,
                requested=quantity,
                available=med.quantity_in_stock,
                name=str(med),
            )

        logger.info("Stock deducted medication_id=%s qty=%s remaining=%s", med.id, quantity, med.quantity_in_stock)
        if med.is_low_stock:
            logger.warning(
                "Low stock medication_id=%s remaining=%s reorder_level=%s",
                med.id, med.quantity_in_stock, med.reorder_level,
            )

        return DispenseLine(
            medication_id=med.id,
            description=str(med),
            quantity=quantity,
            unit_price=med.unit_price,
            remaining_stock=med.quantity_in_stock,
            low_stock=med.is_low_stock,
        )

    @staticmethod
    @transaction.atomic
    def restock(*, medication_id: UUID, quantity: int) -> Medication:
        quantity = InventoryLedger._require_positive(quantity)

        updated = Medication.objects.filter(id=medication_id).update(
            quantity_in_stock=F("quantity_in_stock") + quantity,
            updated_at=timezone.now(),
        )
        if updated != 1:
            raise NotFound("Medication not found.")

        med = Medication.objects.get(id=medication_id)
        logger.info("Stock added medication_id=%s qty=%s now=%s", med.id, quantity, med.quantity_in_stock)
        if not med.is_low_stock:
            AlertService.resolve_matching(
                ctx=SYSTEM,
                code=AlertCode.LOW_STOCK,
                note=f"Restocked to {med.quantity_in_stock}.",
                medication_id=med.id,
            )
        return med
