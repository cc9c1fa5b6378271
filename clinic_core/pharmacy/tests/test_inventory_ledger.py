import uuid

import pytest
from django.db.models import F
from rest_framework.exceptions import NotFound, ValidationError

from clinic_core.alerts.models import Alert, AlertCode, AlertStatus
from clinic_core.common.exceptions import InsufficientStock
from clinic_core.pharmacy.ledger import InventoryLedger
from clinic_core.pharmacy.models import Medication

pytestmark = pytest.mark.django_db


def _stock(med) -> int:
    return Medication.objects.get(id=med.id).quantity_in_stock


def test_dispense_deducts_stock(medication):
    line = InventoryLedger.dispense(medication_id=medication.id, quantity=4)

    assert line.remaining_stock == 96
    assert line.total_price == line.unit_price * 4
    assert _stock(medication) == 96


def test_two_dispenses_never_oversell(db):
    med = Medication.objects.create(name="Paracetamol", quantity_in_stock=5, unit_price="100.00")

    InventoryLedger.dispense(medication_id=med.id, quantity=3)
    with pytest.raises(InsufficientStock) as exc:
        InventoryLedger.dispense(medication_id=med.id, quantity=3)

    assert exc.value.available == 2
    assert exc.value.status_code == 409
    assert _stock(med) == 2


def test_dispense_checks_live_stock_not_a_stale_read(db):
    med = Medication.objects.create(name="Metronidazole", quantity_in_stock=5, unit_price="200.00")
    seen = Medication.objects.get(id=med.id)

    # Another pharmacist's dispense lands after our read.
    Medication.objects.filter(id=med.id).update(quantity_in_stock=F("quantity_in_stock") - 3)
    assert seen.quantity_in_stock >= 3

    with pytest.raises(InsufficientStock) as exc:
        InventoryLedger.dispense(medication_id=med.id, quantity=3)

    assert exc.value.available == 2
    assert _stock(med) == 2


def test_racing_dispense_rolls_back_its_prescription(visit_at_doctor, monkeypatch):
    from clinic_core.billing.models import BillableItem
    from clinic_core.pharmacy.models import Prescription, PrescriptionStatus
    from clinic_core.pharmacy.services import PharmacyService
    from tests.helpers import DOCTOR, PHARMACY, advance

    med = Medication.objects.create(name="Cotrimoxazole", quantity_in_stock=5, unit_price="300.00")
    rx = PharmacyService.prescribe(visit_id=visit_at_doctor.id, medication_id=med.id, quantity=3, actor_roles=DOCTOR)
    advance(visit_at_doctor.id, "Doctor", DOCTOR)

    original = InventoryLedger.dispense

    def other_counter_dispenses_first(*, medication_id, quantity):
        Medication.objects.filter(id=medication_id).update(quantity_in_stock=F("quantity_in_stock") - 3)
        assert _stock(med) == 2
        return original(medication_id=medication_id, quantity=quantity)

    monkeypatch.setattr(InventoryLedger, "dispense", staticmethod(other_counter_dispenses_first))

    with pytest.raises(InsufficientStock):
        PharmacyService.dispense_prescription(prescription_id=rx.id, actor_roles=PHARMACY)

    assert Prescription.objects.get(id=rx.id).status == PrescriptionStatus.PENDING
    assert not BillableItem.objects.filter(visit_id=visit_at_doctor.id, kind="MEDICATION").exists()


def test_exact_stock_can_be_dispensed(db):
    med = Medication.objects.create(name="ORS", quantity_in_stock=3, unit_price="50.00")
    line = InventoryLedger.dispense(medication_id=med.id, quantity=3)
    assert line.remaining_stock == 0
    assert line.low_stock is True


def test_invalid_quantities(medication):
    for qty in (0, -1):
        with pytest.raises(ValidationError):
            InventoryLedger.dispense(medication_id=medication.id, quantity=qty)
    assert _stock(medication) == 100


def test_unknown_medication(db):
    with pytest.raises(NotFound):
        InventoryLedger.dispense(medication_id=uuid.uuid4(), quantity=1)


def test_restock_adds(medication):
    med = InventoryLedger.restock(medication_id=medication.id, quantity=20)
    assert med.quantity_in_stock == 120


def test_low_stock_alert_is_raised_once(visit_at_doctor):
    from clinic_core.pharmacy.services import PharmacyService
    from clinic_core.visits.constants import Stage
    from tests.helpers import DOCTOR, PHARMACY, advance

    med = Medication.objects.create(name="Ceftriaxone", quantity_in_stock=4, reorder_level=3, unit_price="1500.00")
    PharmacyService.prescribe(visit_id=visit_at_doctor.id, medication_id=med.id, quantity=1, actor_roles=DOCTOR)
    PharmacyService.prescribe(visit_id=visit_at_doctor.id, medication_id=med.id, quantity=1, actor_roles=DOCTOR)
    advance(visit_at_doctor.id, Stage.DOCTOR, DOCTOR)
    advance(visit_at_doctor.id, Stage.PHARMACY, PHARMACY)

    assert _stock(med) == 2
    alerts = Alert.objects.filter(code=AlertCode.LOW_STOCK, medication_id=med.id, status=AlertStatus.OPEN)
    assert alerts.count() == 1
