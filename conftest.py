# conftest.py
import pytest
from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group
from rest_framework.test import APIClient

from clinic_core.common.permissions import ALL_ROLES
from clinic_core.patients.models import Patient
from clinic_core.pharmacy.models import Medication

from tests.helpers import DOCTOR, NURSE, PHARMACY, RECEPTION, VITALS, advance


@pytest.fixture
def make_user(db):
    """
    make_user("DOCTOR") -> auth user in the DOCTOR group.
    """
    counter = {"n": 0}

    def _make(role: str):
        for name in ALL_ROLES:
            Group.objects.get_or_create(name=name)
        counter["n"] += 1
        user = get_user_model().objects.create_user(
            username=f"{role.lower()}-{counter['n']}",
            password="pass123",
        )
        user.groups.add(Group.objects.get(name=role))
        return user

    return _make


@pytest.fixture
def client_for(make_user):
    """
    client_for("BILLING") -> APIClient authenticated as a fresh BILLING user.
    """
    def _client(role: str) -> APIClient:
        c = APIClient()
        c.force_authenticate(user=make_user(role))
        return c

    return _client


@pytest.fixture
def patient(db):
    return Patient.objects.create(full_name="Test Patient", phone="0712345678", mrn="MRN-TEST-001")


@pytest.fixture
def other_patient(db):
    return Patient.objects.create(full_name="Other Patient", phone="0754000111", mrn="MRN-TEST-002")


@pytest.fixture
def medication(db):
    return Medication.objects.create(
        name="Amoxicillin",
        strength="500mg",
        quantity_in_stock=100,
        reorder_level=10,
        unit_price="500.00",
    )


@pytest.fixture
def visit(patient):
    from clinic_core.visits.services import VisitService

    return VisitService.check_in(patient_id=patient.id, actor_roles=RECEPTION)


@pytest.fixture
def visit_at_doctor(visit):
    advance(visit.id, "Reception", RECEPTION)
    return advance(visit.id, "Nurse", NURSE, vitals=VITALS)


@pytest.fixture
def visit_at_pharmacy(visit_at_doctor, medication):
    from clinic_core.pharmacy.services import PharmacyService

    PharmacyService.prescribe(
        visit_id=visit_at_doctor.id,
        medication_id=medication.id,
        quantity=2,
        actor_roles=DOCTOR,
    )
    return advance(visit_at_doctor.id, "Doctor", DOCTOR, diagnosis="Tonsillitis")


@pytest.fixture
def visit_at_billing(visit_at_pharmacy):
    """
    Pharmacy sign-off dispenses 2 x 500.00 and entering Billing composes the
    invoice: consultation 2000.00 + medication 1000.00 = 3000.00.
    """
    return advance(visit_at_pharmacy.id, "Pharmacy", PHARMACY)


@pytest.fixture
def billing_invoice(visit_at_billing):
    from clinic_core.billing.models import Invoice

    return Invoice.objects.get(visit_id=visit_at_billing.id)
