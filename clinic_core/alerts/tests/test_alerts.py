import uuid

import pytest

from clinic_core.alerts.models import Alert, AlertCode, AlertSeverity, AlertStatus
from clinic_core.alerts.services import SYSTEM, AlertContext, AlertService

from tests.helpers import error_code

pytestmark = pytest.mark.django_db


def _raise(code=AlertCode.PAYMENT_TIMEOUT, **kwargs):
    return AlertService.create_alert(ctx=SYSTEM, code=code, title=f"{code} alert", **kwargs)


def test_create_alert_defaults():
    alert = _raise(severity=AlertSeverity.WARNING, meta={"order_id": "x"})
    assert alert.status == AlertStatus.OPEN
    assert alert.created_by_user_id is None
    assert alert.meta == {"order_id": "x"}


def test_ack_is_idempotent():
    alert = _raise()
    first = AlertService.ack_alert(ctx=AlertContext(actor_user_id=7), alert_id=alert.id)
    assert first.status == AlertStatus.ACKED
    assert first.acked_by_user_id == 7

    second = AlertService.ack_alert(ctx=AlertContext(actor_user_id=8), alert_id=alert.id)
    assert second.acked_by_user_id == 7
    assert second.acked_at == first.acked_at


def test_list_filters_by_status_and_code(client_for):
    _raise(code=AlertCode.PAYMENT_TIMEOUT)
    low = _raise(code=AlertCode.LOW_STOCK)
    AlertService.ack_alert(ctx=SYSTEM, alert_id=low.id)

    c = client_for("BILLING")
    resp = c.get("/api/v1/alerts/", {"status": AlertStatus.OPEN})
    assert resp.status_code == 200
    assert [a["code"] for a in resp.data["results"]] == [AlertCode.PAYMENT_TIMEOUT]

    resp = c.get("/api/v1/alerts/", {"code": AlertCode.LOW_STOCK})
    assert resp.data["count"] == 1
    assert resp.data["results"][0]["status"] == AlertStatus.ACKED


def test_ack_endpoint(client_for):
    alert = _raise()
    resp = client_for("BILLING").post(f"/api/v1/alerts/{alert.id}/ack/")
    assert resp.status_code == 200
    assert resp.data["status"] == AlertStatus.ACKED
    assert Alert.objects.get(id=alert.id).acked_by_user_id is not None


def test_ack_unknown_alert(client_for):
    resp = client_for("ADMIN").post(f"/api/v1/alerts/{uuid.uuid4()}/ack/")
    assert resp.status_code == 404
    assert error_code(resp) == "not_found"


def test_nurse_cannot_ack(client_for):
    alert = _raise()
    resp = client_for("NURSE").post(f"/api/v1/alerts/{alert.id}/ack/")
    assert resp.status_code == 403
    assert Alert.objects.get(id=alert.id).status == AlertStatus.OPEN


def test_raise_once_dedupes_unresolved_alerts():
    med_id = uuid.uuid4()
    first, created = AlertService.raise_once(ctx=SYSTEM, code=AlertCode.LOW_STOCK, title="Low", medication_id=med_id)
    assert created is True

    AlertService.ack_alert(ctx=SYSTEM, alert_id=first.id)
    again, created = AlertService.raise_once(ctx=SYSTEM, code=AlertCode.LOW_STOCK, title="Low", medication_id=med_id)
    assert created is False
    assert again.id == first.id

    AlertService.resolve_alert(ctx=SYSTEM, alert_id=first.id)
    _, created = AlertService.raise_once(ctx=SYSTEM, code=AlertCode.LOW_STOCK, title="Low", medication_id=med_id)
    assert created is True


def test_critical_alerts_listed_first(client_for):
    _raise(severity=AlertSeverity.INFO)
    _raise(code=AlertCode.RECONCILIATION_MISS, severity=AlertSeverity.CRITICAL)

    resp = client_for("BILLING").get("/api/v1/alerts/")
    assert [a["severity"] for a in resp.data["results"]] == [AlertSeverity.CRITICAL, AlertSeverity.INFO]


def test_resolve_endpoint_records_note(client_for):
    alert = _raise()
    resp = client_for("BILLING").post(f"/api/v1/alerts/{alert.id}/resolve/", {"note": "Paid in cash"}, format="json")

    assert resp.status_code == 200
    assert resp.data["status"] == AlertStatus.RESOLVED
    assert resp.data["meta"]["resolution"] == "Paid in cash"
    assert resp.data["resolved_at"] is not None


def test_restock_resolves_low_stock_alert(db):
    from clinic_core.pharmacy.ledger import InventoryLedger
    from clinic_core.pharmacy.models import Medication

    med = Medication.objects.create(name="Metformin", quantity_in_stock=2, reorder_level=5, unit_price="100.00")
    alert = _raise(code=AlertCode.LOW_STOCK, medication_id=med.id)

    InventoryLedger.restock(medication_id=med.id, quantity=2)
    assert Alert.objects.get(id=alert.id).status == AlertStatus.OPEN

    InventoryLedger.restock(medication_id=med.id, quantity=10)
    assert Alert.objects.get(id=alert.id).status == AlertStatus.RESOLVED
