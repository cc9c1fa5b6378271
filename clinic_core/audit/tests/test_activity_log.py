import pytest

from clinic_core.audit.models import AuditEvent
from clinic_core.audit.selectors import activity_log
from clinic_core.audit.services import AuditService

from tests.helpers import NURSE, RECEPTION, VITALS, advance

pytestmark = pytest.mark.django_db


def test_entries_are_append_only(visit):
    event = AuditService.log(event_code="visit.note", entity_type="Visit", entity_id=visit.id)

    event.metadata = {"edited": True}
    with pytest.raises(ValueError):
        event.save()


def test_workflow_writes_activity_per_transition(visit):
    advance(visit.id, "Reception", RECEPTION)
    advance(visit.id, "Nurse", NURSE, vitals=VITALS)

    codes = list(activity_log(entity_type="Visit", entity_id=visit.id).values_list("event_code", flat=True))
    assert codes.count("visit.stage_completed") == 2
    assert "visit.created" in codes


def test_activity_log_filters_by_area(visit, billing_invoice):
    assert activity_log(event_prefix="billing.").filter(entity_id=billing_invoice.id).exists()
    assert not activity_log(event_prefix="billing.").filter(event_code__startswith="visit.").exists()


def test_admin_reads_activity_log(client_for, visit):
    resp = client_for("ADMIN").get("/api/v1/audit/events/", {"entity_id": str(visit.id), "area": "visit"})

    assert resp.status_code == 200
    assert resp.data["count"] == AuditEvent.objects.filter(entity_id=visit.id).count()
    assert resp.data["results"][0]["event_code"].startswith("visit.")


def test_activity_log_is_admin_only(client_for):
    assert client_for("RECEPTION").get("/api/v1/audit/events/").status_code == 403


def test_activity_log_rejects_bad_filters(client_for):
    resp = client_for("ADMIN").get("/api/v1/audit/events/", {"since": "yesterday"})
    assert resp.status_code == 400
