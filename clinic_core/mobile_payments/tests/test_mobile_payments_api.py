from datetime import timedelta

import pytest
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from clinic_core.billing.models import Invoice, InvoiceStatus, Payment, PaymentStatus

from tests.helpers import error_code

pytestmark = pytest.mark.django_db

WEBHOOK_URL = "/api/v1/webhooks/zenopay/"


def test_billing_can_initiate(client_for, provider, billing_invoice):
    c = client_for("BILLING")

    resp = c.post(
        "/api/v1/payments/mobile/initiate/",
        {"invoice_id": str(billing_invoice.id), "amount": "3000.00", "phone": "0712345678", "method": "M-Pesa"},
        format="json",
    )

    assert resp.status_code == 201, resp.data
    assert resp.data["transaction_id"] == "REF-1"
    assert Payment.objects.get(order_id=resp.data["order_id"]).status == PaymentStatus.PENDING


def test_initiate_validates_method_and_phone(client_for, provider, billing_invoice):
    c = client_for("BILLING")
    base = {"invoice_id": str(billing_invoice.id), "amount": "100.00", "phone": "0712345678", "method": "M-Pesa"}

    resp = c.post("/api/v1/payments/mobile/initiate/", {**base, "method": "Cash"}, format="json")
    assert resp.status_code == 400
    assert error_code(resp) == "validation_error"

    resp = c.post("/api/v1/payments/mobile/initiate/", {**base, "phone": "12345"}, format="json")
    assert resp.status_code == 400
    assert error_code(resp) == "validation_error"


def test_duplicate_initiation_is_conflict(client_for, provider, billing_invoice):
    c = client_for("RECEPTION")
    body = {"invoice_id": str(billing_invoice.id), "amount": "100.00", "phone": "0712345678", "method": "Airtel Money"}

    assert c.post("/api/v1/payments/mobile/initiate/", body, format="json").status_code == 201
    resp = c.post("/api/v1/payments/mobile/initiate/", body, format="json")

    assert resp.status_code == 409
    assert error_code(resp) == "payment_already_pending"


def test_doctor_cannot_initiate(client_for, provider, billing_invoice):
    resp = client_for("DOCTOR").post(
        "/api/v1/payments/mobile/initiate/",
        {"invoice_id": str(billing_invoice.id), "amount": "100.00", "phone": "0712345678", "method": "M-Pesa"},
        format="json",
    )
    assert resp.status_code == 403
    assert error_code(resp) == "permission_denied"


def test_status_endpoint_polls_provider(client_for, provider, initiated):
    provider.status = "COMPLETED"

    resp = client_for("BILLING").get(f"/api/v1/payments/mobile/{initiated.order_id}/status/")

    assert resp.status_code == 200
    assert resp.data["status"] == PaymentStatus.COMPLETED
    assert resp.data["order_id"] == initiated.order_id


def test_status_endpoint_unknown_order(client_for, provider):
    resp = client_for("BILLING").get("/api/v1/payments/mobile/nope/status/")
    assert resp.status_code == 404
    assert error_code(resp) == "not_found"


def test_pending_lists_stale_payments(client_for, provider, initiated):
    c = client_for("BILLING")
    assert c.get("/api/v1/payments/mobile/pending/").data == []

    Payment.objects.filter(order_id=initiated.order_id).update(created_at=timezone.now() - timedelta(minutes=30))
    resp = c.get("/api/v1/payments/mobile/pending/", {"older_than": 15})

    assert resp.status_code == 200
    assert [row["order_id"] for row in resp.data] == [initiated.order_id]


def test_webhook_rejects_bad_key(initiated):
    c = APIClient()

    resp = c.post(
        WEBHOOK_URL,
        {"order_id": initiated.order_id, "payment_status": "COMPLETED"},
        format="json",
        HTTP_X_API_KEY="wrong",
    )

    assert resp.status_code == 401
    assert error_code(resp) == "invalid_webhook_key"
    assert Payment.objects.get(order_id=initiated.order_id).status == PaymentStatus.PENDING


def test_webhook_completes_payment(initiated, billing_invoice):
    c = APIClient()
    body = {"order_id": initiated.order_id, "payment_status": "COMPLETED", "reference": "MP555"}

    resp = c.post(WEBHOOK_URL, body, format="json", HTTP_X_API_KEY="test-api-key")
    assert resp.status_code == 200
    assert resp.data == {"received": True, "resolved": True}

    # Provider retries are acknowledged without double-applying.
    resp = c.post(WEBHOOK_URL, body, format="json", HTTP_X_API_KEY="test-api-key")
    assert resp.status_code == 200

    inv = Invoice.objects.get(id=billing_invoice.id)
    assert inv.status == InvoiceStatus.PAID
    assert inv.paid_amount == billing_invoice.total_amount


def test_webhook_url_is_routed():
    assert reverse("zenopay-webhook") == WEBHOOK_URL
