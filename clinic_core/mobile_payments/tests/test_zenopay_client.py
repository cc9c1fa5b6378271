from unittest.mock import MagicMock

import pytest
import requests

from clinic_core.common.exceptions import PaymentProviderError, ProviderUnavailable
from clinic_core.mobile_payments.client import ZenoPayClient, get_client


def _response(status_code=200, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload if payload is not None else {}
    resp.text = ""
    return resp


def _client(resp=None, exc=None):
    session = MagicMock()
    if exc is not None:
        session.request.side_effect = exc
    else:
        session.request.return_value = resp
    return ZenoPayClient(api_url="https://provider.test/", api_key="secret", timeout=7, session=session), session


def test_create_order_posts_expected_body():
    client, session = _client(_response(200, {"status": "success", "reference": "REF-1"}))

    order = client.create_order(
        order_id="inv-1-1700000000000-abc123",
        buyer_phone="255712345678",
        amount=3000,
        webhook_url="https://clinic.test/hook/",
        metadata={"invoice_id": "inv-1"},
    )

    assert order.reference == "REF-1"
    method, url = session.request.call_args.args
    kwargs = session.request.call_args.kwargs
    assert method == "POST"
    assert url == "https://provider.test/api/payments/mobile_money_tanzania"
    assert kwargs["headers"]["x-api-key"] == "secret"
    assert kwargs["timeout"] == 7
    assert kwargs["json"] == {
        "order_id": "inv-1-1700000000000-abc123",
        "buyer_name": "Patient",
        "buyer_phone": "255712345678",
        "buyer_email": "",
        "amount": 3000,
        "webhook_url": "https://clinic.test/hook/",
        "metadata": {"invoice_id": "inv-1"},
    }


def test_transport_error_is_provider_unavailable():
    client, _ = _client(exc=requests.ConnectionError("boom"))
    with pytest.raises(ProviderUnavailable):
        client.order_status("X")


def test_5xx_is_provider_unavailable():
    client, _ = _client(_response(503))
    with pytest.raises(ProviderUnavailable):
        client.create_order(order_id="X", buyer_phone="255712345678", amount=1, webhook_url="")


def test_4xx_is_provider_error():
    client, _ = _client(_response(400, {"message": "Invalid phone"}))
    with pytest.raises(PaymentProviderError) as exc:
        client.create_order(order_id="X", buyer_phone="255712345678", amount=1, webhook_url="")
    assert "Invalid phone" in str(exc.value.detail)


def test_error_status_in_body_is_provider_error():
    client, _ = _client(_response(200, {"status": "error", "message": "Insufficient balance"}))
    with pytest.raises(PaymentProviderError):
        client.create_order(order_id="X", buyer_phone="255712345678", amount=1, webhook_url="")


def test_order_status_reads_first_row():
    client, session = _client(_response(200, {"data": [{"payment_status": "completed", "transid": "TX-9"}]}))

    status = client.order_status("X")

    assert status.payment_status == "COMPLETED"
    assert status.reference == "TX-9"
    assert session.request.call_args.kwargs["params"] == {"order_id": "X"}


def test_order_status_without_rows_is_pending():
    client, _ = _client(_response(200, {"data": []}))
    assert client.order_status("X").payment_status == "PENDING"


def test_get_client_requires_api_key(settings):
    settings.MOBILE_PAYMENTS = {**settings.MOBILE_PAYMENTS, "API_KEY": ""}
    with pytest.raises(ProviderUnavailable):
        get_client()


def test_get_client_uses_settings():
    client = get_client()
    assert client.api_url == "https://provider.test"
    assert client.api_key == "test-api-key"
