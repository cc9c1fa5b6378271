import pytest

from clinic_core.mobile_payments.client import ProviderOrder, ProviderOrderStatus


class FakeProvider:
    """
    Stands in for ZenoPayClient; records created orders and answers status
    checks with whatever the test sets.
    """

    def __init__(self):
        self.orders = []
        self.status = "PENDING"
        self.transid = "TX-1"
        self.error = None

    def create_order(self, **kwargs):
        if self.error is not None:
            raise self.error
        self.orders.append(kwargs)
        return ProviderOrder(order_id=kwargs["order_id"], reference=f"REF-{len(self.orders)}")

    def order_status(self, order_id):
        if self.error is not None:
            raise self.error
        return ProviderOrderStatus(order_id=order_id, payment_status=self.status, reference=self.transid)


@pytest.fixture
def provider(monkeypatch):
    fake = FakeProvider()
    monkeypatch.setattr("clinic_core.mobile_payments.services.get_client", lambda: fake)
    return fake


@pytest.fixture
def initiated(provider, billing_invoice):
    from clinic_core.mobile_payments.services import MobilePaymentService

    return MobilePaymentService.initiate(
        invoice_id=billing_invoice.id,
        amount="3000.00",
        phone="0712345678",
        method="M-Pesa",
    )
