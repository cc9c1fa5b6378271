# clinic_core/mobile_payments/client.py
"""
HTTP client for the ZenoPay mobile-money API (Tanzania).

Transport failures and 5xx answers raise ProviderUnavailable (transient,
callers retry); 4xx answers raise PaymentProviderError (the request itself is
wrong and retrying will not help).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import requests
from django.conf import settings
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from clinic_core.common.exceptions import PaymentProviderError, ProviderUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderOrder:
    order_id: str
    reference: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderOrderStatus:
    order_id: str
    payment_status: str
    reference: str = ""
    raw: dict[str, Any] = field(default_factory=dict)


class ZenoPayClient:
    CREATE_PATH = "/api/payments/mobile_money_tanzania"
    STATUS_PATH = "/api/payments/order-status"

    def __init__(self, *, api_url: str, api_key: str, timeout: int = 15, session: requests.Session | None = None):
        self.api_url = (api_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or self._build_session()

    @staticmethod
    def _build_session() -> requests.Session:
        # Only idempotent status reads are retried at transport level.
        retry = Retry(total=2, backoff_factor=0.5, status_forcelist=(502, 503, 504), allowed_methods=frozenset({"GET"}))
        session = requests.Session()
        session.mount("https://", HTTPAdapter(max_retries=retry))
        session.mount("http://", HTTPAdapter(max_retries=retry))
        return session

    def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        url = f"{self.api_url}{path}"
        headers = {"x-api-key": self.api_key, "Content-Type": "application/json"}

        try:
            resp = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            logger.warning("Provider call failed %s %s: %s", method, path, exc.__class__.__name__)
            raise ProviderUnavailable()

        if resp.status_code >= 500:
            logger.warning("Provider unavailable %s %s: HTTP %s", method, path, resp.status_code)
            raise ProviderUnavailable()

        try:
            data = resp.json()
        except ValueError:
            data = {"message": (resp.text or "")[:200]}

        if resp.status_code >= 400:
            message = data.get("message") if isinstance(data, dict) else None
            logger.error("Provider rejected %s %s: HTTP %s %s", method, path, resp.status_code, message)
            raise PaymentProviderError(detail=message or f"Provider rejected the request (HTTP {resp.status_code}).")

        if not isinstance(data, dict):
            raise PaymentProviderError(detail="Provider returned an unexpected response.")
        return data

    def create_order(
        self,
        *,
        order_id: str,
        buyer_phone: str,
        amount: int,
        webhook_url: str,
        buyer_name: str = "Patient",
        buyer_email: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> ProviderOrder:
        body = {
            "order_id": order_id,
            "buyer_name": buyer_name,
            "buyer_phone": buyer_phone,
            "buyer_email": buyer_email,
            "amount": amount,
            "webhook_url": webhook_url,
            "metadata": metadata or {},
        }
        logger.info("Creating provider order order_id=%s amount=%s", order_id, amount)
        data = self._request("POST", self.CREATE_PATH, json=body)

        if str(data.get("status", "")).lower() == "error":
            raise PaymentProviderError(detail=data.get("message") or "Provider rejected the payment request.")

        return ProviderOrder(order_id=order_id, reference=str(data.get("reference") or ""), raw=data)

    def order_status(self, order_id: str) -> ProviderOrderStatus:
        data = self._request("GET", self.STATUS_PATH, params={"order_id": order_id})
        rows = data.get("data") or []
        if not rows:
            return ProviderOrderStatus(order_id=order_id, payment_status="PENDING", raw=data)

        row = rows[0]
        return ProviderOrderStatus(
            order_id=order_id,
            payment_status=str(row.get("payment_status") or "PENDING").upper(),
            reference=str(row.get("transid") or row.get("reference") or ""),
            raw=data,
        )


def get_client() -> ZenoPayClient:
    conf = settings.MOBILE_PAYMENTS
    if not conf.get("API_KEY"):
        logger.error("Mobile payments are not configured (missing API key)")
        raise ProviderUnavailable(detail="Mobile payments are not configured.")
    return ZenoPayClient(
        api_url=conf["API_URL"],
        api_key=conf["API_KEY"],
        timeout=conf.get("REQUEST_TIMEOUT", 15),
    )
