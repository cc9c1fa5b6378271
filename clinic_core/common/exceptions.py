# clinic_core/common/exceptions.py
"""
Domain error taxonomy.

Every error is a DRF APIException so it reaches the global exception handler
and renders the standard envelope; services raise them directly and views
let them propagate.
"""
from __future__ import annotations

from typing import Any

from rest_framework import status
from rest_framework.exceptions import APIException

from clinic_core.common.api.exceptions import ConflictError


def _payload(message: str, **details: Any) -> dict[str, Any]:
    data: dict[str, Any] = {"detail": message}
    data.update({k: str(v) for k, v in details.items() if v is not None})
    return data


class StageGuardViolation(ConflictError):
    default_detail = "Stage transition is not allowed."
    default_code = "stage_guard_violation"

    def __init__(self, reason: str | None = None, *, unmet: str | None = None):
        self.reason = reason or str(self.default_detail)
        self.unmet = unmet
        super().__init__(detail=_payload(self.reason, unmet=unmet))


class NoActiveVisit(APIException):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "No active visit found."
    default_code = "no_active_visit"

    def __init__(self, detail: str | None = None, *, patient_id=None, visit_id=None, stage: str | None = None):
        self.patient_id = patient_id
        self.visit_id = visit_id
        self.stage = stage
        super().__init__(
            detail=_payload(
                detail or str(self.default_detail),
                patient_id=patient_id,
                visit_id=visit_id,
                stage=stage,
            ),
            code=self.default_code,
        )


class ConcurrentModification(ConflictError):
    default_detail = "The record was changed by another user. Reload and try again."
    default_code = "concurrent_modification"

    def __init__(self, detail: str | None = None, *, entity_id=None):
        self.entity_id = entity_id
        super().__init__(detail=_payload(detail or str(self.default_detail), entity_id=entity_id))


class InsufficientStock(ConflictError):
    default_detail = "Insufficient stock."
    default_code = "insufficient_stock"

    def __init__(self, *, medication_id, requested: int, available: int | None = None, name: str = ""):
        self.medication_id = medication_id
        self.requested = requested
        self.available = available
        message = f"Insufficient stock for {name}." if name else str(self.default_detail)
        super().__init__(
            detail=_payload(message, medication_id=medication_id, requested=requested, available=available)
        )


class ExcessPayment(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Payment exceeds the outstanding balance."
    default_code = "excess_payment"

    def __init__(self, *, amount, balance):
        self.amount = amount
        self.balance = balance
        super().__init__(
            detail=_payload(str(self.default_detail), amount=amount, balance=balance),
            code=self.default_code,
        )


class DuplicatePaymentConfirmation(ConflictError):
    default_detail = "Payment was already resolved."
    default_code = "duplicate_payment_confirmation"

    def __init__(self, *, order_id: str, status: str):
        self.order_id = order_id
        self.status = status
        super().__init__(detail=_payload(str(self.default_detail), order_id=order_id, status=status))


class PaymentTimeout(APIException):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    default_detail = "Payment was not confirmed in time."
    default_code = "payment_timeout"


class ProviderUnavailable(APIException):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Payment provider is unavailable. Try again later."
    default_code = "provider_unavailable"


class PaymentProviderError(APIException):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "Payment provider rejected the request."
    default_code = "payment_provider_error"


class InvoiceAlreadyOpen(ConflictError):
    default_detail = "Patient already has an open invoice."
    default_code = "invoice_already_open"

    def __init__(self, *, invoice_id):
        self.invoice_id = invoice_id
        super().__init__(detail=_payload(str(self.default_detail), invoice_id=invoice_id))


class PaymentAlreadyPending(ConflictError):
    default_detail = "A mobile payment is already pending for this invoice."
    default_code = "payment_already_pending"

    def __init__(self, *, order_id: str):
        self.order_id = order_id
        super().__init__(detail=_payload(str(self.default_detail), order_id=order_id))


class ActiveVisitExists(ConflictError):
    default_detail = "Patient already has an active visit."
    default_code = "active_visit_exists"

    def __init__(self, *, visit_id=None):
        self.visit_id = visit_id
        super().__init__(detail=_payload(str(self.default_detail), visit_id=visit_id))
