# clinic_core/common/api/exceptions.py
from __future__ import annotations

import logging
import uuid
from typing import Any

from django.http import Http404
from rest_framework import status
from rest_framework.exceptions import APIException, NotAuthenticated, PermissionDenied, ValidationError
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# DRF built-ins whose default_code is too generic for clients.
_BUILTIN_CODES = (
    (ValidationError, "validation_error"),
    (NotAuthenticated, "not_authenticated"),
    (PermissionDenied, "permission_denied"),
    (Http404, "not_found"),
)


def ensure_request_id(request) -> str:
    """
    Returns the request's correlation id, minting one if the request has none.
    """
    rid = getattr(request, "request_id", None) if request is not None else None
    if not rid:
        rid = uuid.uuid4().hex
        if request is not None:
            request.request_id = rid
    return rid


def build_error_envelope(*, request=None, code: str, message: str, details: Any = None) -> dict[str, Any]:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details,
            "request_id": ensure_request_id(request),
        }
    }


class ConflictError(APIException):
    """
    409 for business rules that block an action: stage gate, stock, open
    invoice, pending payment. Domain errors in common.exceptions extend it.
    """
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conflict."
    default_code = "conflict"

    def __init__(self, detail=None, code=None):
        super().__init__(detail=detail or self.default_detail, code=code or self.default_code)


def error_code(exc: Exception) -> str:
    for exc_type, code in _BUILTIN_CODES:
        if isinstance(exc, exc_type):
            return code
    return getattr(exc, "default_code", None) or "api_error"


def _split_detail(data: Any) -> tuple[str, Any]:
    """
    Domain errors carry {"detail": message, **context}; the message goes to
    the top level and the context becomes `details`. Field errors stay whole.
    """
    if isinstance(data, dict) and "detail" in data:
        context = {k: v for k, v in data.items() if k != "detail"}
        return str(data["detail"]), context or None
    return "Request failed.", data


def api_exception_handler(exc: Exception, context: dict[str, Any]):
    request = context.get("request")
    response = drf_exception_handler(exc, context)

    if response is None:
        logger.exception("Unhandled API error request_id=%s", ensure_request_id(request))
        return Response(
            build_error_envelope(request=request, code="server_error", message="Unexpected server error."),
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    code = error_code(exc)
    if response.status_code >= 500:
        # Provider outages and rejections surface as 502/503/504.
        logger.warning("API error %s (%s) request_id=%s", code, response.status_code, ensure_request_id(request))

    message, details = _split_detail(response.data)
    return Response(
        build_error_envelope(request=request, code=code, message=message, details=details),
        status=response.status_code,
        headers=response.headers,
    )
