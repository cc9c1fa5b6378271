# clinic_core/common/middleware.py
from __future__ import annotations

import re

from django.utils.deprecation import MiddlewareMixin

from clinic_core.common.api.exceptions import REQUEST_ID_HEADER, ensure_request_id

_SAFE_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


class RequestIdMiddleware(MiddlewareMixin):
    """
    Correlates every request with a request_id.

      - Honors an inbound X-Request-ID when it is a short, safe token.
      - Otherwise generates one.
      - Echoes it back on the response so the error envelope and the
        response header always agree.
    """

    def process_request(self, request):
        inbound = request.headers.get(REQUEST_ID_HEADER, "")
        if inbound and _SAFE_REQUEST_ID.match(inbound):
            request.request_id = inbound
        ensure_request_id(request)

    def process_response(self, request, response):
        rid = getattr(request, "request_id", None)
        if rid:
            response[REQUEST_ID_HEADER] = rid
        return response
