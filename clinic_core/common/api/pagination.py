# clinic_core/common/api/pagination.py
from __future__ import annotations

from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response


class DefaultPagination(PageNumberPagination):
    # Queue screens show a day's worth of visits on one page.
    page_size = 20
    page_size_query_param = "page_size"
    max_page_size = 200


def paginate(request, queryset, serializer_class, *, paginator: PageNumberPagination | None = None) -> Response:
    """
    Every list endpoint answers { count, next, previous, results }.
    """
    pager = paginator or DefaultPagination()
    rows = pager.paginate_queryset(queryset, request)
    context = {"request": request}
    if rows is None:
        return Response(serializer_class(queryset, many=True, context=context).data)
    return pager.get_paginated_response(serializer_class(rows, many=True, context=context).data)
