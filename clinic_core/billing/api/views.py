# clinic_core/billing/api/views.py
from __future__ import annotations

from uuid import UUID

from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import NotFound, ValidationError as DRFValidationError
from rest_framework.response import Response

from clinic_core.billing.api.serializers import (
    InvoiceComposeSerializer,
    InvoiceSerializer,
    InvoiceVoidSerializer,
    PaymentCreateSerializer,
    PaymentSerializer,
)
from clinic_core.billing.models import Invoice
from clinic_core.billing.selectors import invoice_payments, list_invoices
from clinic_core.billing.services import InvoiceComposer, InvoiceService, PaymentReconciler
from clinic_core.common.api.pagination import paginate
from clinic_core.common.permissions import BillingPermission, request_actor


def _uuid_or_none(value: str | None, field_name: str) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        raise DRFValidationError({field_name: "Invalid UUID"})


class InvoiceViewSet(viewsets.ViewSet):
    """
    Billing invoices:
    - list/retrieve
    - compose (sum unbilled usage + consultation fee)
    - void
    - payments: GET list / POST counter payment
    """
    permission_classes = [BillingPermission]
    serializer_class = InvoiceSerializer
    queryset = Invoice.objects.none()

    def get_object(self, pk) -> Invoice:
        invoice = list_invoices().filter(id=_uuid_or_none(pk, "id")).first()
        if invoice is None:
            raise NotFound("Invoice not found.")
        return invoice

    @extend_schema(
        tags=["Billing"],
        responses={200: InvoiceSerializer(many=True)},
        parameters=[
            OpenApiParameter(name="patient", type=OpenApiTypes.UUID, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(name="visit", type=OpenApiTypes.UUID, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(name="status", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False),
        ],
    )
    def list(self, request):
        qs = list_invoices(
            patient_id=_uuid_or_none(request.query_params.get("patient"), "patient"),
            visit_id=_uuid_or_none(request.query_params.get("visit"), "visit"),
            status=request.query_params.get("status"),
        )
        return paginate(request, qs, InvoiceSerializer)

    @extend_schema(tags=["Billing"], responses={200: InvoiceSerializer})
    def retrieve(self, request, pk=None):
        return Response(InvoiceSerializer(self.get_object(pk)).data, status=status.HTTP_200_OK)

    @extend_schema(tags=["Billing"], request=InvoiceComposeSerializer, responses={201: InvoiceSerializer})
    @action(detail=False, methods=["post"], url_path="compose")
    def compose(self, request):
        actor_user_id, _ = request_actor(request)

        ser = InvoiceComposeSerializer(data=request.data or {})
        ser.is_valid(raise_exception=True)

        inv = InvoiceComposer.compose(
            patient_id=ser.validated_data["patient_id"],
            visit_id=ser.validated_data.get("visit_id"),
            notes=ser.validated_data.get("notes", ""),
            actor_user_id=actor_user_id,
        )
        return Response(InvoiceSerializer(self.get_object(inv.id)).data, status=status.HTTP_201_CREATED)

    @extend_schema(tags=["Billing"], request=InvoiceVoidSerializer, responses={200: InvoiceSerializer})
    @action(detail=True, methods=["post"], url_path="void")
    def void(self, request, pk=None):
        actor_user_id, _ = request_actor(request)

        ser = InvoiceVoidSerializer(data=request.data or {})
        ser.is_valid(raise_exception=True)

        inv = InvoiceService.void(
            invoice_id=_uuid_or_none(pk, "id"),
            reason=ser.validated_data.get("reason", ""),
            actor_user_id=actor_user_id,
        )
        return Response(InvoiceSerializer(self.get_object(inv.id)).data, status=status.HTTP_200_OK)

    @extend_schema(
        tags=["Billing"],
        request=PaymentCreateSerializer,
        responses={200: PaymentSerializer(many=True), 201: InvoiceSerializer},
    )
    @action(detail=True, methods=["get", "post"], url_path="payments")
    def payments(self, request, pk=None):
        """
        /billing/invoices/<invoice_id>/payments/
        - GET: list payments
        - POST: record a counter payment (may settle the visit)
        """
        invoice = self.get_object(pk)

        if request.method.lower() == "get":
            qs = invoice_payments(invoice_id=invoice.id)
            return Response(PaymentSerializer(qs, many=True).data, status=status.HTTP_200_OK)

        actor_user_id, _ = request_actor(request)
        ser = PaymentCreateSerializer(data=request.data or {})
        ser.is_valid(raise_exception=True)

        inv = PaymentReconciler.apply_payment(
            invoice_id=invoice.id,
            amount=ser.validated_data["amount"],
            method=ser.validated_data["method"],
            reference=ser.validated_data.get("reference", ""),
            recorded_by_user_id=actor_user_id,
        )
        return Response(InvoiceSerializer(self.get_object(inv.id)).data, status=status.HTTP_201_CREATED)
