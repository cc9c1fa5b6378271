# clinic_core/mobile_payments/api/views.py
from __future__ import annotations

import hmac
import logging
from dataclasses import asdict

from django.conf import settings
from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import NotFound, ValidationError as DRFValidationError
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from clinic_core.billing.api.serializers import PaymentSerializer
from clinic_core.billing.models import Payment
from clinic_core.common.api.exceptions import build_error_envelope
from clinic_core.common.permissions import MobilePaymentPermission, request_actor
from clinic_core.mobile_payments.api.serializers import (
    MobilePaymentInitiatedSerializer,
    MobilePaymentInitiateSerializer,
    ZenoPayWebhookSerializer,
)
from clinic_core.mobile_payments.selectors import pending_payments_older_than
from clinic_core.mobile_payments.services import MobilePaymentService

logger = logging.getLogger(__name__)

WEBHOOK_KEY_HEADER = "x-api-key"


class MobilePaymentViewSet(viewsets.ViewSet):
    """
    Mobile money (M-Pesa / Airtel Money / Tigo Pesa / Halopesa):
    - initiate: push a payment request to the patient's phone
    - status: check the provider now and return the payment
    - pending: stale pending payments for reconciliation
    """
    permission_classes = [MobilePaymentPermission]
    serializer_class = PaymentSerializer
    queryset = Payment.objects.none()
    lookup_field = "order_id"
    lookup_value_regex = "[^/]+"

    @extend_schema(
        tags=["Mobile payments"],
        request=MobilePaymentInitiateSerializer,
        responses={201: MobilePaymentInitiatedSerializer},
    )
    @action(detail=False, methods=["post"], url_path="initiate")
    def initiate(self, request):
        actor_user_id, _ = request_actor(request)

        ser = MobilePaymentInitiateSerializer(data=request.data or {})
        ser.is_valid(raise_exception=True)

        result = MobilePaymentService.initiate(actor_user_id=actor_user_id, **ser.validated_data)
        return Response(MobilePaymentInitiatedSerializer(asdict(result)).data, status=status.HTTP_201_CREATED)

    @extend_schema(tags=["Mobile payments"], responses={200: PaymentSerializer})
    @action(detail=True, methods=["get"], url_path="status")
    def order_status(self, request, order_id=None):
        if not Payment.objects.filter(order_id=order_id).exists():
            raise NotFound("Payment not found.")

        MobilePaymentService.poll_status(order_id=order_id)
        payment = Payment.objects.get(order_id=order_id)
        return Response(PaymentSerializer(payment).data, status=status.HTTP_200_OK)

    @extend_schema(
        tags=["Mobile payments"],
        responses={200: PaymentSerializer(many=True)},
        parameters=[
            OpenApiParameter(
                name="older_than",
                type=OpenApiTypes.INT,
                location=OpenApiParameter.QUERY,
                required=False,
                description="Minutes since initiation (default 15).",
            ),
        ],
    )
    @action(detail=False, methods=["get"], url_path="pending")
    def pending(self, request):
        raw = request.query_params.get("older_than") or "15"
        try:
            minutes = int(raw)
        except ValueError:
            raise DRFValidationError({"older_than": "Must be an integer number of minutes."})

        qs = pending_payments_older_than(minutes)
        return Response(PaymentSerializer(qs, many=True).data, status=status.HTTP_200_OK)


class ZenoPayWebhookView(APIView):
    """
    Provider callback. Not JWT-authenticated; the shared API key travels in
    the x-api-key header and is compared in constant time.
    """
    authentication_classes = []
    permission_classes = [AllowAny]

    @extend_schema(tags=["Mobile payments"], request=ZenoPayWebhookSerializer, responses={200: OpenApiTypes.OBJECT})
    def post(self, request):
        expected = settings.MOBILE_PAYMENTS.get("API_KEY") or ""
        received = request.headers.get(WEBHOOK_KEY_HEADER) or ""
        if not expected or not hmac.compare_digest(received.encode(), expected.encode()):
            logger.warning("Rejected provider webhook with invalid key")
            return Response(
                build_error_envelope(
                    request=request,
                    code="invalid_webhook_key",
                    message="Invalid or missing webhook key.",
                ),
                status=status.HTTP_401_UNAUTHORIZED,
            )

        ser = ZenoPayWebhookSerializer(data=request.data or {})
        ser.is_valid(raise_exception=True)

        resolved = MobilePaymentService.handle_webhook(ser.validated_data)
        return Response({"received": True, "resolved": resolved}, status=status.HTTP_200_OK)
