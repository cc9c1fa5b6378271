from __future__ import annotations

from decimal import Decimal

from rest_framework import serializers

from clinic_core.billing.models import MOBILE_METHODS


class MobilePaymentInitiateSerializer(serializers.Serializer):
    invoice_id = serializers.UUIDField()
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"))
    phone = serializers.CharField(max_length=20)
    method = serializers.ChoiceField(choices=[(m.value, m.label) for m in MOBILE_METHODS])
    buyer_email = serializers.EmailField(required=False, allow_blank=True, default="")
    supersede = serializers.BooleanField(required=False, default=False)


class MobilePaymentInitiatedSerializer(serializers.Serializer):
    transaction_id = serializers.CharField()
    order_id = serializers.CharField()
    payment_id = serializers.UUIDField()


class ZenoPayWebhookSerializer(serializers.Serializer):
    order_id = serializers.CharField(max_length=128)
    payment_status = serializers.CharField(max_length=32)
    reference = serializers.CharField(required=False, allow_blank=True, allow_null=True, default="")
    metadata = serializers.DictField(required=False, default=dict)
