# clinic_core/billing/api/serializers.py
from __future__ import annotations

from decimal import Decimal

from django.conf import settings
from rest_framework import serializers

from clinic_core.billing.models import Invoice, InvoiceItem, Payment, PaymentMethod


class InvoiceItemSerializer(serializers.ModelSerializer):
    kind = serializers.CharField(source="billable_item.kind", read_only=True, default=None)

    class Meta:
        model = InvoiceItem
        fields = ["id", "billable_item", "kind", "description", "unit_price", "quantity", "total_price"]
        read_only_fields = fields


class InvoiceSerializer(serializers.ModelSerializer):
    items = InvoiceItemSerializer(many=True, read_only=True)
    balance = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)
    currency = serializers.SerializerMethodField()

    class Meta:
        model = Invoice
        fields = [
            "id",
            "invoice_number",
            "patient",
            "visit",
            "status",
            "total_amount",
            "paid_amount",
            "balance",
            "currency",
            "items",
            "paid_at",
            "voided_at",
            "void_reason",
            "notes",
            "created_by_user_id",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_currency(self, obj) -> str:
        return settings.CLINIC_CURRENCY


class InvoiceComposeSerializer(serializers.Serializer):
    patient_id = serializers.UUIDField()
    visit_id = serializers.UUIDField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class InvoiceVoidSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class PaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Payment
        fields = [
            "id",
            "invoice",
            "amount",
            "method",
            "status",
            "reference",
            "order_id",
            "buyer_phone",
            "poll_attempts",
            "failure_reason",
            "unapplied_amount",
            "resolved_at",
            "recorded_by_user_id",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class PaymentCreateSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"))
    method = serializers.ChoiceField(choices=PaymentMethod.choices, default=PaymentMethod.CASH)
    reference = serializers.CharField(required=False, allow_blank=True, default="")
