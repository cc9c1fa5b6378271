from __future__ import annotations

from rest_framework import serializers

from clinic_core.pharmacy.models import Medication, Prescription


class MedicationSerializer(serializers.ModelSerializer):
    is_low_stock = serializers.BooleanField(read_only=True)

    class Meta:
        model = Medication
        fields = ["id", "name", "strength", "quantity_in_stock", "reorder_level", "unit_price", "is_low_stock"]
        read_only_fields = fields


class PrescriptionSerializer(serializers.ModelSerializer):
    medication_name = serializers.CharField(source="medication.name", read_only=True)

    class Meta:
        model = Prescription
        fields = [
            "id",
            "visit",
            "patient",
            "medication",
            "medication_name",
            "quantity",
            "dosage",
            "frequency",
            "duration",
            "instructions",
            "status",
            "dispensed_quantity",
            "dispensed_at",
            "dispensed_by_user_id",
            "prescribed_by_user_id",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class PrescriptionCreateSerializer(serializers.Serializer):
    visit_id = serializers.UUIDField()
    medication_id = serializers.UUIDField()
    quantity = serializers.IntegerField(min_value=1)
    dosage = serializers.CharField(required=False, allow_blank=True, default="")
    frequency = serializers.CharField(required=False, allow_blank=True, default="")
    duration = serializers.CharField(required=False, allow_blank=True, default="")
    instructions = serializers.CharField(required=False, allow_blank=True, default="")


class DispenseSerializer(serializers.Serializer):
    quantity = serializers.IntegerField(min_value=1, required=False, allow_null=True)
