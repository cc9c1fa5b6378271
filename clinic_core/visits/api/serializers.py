from __future__ import annotations

from decimal import Decimal

from rest_framework import serializers

from clinic_core.lab.models import LabTestPriority
from clinic_core.visits.constants import Stage
from clinic_core.visits.models import Visit, VisitEvent, VisitStage


class VisitStageSerializer(serializers.ModelSerializer):
    class Meta:
        model = VisitStage
        fields = [
            "stage",
            "status",
            "notes",
            "data",
            "started_at",
            "completed_at",
            "completed_by_user_id",
        ]
        read_only_fields = fields


class VisitSerializer(serializers.ModelSerializer):
    patient_name = serializers.CharField(source="patient.full_name", read_only=True)
    stages = VisitStageSerializer(many=True, read_only=True)

    class Meta:
        model = Visit
        fields = [
            "id",
            "patient",
            "patient_name",
            "appointment_id",
            "current_stage",
            "overall_status",
            "nurse_vitals",
            "version",
            "stages",
            "completed_at",
            "cancelled_at",
            "cancel_reason",
            "created_by_user_id",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class VisitCreateSerializer(serializers.Serializer):
    patient_id = serializers.UUIDField()
    appointment_id = serializers.UUIDField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class CompleteStageSerializer(serializers.Serializer):
    stage = serializers.ChoiceField(choices=Stage.choices)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    vitals = serializers.DictField(required=False, allow_null=True)
    data = serializers.DictField(required=False, default=dict)

    def to_payload(self) -> dict:
        vd = self.validated_data
        payload = {**(vd.get("data") or {}), "notes": vd.get("notes", "")}
        if vd.get("vitals") is not None:
            payload["vitals"] = vd["vitals"]
        return payload


class LabTestOrderSerializer(serializers.Serializer):
    test_name = serializers.CharField(max_length=255)
    test_type = serializers.CharField(max_length=64, required=False, allow_blank=True, default="")
    priority = serializers.ChoiceField(choices=LabTestPriority.choices, default=LabTestPriority.ROUTINE)
    price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.00"), default=Decimal("0.00"))


class OrderLabsSerializer(serializers.Serializer):
    tests = LabTestOrderSerializer(many=True, allow_empty=False)


class CancelVisitSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class VisitEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = VisitEvent
        fields = ["id", "visit_id", "event_key", "code", "title", "timestamp", "meta", "created_at"]
        read_only_fields = fields
