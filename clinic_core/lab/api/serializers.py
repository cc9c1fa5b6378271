from __future__ import annotations

from rest_framework import serializers

from clinic_core.lab.models import LabTest


class LabTestSerializer(serializers.ModelSerializer):
    class Meta:
        model = LabTest
        fields = [
            "id",
            "visit",
            "patient",
            "test_name",
            "test_type",
            "priority",
            "price",
            "status",
            "result",
            "ordered_by_user_id",
            "completed_by_user_id",
            "completed_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class LabTestCompleteSerializer(serializers.Serializer):
    result = serializers.DictField(allow_empty=False)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
