from rest_framework import serializers

from clinic_core.alerts.models import Alert


class AlertSerializer(serializers.ModelSerializer):
    class Meta:
        model = Alert
        fields = [
            "id",
            "code",
            "severity",
            "status",
            "title",
            "message",
            "visit_id",
            "patient_id",
            "invoice_id",
            "payment_id",
            "medication_id",
            "meta",
            "created_at",
            "acked_by_user_id",
            "acked_at",
            "resolved_by_user_id",
            "resolved_at",
        ]
        read_only_fields = fields


class AlertResolveSerializer(serializers.Serializer):
    note = serializers.CharField(required=False, allow_blank=True, default="", max_length=500)
