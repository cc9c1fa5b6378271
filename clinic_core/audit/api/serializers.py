from rest_framework import serializers

from clinic_core.audit.models import AuditEvent


class AuditEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = AuditEvent
        fields = ["id", "event_code", "entity_type", "entity_id", "actor_user_id", "occurred_at", "metadata"]
        read_only_fields = fields
