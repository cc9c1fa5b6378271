# clinic_core/visits/vitals.py
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Optional

from rest_framework import serializers


class VitalsInputSerializer(serializers.Serializer):
    bp_systolic = serializers.IntegerField(required=False, min_value=50, max_value=300)
    bp_diastolic = serializers.IntegerField(required=False, min_value=30, max_value=200)
    heart_rate = serializers.IntegerField(required=False, min_value=20, max_value=250)
    temperature_c = serializers.FloatField(required=False, min_value=25, max_value=45)
    spo2 = serializers.IntegerField(required=False, min_value=0, max_value=100)
    resp_rate = serializers.IntegerField(required=False, min_value=5, max_value=80)
    weight_kg = serializers.FloatField(required=False, min_value=0.5, max_value=500)
    height_cm = serializers.FloatField(required=False, min_value=20, max_value=300)

    def validate(self, attrs):
        unknown = sorted(set(self.initial_data or {}) - set(self.fields))
        if unknown:
            raise serializers.ValidationError({k: "Unknown vitals field." for k in unknown})
        if not attrs:
            raise serializers.ValidationError("At least one vitals field is required.")

        # If BP is provided, require both systolic and diastolic
        sys = attrs.get("bp_systolic")
        dia = attrs.get("bp_diastolic")
        if (sys is None) ^ (dia is None):
            raise serializers.ValidationError("Provide both bp_systolic and bp_diastolic together.")
        if sys is not None and dia >= sys:
            raise serializers.ValidationError("bp_diastolic must be lower than bp_systolic.")
        return attrs


@dataclass(frozen=True)
class VitalsRecord:
    bp_systolic: Optional[int] = None
    bp_diastolic: Optional[int] = None
    heart_rate: Optional[int] = None
    temperature_c: Optional[float] = None
    spo2: Optional[int] = None
    resp_rate: Optional[int] = None
    weight_kg: Optional[float] = None
    height_cm: Optional[float] = None

    @property
    def bmi(self) -> Optional[float]:
        if not self.weight_kg or not self.height_cm:
            return None
        metres = self.height_cm / 100
        return round(self.weight_kg / (metres * metres), 1)

    def as_json(self) -> dict[str, Any]:
        data = {k: v for k, v in asdict(self).items() if v is not None}
        if self.bmi is not None:
            data["bmi"] = self.bmi
        return data


def parse_vitals(raw) -> VitalsRecord:
    """
    Validate a raw vitals mapping into a VitalsRecord.
    Raises DRF ValidationError (nested under "vitals") on malformed input.
    """
    if not isinstance(raw, dict):
        raise serializers.ValidationError({"vitals": "Vitals must be an object."})
    ser = VitalsInputSerializer(data=raw)
    if not ser.is_valid():
        raise serializers.ValidationError({"vitals": ser.errors})
    return VitalsRecord(**ser.validated_data)
