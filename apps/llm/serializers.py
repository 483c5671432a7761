"""Boundary validation for structured model output."""

from __future__ import annotations

from rest_framework import serializers

from apps.llm.schemas import SLOT_NAMES, Intent


class StrictSerializer(serializers.Serializer):
    """Serializer that refuses keys it does not declare."""

    def to_internal_value(self, data):
        if isinstance(data, dict):
            unknown = sorted(set(data) - set(self.fields))
            if unknown:
                raise serializers.ValidationError({key: ["Unexpected field."] for key in unknown})
        return super().to_internal_value(data)


class SlotParametersSerializer(StrictSerializer):
    email = serializers.CharField(allow_null=True, allow_blank=True, required=False, default=None)
    name = serializers.CharField(allow_null=True, allow_blank=True, required=False, default=None)
    phone = serializers.CharField(allow_null=True, allow_blank=True, required=False, default=None)
    date = serializers.CharField(allow_null=True, allow_blank=True, required=False, default=None)
    time = serializers.CharField(allow_null=True, allow_blank=True, required=False, default=None)


class IntentPayloadSerializer(StrictSerializer):
    intent = serializers.ChoiceField(choices=[i.value for i in Intent])
    parameters = SlotParametersSerializer(required=False, allow_null=True)
    message = serializers.CharField(allow_blank=True, required=False, default="")

    def __init__(self, *args, intents=None, **kwargs):
        super().__init__(*args, **kwargs)
        if intents is not None:
            self.fields["intent"].choices = [i.value for i in intents]

    def validate_parameters(self, value):
        value = value or {}
        return {slot: value.get(slot) for slot in SLOT_NAMES}
