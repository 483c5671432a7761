"""Boundary validation for inbound dialog turns."""

from __future__ import annotations

from rest_framework import serializers

from apps.conversations.models import ConversationMode


class TurnRequestSerializer(serializers.Serializer):
    conversation_id = serializers.CharField(max_length=255)
    text = serializers.CharField(max_length=4000, trim_whitespace=True)
    mode = serializers.ChoiceField(choices=ConversationMode.choices, required=False)
