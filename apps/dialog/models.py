"""Domain models for the dialog module."""

from django.db import models

from apps.common.models import AppendOnlyModel
from apps.conversations.models import Conversation


class DialogTransition(AppendOnlyModel):
    """Records FSM transitions for observability and analytics."""

    conversation = models.ForeignKey(
        Conversation, on_delete=models.PROTECT, related_name="transitions"
    )
    turn = models.PositiveIntegerField(default=0)
    from_state = models.CharField(max_length=50)
    to_state = models.CharField(max_length=50)
    trigger = models.CharField(max_length=50)
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-created_at", "-id"]
