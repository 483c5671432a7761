"""Domain models for the conversations module."""

from django.db import models

from apps.common.models import AppendOnlyModel, TimeStampedModel
from apps.tenants.models import Tenant


class ConversationMode(models.TextChoices):
    TRAINING = "training", "Training"
    LIVE = "live", "Live"


class MessageRole(models.TextChoices):
    USER = "user", "User"
    ASSISTANT = "assistant", "Assistant"
    SYSTEM = "system", "System"
    DEVELOPER = "developer", "Developer"


class Conversation(TimeStampedModel):
    """A caller's dialogue with a tenant's agent, including its current FSM state."""

    tenant = models.ForeignKey(
        Tenant, on_delete=models.PROTECT, related_name="conversations"
    )
    external_id = models.CharField(max_length=255)
    mode = models.CharField(
        max_length=10, choices=ConversationMode.choices, default=ConversationMode.TRAINING
    )
    fsm_state = models.CharField(max_length=50, default="idle")
    slots = models.JSONField(default=dict, blank=True)
    ticket_id = models.BigIntegerField(null=True, blank=True)
    appointment_id = models.BigIntegerField(null=True, blank=True)
    turn_count = models.PositiveIntegerField(default=0)
    failed_interpretations = models.PositiveSmallIntegerField(default=0)
    last_intent = models.CharField(max_length=100, blank=True)

    class Meta:
        ordering = ["-updated_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["tenant", "external_id"], name="unique_conversation_per_tenant"
            ),
        ]

    def __str__(self) -> str:
        return f"Conversation<{self.pk}> {self.fsm_state}"


class ConversationMessage(AppendOnlyModel):
    """One message of the transcript; never edited after it is written."""

    conversation = models.ForeignKey(
        Conversation, on_delete=models.PROTECT, related_name="messages"
    )
    role = models.CharField(max_length=10, choices=MessageRole.choices, db_index=True)
    content = models.TextField()
    turn = models.PositiveIntegerField(default=0)
    intent = models.CharField(max_length=100, blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["created_at", "id"]


class ConversationSummary(AppendOnlyModel):
    """Rolling summary of every message up to and including ``last_message_id``."""

    conversation = models.ForeignKey(
        Conversation, on_delete=models.PROTECT, related_name="summaries"
    )
    content = models.TextField()
    last_message_id = models.BigIntegerField()
    message_count = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["created_at", "id"]
