"""Explicit data access for conversations.

Each method says what it loads; nothing is joined implicitly.
"""

from __future__ import annotations

from typing import Sequence

from django.db import transaction

from apps.appointments.models import Appointment
from apps.conversations.models import (
    Conversation,
    ConversationMessage,
    ConversationMode,
    ConversationSummary,
    MessageRole,
)
from apps.tenants.models import Tenant
from apps.tickets.models import Ticket


class ConversationRepository:
    def get_or_start(
        self,
        tenant: Tenant,
        external_id: str,
        mode: str | None = None,
    ) -> tuple[Conversation, bool]:
        """Fetch the conversation row (no messages) or create it in ``mode``."""
        with transaction.atomic():
            return Conversation.objects.get_or_create(
                tenant=tenant,
                external_id=external_id,
                defaults={"mode": mode or ConversationMode.TRAINING},
            )

    def get(self, conversation_id: int) -> Conversation:
        """Fetch one conversation together with its tenant."""
        return Conversation.objects.select_related("tenant").get(pk=conversation_id)

    def append_message(
        self,
        conversation: Conversation,
        role: str,
        content: str,
        *,
        intent: str = "",
        metadata: dict | None = None,
    ) -> ConversationMessage:
        return ConversationMessage.objects.create(
            conversation=conversation,
            role=role,
            content=content,
            turn=conversation.turn_count,
            intent=intent,
            metadata=metadata or {},
        )

    def recent_history(self, conversation: Conversation, limit: int) -> list[dict]:
        """Return the last ``limit`` unsummarized user/assistant messages, oldest first."""
        rows = list(
            self._unsummarized(conversation)
            .order_by("-created_at", "-id")
            .values("role", "content")[:limit]
        )
        rows.reverse()
        return rows

    def unsummarized_messages(self, conversation: Conversation, limit: int | None = None) -> list[dict]:
        """User/assistant messages not yet folded into a summary, oldest first."""
        rows = self._unsummarized(conversation).order_by("created_at", "id").values("id", "role", "content")
        if limit is not None:
            rows = rows[:limit]
        return list(rows)

    def count_unsummarized(self, conversation: Conversation) -> int:
        return self._unsummarized(conversation).count()

    def summaries(self, conversation: Conversation) -> list[str]:
        return list(conversation.summaries.order_by("created_at", "id").values_list("content", flat=True))

    def add_summary(self, conversation: Conversation, content: str, messages: Sequence[dict]) -> ConversationSummary:
        return ConversationSummary.objects.create(
            conversation=conversation,
            content=content,
            last_message_id=messages[-1]["id"],
            message_count=len(messages),
        )

    def _unsummarized(self, conversation: Conversation):
        rows = conversation.messages.filter(role__in=[MessageRole.USER, MessageRole.ASSISTANT])
        last = conversation.summaries.order_by("-created_at", "-id").values_list("last_message_id", flat=True).first()
        if last is not None:
            rows = rows.filter(id__gt=last)
        return rows

    def transcript(self, conversation: Conversation) -> str:
        """Full transcript as plain text, used when opening tickets."""
        lines = conversation.messages.order_by("created_at", "id").values_list("role", "content")
        return "\n".join(f"{role}: {content}" for role, content in lines)

    def save_state(self, conversation: Conversation, fields: Sequence[str]) -> None:
        conversation.save(update_fields=[*fields, "updated_at"])

    def latest_appointment(self, conversation: Conversation) -> Appointment | None:
        """Most recent appointment booked from this conversation, if any."""
        return (
            Appointment.objects.filter(
                tenant_id=conversation.tenant_id, conversation_ref=str(conversation.pk)
            )
            .order_by("-created_at", "-id")
            .first()
        )

    def latest_ticket(self, conversation: Conversation) -> Ticket | None:
        """Most recent escalation ticket opened from this conversation, if any."""
        return (
            Ticket.objects.filter(
                tenant_id=conversation.tenant_id, conversation_ref=str(conversation.pk)
            )
            .order_by("-created_at", "-id")
            .first()
        )
