"""Typed messages carried by the in-process event bus."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from apps.llm.schemas import TokenUsage


class Topic(str, Enum):
    USAGE_CHARGE = "usage.charge"
    USAGE_ROLLBACK = "usage.rollback"
    APPOINTMENT_COMMIT = "appointment.commit"
    TICKET_OPEN = "ticket.open"
    NOTIFICATION = "notification.send"


@dataclass(frozen=True, slots=True)
class UsageChargeEvent:
    tenant_id: int
    operation: str
    quantity: Decimal
    idempotency_key: str
    conversation_ref: str = ""
    # Set for chat completions; a reported usage is billed per token.
    usage: TokenUsage | None = None

    @classmethod
    def for_turn(
        cls,
        conversation,
        operation: str,
        quantity: Decimal | int = 1,
        *,
        suffix: str = "",
        usage: TokenUsage | None = None,
    ) -> "UsageChargeEvent":
        """Charge keyed to one logical unit of work inside a conversation turn."""
        key = f"{conversation.pk}:{conversation.turn_count}:{operation}"
        return cls(
            tenant_id=conversation.tenant_id,
            operation=str(operation),
            quantity=Decimal(quantity),
            idempotency_key=f"{key}:{suffix}" if suffix else key,
            conversation_ref=str(conversation.pk),
            usage=usage,
        )


@dataclass(frozen=True, slots=True)
class UsageRollbackEvent:
    tenant_id: int
    idempotency_key: str
    reason: str = ""


@dataclass(frozen=True, slots=True)
class AppointmentCommitEvent:
    conversation_id: int
    slots: dict[str, str]


@dataclass(frozen=True, slots=True)
class TicketOpenEvent:
    conversation_id: int
    summary: str
    reason: str = "escalation"


@dataclass(frozen=True, slots=True)
class NotificationEvent:
    tenant_id: int
    kind: str
    title: str
    body: str = ""
    payload: dict[str, Any] = field(default_factory=dict)


TOPIC_MESSAGE_TYPES: dict[Topic, type] = {
    Topic.USAGE_CHARGE: UsageChargeEvent,
    Topic.USAGE_ROLLBACK: UsageRollbackEvent,
    Topic.APPOINTMENT_COMMIT: AppointmentCommitEvent,
    Topic.TICKET_OPEN: TicketOpenEvent,
    Topic.NOTIFICATION: NotificationEvent,
}
