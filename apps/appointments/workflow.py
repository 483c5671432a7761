"""Booking and escalation side effects of a finished dialog goal.

The workflow never touches the ledger. Charges and rollbacks around this
work belong to the dialog orchestrator.
"""

from __future__ import annotations

import logging

from django.conf import settings

from apps.appointments.models import Appointment, AppointmentStatus, AppointmentSyncState
from apps.calendars.models import CalendarCredential
from apps.calendars.services import CalendarService, CalendarServiceError
from apps.conversations.models import Conversation
from apps.conversations.repository import ConversationRepository
from apps.dialog.slots import scheduled_for
from apps.events.bus import Binding, Delivery
from apps.events.messages import (
    AppointmentCommitEvent,
    NotificationEvent,
    TicketOpenEvent,
    Topic,
)
from apps.tickets.models import Ticket, TicketPriority

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    """The booking provider failed; the appointment is left soft-failed."""

    def __init__(self, message: str, *, appointment_id: int | None = None) -> None:
        super().__init__(message)
        self.appointment_id = appointment_id


class AppointmentWorkflow:
    def __init__(
        self,
        publisher=None,
        calendar: CalendarService | None = None,
        repository: ConversationRepository | None = None,
    ) -> None:
        self.publisher = publisher
        self.calendar = calendar or CalendarService()
        self.repository = repository or ConversationRepository()

    def subscriptions(self) -> tuple[Binding, ...]:
        return (
            Binding(Topic.APPOINTMENT_COMMIT, self.handle_commit, Delivery.SYNC),
            Binding(Topic.TICKET_OPEN, self.handle_open_ticket, Delivery.SYNC),
        )

    def handle_commit(self, event: AppointmentCommitEvent) -> int:
        conversation = self.repository.get(event.conversation_id)
        return self.commit_appointment(conversation, event.slots)

    def handle_open_ticket(self, event: TicketOpenEvent) -> int:
        conversation = self.repository.get(event.conversation_id)
        return self.open_ticket(conversation, event.summary, reason=event.reason)

    def commit_appointment(self, conversation: Conversation, slots: dict[str, str]) -> int:
        tenant = conversation.tenant
        appointment = Appointment.objects.create(
            tenant=tenant,
            conversation_ref=str(conversation.pk),
            customer_email=slots["email"],
            customer_name=slots["name"],
            customer_phone=slots["phone"],
            scheduled_for=scheduled_for(slots, tenant.timezone),
            duration_minutes=getattr(settings, "APPOINTMENT_DEFAULT_DURATION_MINUTES", 30),
        )

        credential = CalendarCredential.objects.filter(tenant=tenant).first()
        if credential is not None:
            try:
                appointment.provider_appointment_id = self.calendar.create_event(appointment, credential)
            except CalendarServiceError as exc:
                appointment.status = AppointmentStatus.CANCELLED
                appointment.sync_state = AppointmentSyncState.FAILED
                appointment.last_error = str(exc)
                appointment.save(update_fields=["status", "sync_state", "last_error", "updated_at"])
                logger.warning(
                    "appointment.provider_failed",
                    extra={"appointment_id": appointment.pk, "tenant_id": tenant.pk},
                )
                raise ProviderError(str(exc), appointment_id=appointment.pk) from exc

        appointment.status = AppointmentStatus.CONFIRMED
        appointment.sync_state = AppointmentSyncState.OK
        appointment.save(update_fields=["status", "sync_state", "provider_appointment_id", "updated_at"])
        logger.info(
            "appointment.booked",
            extra={"appointment_id": appointment.pk, "tenant_id": tenant.pk, "synced": credential is not None},
        )
        self._notify(
            NotificationEvent(
                tenant_id=tenant.pk,
                kind="appointment.booked",
                title=f"New appointment for {appointment.customer_name}",
                body=f"{slots['date']} {slots['time']}",
                payload={"appointment_id": appointment.pk, "conversation_id": conversation.pk},
            )
        )
        return appointment.pk

    def open_ticket(self, conversation: Conversation, summary: str, *, reason: str = "escalation") -> int:
        slots = conversation.slots or {}
        ticket = Ticket.objects.create(
            tenant=conversation.tenant,
            conversation_ref=str(conversation.pk),
            customer_email=slots.get("email", ""),
            customer_name=slots.get("name", ""),
            summary=summary,
            reason=reason,
            transcript=self.repository.transcript(conversation),
            priority=TicketPriority.HIGH if reason == "interpreter_failures" else TicketPriority.MEDIUM,
        )
        logger.info(
            "ticket.opened",
            extra={"ticket_id": ticket.pk, "tenant_id": conversation.tenant_id, "reason": reason},
        )
        self._notify(
            NotificationEvent(
                tenant_id=conversation.tenant_id,
                kind="ticket.opened",
                title="A conversation needs a human",
                body=summary,
                payload={"ticket_id": ticket.pk, "conversation_id": conversation.pk},
            )
        )
        return ticket.pk

    def _notify(self, event: NotificationEvent) -> None:
        if self.publisher is not None:
            self.publisher.publish(Topic.NOTIFICATION, event)
