"""Finite-state machine for the appointment slot-filling dialog.

The machine is pure: ``fire`` takes a ``DialogueState`` and returns the next
one. Persisting it onto a ``Conversation`` is the orchestrator's job.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from apps.dialog.slots import is_complete


class DialogState:
    """Enumeration of FSM states."""

    IDLE = "idle"
    COLLECTING = "collecting_appointment"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    ESCALATED = "escalated"
    COMPLETED = "completed"

    TERMINAL = frozenset({ESCALATED, COMPLETED})


class Trigger:
    BOOK = "book"
    SLOTS_UPDATED = "slots_updated"
    SLOTS_COMPLETE = "slots_complete"
    CONFIRMED = "confirmed"
    EDIT = "edit"
    ESCALATE = "escalate"
    RESTART = "restart"


class InvalidTransition(RuntimeError):
    def __init__(self, state: str, trigger: str) -> None:
        super().__init__(f"No transition from {state!r} on {trigger!r}")
        self.state = state
        self.trigger = trigger


@dataclass(frozen=True)
class DialogueState:
    """Tagged variant: ``kind`` selects which payload fields are meaningful."""

    kind: str = DialogState.IDLE
    slots: dict = field(default_factory=dict)
    ticket_id: int | None = None
    appointment_id: int | None = None

    @classmethod
    def idle(cls) -> "DialogueState":
        return cls()

    @classmethod
    def collecting(cls, collected: dict | None = None) -> "DialogueState":
        return cls(kind=DialogState.COLLECTING, slots=dict(collected or {}))

    @classmethod
    def awaiting_confirmation(cls, slots: dict) -> "DialogueState":
        if not is_complete(slots):
            raise ValueError("Confirmation requires all appointment slots")
        return cls(kind=DialogState.AWAITING_CONFIRMATION, slots=dict(slots))

    @classmethod
    def escalated(cls, ticket_id: int) -> "DialogueState":
        return cls(kind=DialogState.ESCALATED, ticket_id=ticket_id)

    @classmethod
    def completed(cls, appointment_id: int) -> "DialogueState":
        return cls(kind=DialogState.COMPLETED, appointment_id=appointment_id)

    @classmethod
    def from_conversation(cls, conversation) -> "DialogueState":
        kind = conversation.fsm_state or DialogState.IDLE
        if kind == DialogState.COLLECTING:
            return cls.collecting(conversation.slots)
        if kind == DialogState.AWAITING_CONFIRMATION:
            return cls.awaiting_confirmation(conversation.slots)
        if kind == DialogState.ESCALATED:
            return cls.escalated(conversation.ticket_id)
        if kind == DialogState.COMPLETED:
            return cls.completed(conversation.appointment_id)
        return cls.idle()

    def apply_to(self, conversation) -> list[str]:
        """Copy this state onto the conversation; returns the touched fields."""
        conversation.fsm_state = self.kind
        conversation.slots = dict(self.slots)
        conversation.ticket_id = self.ticket_id
        conversation.appointment_id = self.appointment_id
        return ["fsm_state", "slots", "ticket_id", "appointment_id"]

    @property
    def is_terminal(self) -> bool:
        return self.kind in DialogState.TERMINAL


TransitionGuard = Callable[[DialogueState, dict], bool]


@dataclass(frozen=True)
class Transition:
    source: str
    trigger: str
    destination: str
    guard: Optional[TransitionGuard] = None


def _slots_complete(state: DialogueState, context: dict) -> bool:
    return is_complete(context.get("slots", state.slots))


def _slots_incomplete(state: DialogueState, context: dict) -> bool:
    return not _slots_complete(state, context)


class DialogFSM:
    """Table-driven FSM with optional transition guards."""

    def __init__(self) -> None:
        self.transitions: Dict[str, list[Transition]] = {}
        self._register_default_transitions()

    def _register_default_transitions(self) -> None:
        add = self._register
        add(DialogState.IDLE, Trigger.BOOK, DialogState.COLLECTING)
        add(DialogState.COLLECTING, Trigger.SLOTS_UPDATED, DialogState.COLLECTING, _slots_incomplete)
        add(DialogState.COLLECTING, Trigger.SLOTS_COMPLETE, DialogState.AWAITING_CONFIRMATION, _slots_complete)
        add(DialogState.AWAITING_CONFIRMATION, Trigger.SLOTS_COMPLETE, DialogState.AWAITING_CONFIRMATION, _slots_complete)
        add(DialogState.AWAITING_CONFIRMATION, Trigger.CONFIRMED, DialogState.COMPLETED)
        add(DialogState.AWAITING_CONFIRMATION, Trigger.EDIT, DialogState.COLLECTING)
        for source in (DialogState.IDLE, DialogState.COLLECTING, DialogState.AWAITING_CONFIRMATION):
            add(source, Trigger.ESCALATE, DialogState.ESCALATED)
        for source in (
            DialogState.COLLECTING,
            DialogState.AWAITING_CONFIRMATION,
            DialogState.ESCALATED,
            DialogState.COMPLETED,
        ):
            add(source, Trigger.RESTART, DialogState.IDLE)

    def _register(
        self,
        source: str,
        trigger: str,
        destination: str,
        guard: TransitionGuard | None = None,
    ) -> None:
        self.transitions.setdefault(source, []).append(
            Transition(source=source, trigger=trigger, destination=destination, guard=guard)
        )

    def can_fire(self, state: DialogueState, trigger: str, context: dict | None = None) -> bool:
        return self._match(state, trigger, context or {}) is not None

    def fire(self, state: DialogueState, trigger: str, **context) -> DialogueState:
        transition = self._match(state, trigger, context)
        if transition is None:
            raise InvalidTransition(state.kind, trigger)
        return self._enter(transition.destination, state, context)

    def _match(self, state: DialogueState, trigger: str, context: dict) -> Transition | None:
        for transition in self.transitions.get(state.kind, []):
            if transition.trigger != trigger:
                continue
            if transition.guard and not transition.guard(state, context):
                continue
            return transition
        return None

    @staticmethod
    def _enter(destination: str, state: DialogueState, context: dict) -> DialogueState:
        if destination == DialogState.COLLECTING:
            return DialogueState.collecting(context.get("slots", state.slots))
        if destination == DialogState.AWAITING_CONFIRMATION:
            return DialogueState.awaiting_confirmation(context.get("slots", state.slots))
        if destination == DialogState.ESCALATED:
            return DialogueState.escalated(context["ticket_id"])
        if destination == DialogState.COMPLETED:
            return DialogueState.completed(context["appointment_id"])
        return DialogueState.idle()
