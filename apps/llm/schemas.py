"""Intent vocabularies and structured-output schemas for the interpreter."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

SLOT_NAMES = ("email", "name", "phone", "date", "time")


class Intent(str, Enum):
    BOOK_APPOINTMENT = "BOOK_APPOINTMENT"
    SET_APPOINTMENT_EMAIL = "SET_APPOINTMENT_EMAIL"
    SET_APPOINTMENT_NAME = "SET_APPOINTMENT_NAME"
    SET_APPOINTMENT_PHONE = "SET_APPOINTMENT_PHONE"
    SET_APPOINTMENT_DATE = "SET_APPOINTMENT_DATE"
    SET_APPOINTMENT_TIME = "SET_APPOINTMENT_TIME"
    SET_APPOINTMENT_DATE_AND_TIME = "SET_APPOINTMENT_DATE_AND_TIME"
    CONFIRM_APPOINTMENT = "CONFIRM_APPOINTMENT"
    EDIT_APPOINTMENT = "EDIT_APPOINTMENT"
    GENERAL_INQUIRY = "GENERAL_INQUIRY"
    END_CONVERSATION = "END_CONVERSATION"
    BOOKING_ENQUIRY = "BOOKING_ENQUIRY"
    ESCALATE_CHAT = "ESCALATE_CHAT"
    ESCALATION_ENQUIRY = "ESCALATION_ENQUIRY"


SLOT_INTENTS = frozenset(
    {
        Intent.SET_APPOINTMENT_EMAIL,
        Intent.SET_APPOINTMENT_NAME,
        Intent.SET_APPOINTMENT_PHONE,
        Intent.SET_APPOINTMENT_DATE,
        Intent.SET_APPOINTMENT_TIME,
        Intent.SET_APPOINTMENT_DATE_AND_TIME,
    }
)

# Intents answered from the knowledge base rather than the state machine.
INFORMATIONAL_INTENTS = frozenset(
    {Intent.GENERAL_INQUIRY, Intent.BOOKING_ENQUIRY, Intent.ESCALATION_ENQUIRY}
)


@dataclass(frozen=True, slots=True)
class SlotParameters:
    """Closed set of appointment slots a single turn may carry."""

    email: str | None = None
    name: str | None = None
    phone: str | None = None
    date: str | None = None
    time: str | None = None

    def provided(self) -> dict[str, str]:
        """Only present, non-blank values are authoritative."""
        values = {}
        for slot in SLOT_NAMES:
            value = getattr(self, slot)
            if value is not None and str(value).strip():
                values[slot] = str(value).strip()
        return values


@dataclass(frozen=True, slots=True)
class TokenUsage:
    """Token counts reported by the provider; ``cached_tokens`` is part of the prompt."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: int = 0

    @property
    def reported(self) -> bool:
        return bool(self.prompt_tokens or self.completion_tokens)

    def as_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "cached_tokens": self.cached_tokens,
            "completion_tokens": self.completion_tokens,
        }


@dataclass(frozen=True, slots=True)
class IntentResult:
    intent: Intent
    parameters: SlotParameters = field(default_factory=SlotParameters)
    message: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(frozen=True)
class IntentSchema:
    name: str
    intents: tuple[Intent, ...]
    instructions: str

    def response_format(self) -> dict:
        nullable_string = {"type": ["string", "null"]}
        return {
            "type": "json_schema",
            "json_schema": {
                "name": self.name,
                "strict": True,
                "schema": {
                    "type": "object",
                    "additionalProperties": False,
                    "required": ["intent", "parameters", "message"],
                    "properties": {
                        "intent": {"type": "string", "enum": [i.value for i in self.intents]},
                        "parameters": {
                            "type": "object",
                            "additionalProperties": False,
                            "required": list(SLOT_NAMES),
                            "properties": {slot: nullable_string for slot in SLOT_NAMES},
                        },
                        "message": {"type": "string"},
                    },
                },
            },
        }


_SHARED_RULES = (
    "Extract appointment details only when the caller states them explicitly.\n"
    "- Use null for every parameter the latest message does not mention.\n"
    "- Dates are YYYY-MM-DD and times are 24-hour HH:MM.\n"
    "- `message` is the reply to send back to the caller, at most two sentences."
)

TRAINING_SCHEMA = IntentSchema(
    name="training_intent",
    intents=(
        Intent.BOOK_APPOINTMENT,
        *sorted(SLOT_INTENTS, key=lambda i: i.value),
        Intent.CONFIRM_APPOINTMENT,
        Intent.EDIT_APPOINTMENT,
        Intent.GENERAL_INQUIRY,
        Intent.END_CONVERSATION,
    ),
    instructions=(
        "You classify messages sent to an appointment booking assistant.\n" + _SHARED_RULES
    ),
)

LIVE_SCHEMA = IntentSchema(
    name="live_intent",
    intents=(
        Intent.BOOK_APPOINTMENT,
        Intent.BOOKING_ENQUIRY,
        Intent.CONFIRM_APPOINTMENT,
        Intent.EDIT_APPOINTMENT,
        Intent.ESCALATE_CHAT,
        Intent.ESCALATION_ENQUIRY,
        Intent.GENERAL_INQUIRY,
        Intent.END_CONVERSATION,
    ),
    instructions=(
        "You classify messages sent to a live customer support assistant.\n"
        "- Use ESCALATE_CHAT when the caller asks for a human or is clearly frustrated.\n"
        "- Use BOOKING_ENQUIRY or ESCALATION_ENQUIRY for questions about an existing "
        "booking or support ticket.\n" + _SHARED_RULES
    ),
)


def schema_for_mode(mode: str) -> IntentSchema:
    return LIVE_SCHEMA if mode == "live" else TRAINING_SCHEMA
