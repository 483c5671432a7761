"""Coordinates the dialog FSM, intent interpretation, and usage metering."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from zoneinfo import ZoneInfo

from django.conf import settings
from django.db import transaction

from apps.appointments.workflow import ProviderError
from apps.common.utils import ServiceResult
from apps.conversations.models import Conversation, MessageRole
from apps.conversations.repository import ConversationRepository
from apps.dialog.fsm import DialogFSM, DialogState, DialogueState, Trigger
from apps.dialog.models import DialogTransition
from apps.dialog.serializers import TurnRequestSerializer
from apps.dialog.slots import InvalidSlotValue, is_complete, merge_slots
from apps.dialog.turn_lock import ConversationTurnLock, TurnLockTimeout
from apps.events.messages import (
    AppointmentCommitEvent,
    TicketOpenEvent,
    Topic,
    UsageChargeEvent,
)
from apps.kb.services import KnowledgeBaseService, KnowledgeBaseUnavailable, build_context
from apps.llm.interpreter import IntentInterpreter, InterpreterFailure
from apps.llm.schemas import (
    INFORMATIONAL_INTENTS,
    SLOT_NAMES,
    Intent,
    IntentResult,
    schema_for_mode,
)
from apps.speech.services import SpeechToTextService, TranscriptionError
from apps.tenants.models import Tenant
from apps.wallets.ledger import InsufficientFunds, WalletBusy, WalletLocked
from apps.wallets.metering import rollback_charge
from apps.wallets.models import UsageOperation

logger = logging.getLogger(__name__)

CLARIFY_MESSAGE = "Sorry, I didn't quite catch that. Could you say it another way?"
BILLING_EXHAUSTED_MESSAGE = (
    "This assistant is temporarily unavailable. Please try again later."
)
WALLET_LOCKED_MESSAGE = (
    "This account is currently suspended. Please contact the business directly."
)
ESCALATED_MESSAGE = (
    "I'm handing this conversation to a member of our team. Your ticket number is {ticket_id}."
)
ALREADY_ESCALATED_MESSAGE = "Our team already has your request (ticket {ticket_id})."
PROVIDER_ERROR_MESSAGE = (
    "Sorry, I couldn't complete the booking just now. Please try confirming again in a moment."
)
CONFIRM_PROMPT = (
    "Please confirm: {name} ({email}, {phone}) on {date} at {time}. Shall I book it?"
)
BOOKED_MESSAGE = "You're booked for {date} at {time}. See you then!"
GOODBYE_MESSAGE = "Thanks for chatting with us. Goodbye!"
BUSY_MESSAGE = "I'm still working on your previous message. Please try again in a moment."
AUDIO_FAILED_MESSAGE = "Sorry, I couldn't make out that audio. Could you type your message instead?"
SLOT_PROMPTS = {
    "email": "What email address should we use for the booking?",
    "name": "What name should the booking be under?",
    "phone": "What phone number can we reach you on?",
    "date": "Which date would you like (YYYY-MM-DD)?",
    "time": "What time suits you (HH:MM, 24-hour)?",
}
# Model replies shorter than this are replaced by knowledge-base context.
SHORT_REPLY_LENGTH = 20


@dataclass(slots=True)
class TurnOutcome:
    state: DialogueState
    reply: str
    ok: bool = True
    error: str | None = None
    transitions: list = field(default_factory=list)
    retry: bool = False


class DialogOrchestrator:
    """Single entry point for caller turns. Built by ``apps.dialog.wiring``."""

    def __init__(
        self,
        *,
        bus,
        interpreter: IntentInterpreter,
        kb: KnowledgeBaseService,
        speech: SpeechToTextService,
        repository: ConversationRepository | None = None,
        fsm: DialogFSM | None = None,
        turn_lock: ConversationTurnLock | None = None,
    ) -> None:
        self.bus = bus
        self.interpreter = interpreter
        self.kb = kb
        self.speech = speech
        self.repository = repository or ConversationRepository()
        self.fsm = fsm or DialogFSM()
        self.turn_lock = turn_lock or ConversationTurnLock()
        self.max_failures = getattr(settings, "DIALOG_MAX_INTERPRETER_FAILURES", 3)
        self.lock_timeout = getattr(settings, "DIALOG_TURN_LOCK_TIMEOUT_SECONDS", 30)
        self.history_window = getattr(settings, "DIALOG_HISTORY_WINDOW", 20)
        self.summary_threshold = getattr(settings, "DIALOG_SUMMARY_THRESHOLD", 10)

    # ------------------------------------------------------------------ entry points
    def start_conversation(self, tenant: Tenant, external_id: str, mode: str | None = None) -> ServiceResult:
        conversation, created = self.repository.get_or_start(tenant, external_id, mode)
        if created:
            self._welcome(conversation)
        return ServiceResult(
            ok=True,
            message=self._welcome_text(tenant),
            data=self._snapshot(conversation),
        )

    def handle_request(self, tenant: Tenant, payload: dict) -> ServiceResult:
        serializer = TurnRequestSerializer(data=payload)
        if not serializer.is_valid():
            return ServiceResult(
                ok=False,
                message="Invalid turn request.",
                data=dict(serializer.errors),
                error="INVALID_REQUEST",
            )
        data = serializer.validated_data
        return self.handle_turn(tenant, data["conversation_id"], data["text"], data.get("mode"))

    def handle_turn(
        self,
        tenant: Tenant,
        external_id: str,
        text: str,
        mode: str | None = None,
    ) -> ServiceResult:
        conversation, created = self.repository.get_or_start(tenant, external_id, mode)
        if created:
            self._welcome(conversation)
        try:
            with self.turn_lock.hold(conversation.pk, self.lock_timeout):
                return self._run_turn(conversation.pk, text)
        except TurnLockTimeout:
            logger.warning(
                "dialog.turn_lock_timeout",
                extra={"conversation_id": conversation.pk, "timeout": self.lock_timeout},
            )
            return ServiceResult(
                ok=True,
                message=BUSY_MESSAGE,
                data={**self._snapshot(conversation), "retry": True},
            )

    def transcribe_turn(
        self,
        tenant: Tenant,
        external_id: str,
        audio: bytes,
        mime_type: str,
        duration_seconds: float,
        request_id: str,
        mode: str | None = None,
    ) -> ServiceResult:
        """Transcribe a voice note and feed the text through ``handle_turn``."""
        conversation, created = self.repository.get_or_start(tenant, external_id, mode)
        if created:
            self._welcome(conversation)
        try:
            text = self.speech.transcribe(
                tenant,
                audio,
                mime_type,
                duration_seconds,
                idempotency_key=f"{conversation.pk}:audio:{request_id}",
            )
        except WalletLocked:
            return ServiceResult(
                ok=False,
                message=WALLET_LOCKED_MESSAGE,
                data=self._snapshot(conversation),
                error="WALLET_LOCKED",
            )
        except InsufficientFunds:
            return ServiceResult(ok=True, message=BILLING_EXHAUSTED_MESSAGE, data=self._snapshot(conversation))
        except WalletBusy:
            return ServiceResult(
                ok=True,
                message=BUSY_MESSAGE,
                data={**self._snapshot(conversation), "retry": True},
            )
        except TranscriptionError as exc:
            logger.warning(
                "dialog.transcription_failed",
                extra={"conversation_id": conversation.pk, "error": str(exc)},
            )
            return ServiceResult(
                ok=True,
                message=AUDIO_FAILED_MESSAGE,
                data={**self._snapshot(conversation), "transcribed": False},
            )
        result = self.handle_turn(tenant, external_id, text, mode)
        result.data = {**(result.data or {}), "transcript": text}
        return result

    # ------------------------------------------------------------------ turn pipeline
    def _run_turn(self, conversation_pk: int, text: str) -> ServiceResult:
        conversation = self.repository.get(conversation_pk)
        conversation.turn_count += 1
        self.repository.save_state(conversation, ["turn_count"])
        summaries = self._fold_history(conversation)
        history = self.repository.recent_history(conversation, self.history_window)
        self.repository.append_message(conversation, MessageRole.USER, text)

        state = DialogueState.from_conversation(conversation)
        chat_charge = UsageChargeEvent.for_turn(conversation, UsageOperation.CHAT_COMPLETION)
        intent = ""
        try:
            result = self.interpreter.interpret(
                history,
                text,
                schema_for_mode(conversation.mode),
                tenant_id=conversation.tenant_id,
                conversation_ref=str(conversation.pk),
                summaries=summaries,
            )
        except InterpreterFailure as failure:
            outcome = self._interpreter_failed(conversation, state, failure, chat_charge)
        else:
            intent = result.intent.value
            chat_charge = replace(chat_charge, usage=result.usage)
            outcome = self._charge_or_refuse(chat_charge, state)
            if outcome is None:
                conversation.failed_interpretations = 0
                conversation.last_intent = intent
                outcome = self._dispatch(conversation, state, result, text, chat_charge)
        return self._finish(conversation, outcome, intent)

    def _fold_history(self, conversation: Conversation) -> list[str]:
        """Summarize the oldest unsummarized messages once enough pile up.

        The summary is stored only after its completion is paid for; any
        failure leaves the history as is and the turn carries on without it.
        """
        threshold = self.summary_threshold
        if threshold > 0 and self.repository.count_unsummarized(conversation) >= threshold:
            messages = self.repository.unsummarized_messages(conversation, threshold)
            try:
                content, usage = self.interpreter.summarize(
                    messages,
                    tenant_id=conversation.tenant_id,
                    conversation_ref=str(conversation.pk),
                )
            except InterpreterFailure as failure:
                logger.warning(
                    "dialog.summary_failed",
                    extra={"conversation_id": conversation.pk, "code": failure.code},
                )
                if failure.billable:
                    self._charge_summary(conversation, failure.usage)
            else:
                if self._charge_summary(conversation, usage):
                    self.repository.add_summary(conversation, content, messages)
                    logger.info(
                        "dialog.history_summarized",
                        extra={"conversation_id": conversation.pk, "messages": len(messages)},
                    )
        return self.repository.summaries(conversation)

    def _charge_summary(self, conversation: Conversation, usage) -> bool:
        charge = UsageChargeEvent.for_turn(
            conversation, UsageOperation.CHAT_COMPLETION, suffix="summary", usage=usage
        )
        try:
            self.bus.request(Topic.USAGE_CHARGE, charge)
        except (InsufficientFunds, WalletLocked, WalletBusy) as exc:
            logger.warning(
                "dialog.summary_not_charged",
                extra={"conversation_id": conversation.pk, "error": type(exc).__name__},
            )
            return False
        return True

    def _charge_or_refuse(self, charge: UsageChargeEvent, state: DialogueState) -> TurnOutcome | None:
        try:
            self.bus.request(Topic.USAGE_CHARGE, charge)
        except InsufficientFunds:
            return TurnOutcome(state, BILLING_EXHAUSTED_MESSAGE)
        except WalletLocked:
            return TurnOutcome(state, WALLET_LOCKED_MESSAGE, ok=False, error="WALLET_LOCKED")
        except WalletBusy:
            return TurnOutcome(state, BUSY_MESSAGE, retry=True)
        return None

    def _interpreter_failed(
        self,
        conversation: Conversation,
        state: DialogueState,
        failure: InterpreterFailure,
        chat_charge: UsageChargeEvent,
    ) -> TurnOutcome:
        logger.warning(
            "dialog.interpretation_failed",
            extra={
                "conversation_id": conversation.pk,
                "code": failure.code,
                "billable": failure.billable,
                "consecutive": conversation.failed_interpretations + 1,
            },
        )
        if failure.billable:
            refused = self._charge_or_refuse(replace(chat_charge, usage=failure.usage), state)
            if refused is not None:
                return refused
        conversation.failed_interpretations += 1
        if conversation.failed_interpretations < self.max_failures:
            return TurnOutcome(state, CLARIFY_MESSAGE)
        conversation.failed_interpretations = 0
        return self._escalate(
            conversation,
            state,
            [],
            summary=f"Automatic escalation after {self.max_failures} failed interpretations.",
            reason="interpreter_failures",
        )

    def _dispatch(
        self,
        conversation: Conversation,
        state: DialogueState,
        result: IntentResult,
        text: str,
        chat_charge: UsageChargeEvent,
    ) -> TurnOutcome:
        intent = result.intent
        transitions: list = []

        if intent is Intent.END_CONVERSATION:
            if state.kind != DialogState.IDLE:
                state = self._fire(transitions, state, Trigger.RESTART)
            return TurnOutcome(state, result.message or GOODBYE_MESSAGE, transitions=transitions)

        if intent is Intent.ESCALATE_CHAT:
            return self._escalate(conversation, state, transitions, summary=text, reason="caller_request")

        if intent in INFORMATIONAL_INTENTS:
            return TurnOutcome(state, self._answer(conversation, result, text))

        if intent is Intent.CONFIRM_APPOINTMENT:
            if state.kind == DialogState.COLLECTING and is_complete(state.slots):
                # Complete slots left in collection move on before confirming.
                state = self._fire(transitions, state, Trigger.SLOTS_COMPLETE, slots=state.slots)
            if state.kind == DialogState.AWAITING_CONFIRMATION:
                return self._confirm(conversation, state, chat_charge, transitions)
            if state.kind == DialogState.COLLECTING:
                return TurnOutcome(state, self._next_prompt(state.slots))
            return TurnOutcome(state, result.message or CLARIFY_MESSAGE)

        if intent is Intent.EDIT_APPOINTMENT:
            if state.kind == DialogState.AWAITING_CONFIRMATION:
                state = self._fire(transitions, state, Trigger.EDIT)
            elif state.kind != DialogState.COLLECTING:
                return TurnOutcome(state, result.message or CLARIFY_MESSAGE)
            return self._collect(conversation, state, result, transitions)

        # BOOK_APPOINTMENT and SET_APPOINTMENT_* start or continue a booking.
        if state.is_terminal:
            state = self._fire(transitions, state, Trigger.RESTART)
        if state.kind == DialogState.IDLE:
            state = self._fire(transitions, state, Trigger.BOOK)
        return self._collect(conversation, state, result, transitions)

    def _collect(
        self,
        conversation: Conversation,
        state: DialogueState,
        result: IntentResult,
        transitions: list,
    ) -> TurnOutcome:
        provided = result.parameters.provided()
        if not provided:
            if state.kind == DialogState.COLLECTING and is_complete(state.slots):
                state = self._fire(transitions, state, Trigger.SLOTS_COMPLETE, slots=state.slots)
            return TurnOutcome(state, self._prompt_for(state), transitions=transitions)
        try:
            merged = merge_slots(state.slots, provided, conversation.tenant.timezone)
        except InvalidSlotValue as exc:
            logger.info(
                "dialog.slot_rejected",
                extra={"conversation_id": conversation.pk, "slots": sorted(exc.errors)},
            )
            return TurnOutcome(state, " ".join(exc.errors.values()), transitions=transitions)
        trigger = Trigger.SLOTS_COMPLETE if is_complete(merged) else Trigger.SLOTS_UPDATED
        state = self._fire(transitions, state, trigger, slots=merged)
        return TurnOutcome(state, self._prompt_for(state), transitions=transitions)

    def _confirm(
        self,
        conversation: Conversation,
        state: DialogueState,
        chat_charge: UsageChargeEvent,
        transitions: list,
    ) -> TurnOutcome:
        slots = dict(state.slots)
        try:
            merge_slots(slots, {"date": slots["date"], "time": slots["time"]}, conversation.tenant.timezone)
        except InvalidSlotValue as exc:
            kept = {name: value for name, value in slots.items() if name not in ("date", "time")}
            state = self._fire(transitions, state, Trigger.EDIT, slots=kept)
            reply = f"{' '.join(exc.errors.values())} {self._next_prompt(kept)}"
            return TurnOutcome(state, reply, transitions=transitions)

        try:
            appointment_id = self.bus.request(
                Topic.APPOINTMENT_COMMIT,
                AppointmentCommitEvent(conversation_id=conversation.pk, slots=slots),
            )
        except ProviderError as exc:
            rollback_charge(
                self.bus,
                chat_charge.tenant_id,
                chat_charge.idempotency_key,
                reason="appointment provider failed",
            )
            logger.warning(
                "dialog.booking_failed",
                extra={"conversation_id": conversation.pk, "appointment_id": exc.appointment_id},
            )
            return TurnOutcome(
                state, PROVIDER_ERROR_MESSAGE, ok=False, error="PROVIDER_ERROR", transitions=transitions
            )

        state = self._fire(transitions, state, Trigger.CONFIRMED, appointment_id=appointment_id)
        return TurnOutcome(state, BOOKED_MESSAGE.format(**slots), transitions=transitions)

    def _escalate(
        self,
        conversation: Conversation,
        state: DialogueState,
        transitions: list,
        *,
        summary: str,
        reason: str,
    ) -> TurnOutcome:
        if state.kind == DialogState.ESCALATED:
            return TurnOutcome(state, ALREADY_ESCALATED_MESSAGE.format(ticket_id=state.ticket_id))
        if state.kind == DialogState.COMPLETED:
            state = self._fire(transitions, state, Trigger.RESTART)
        ticket_id = self.bus.request(
            Topic.TICKET_OPEN,
            TicketOpenEvent(conversation_id=conversation.pk, summary=summary, reason=reason),
        )
        state = self._fire(transitions, state, Trigger.ESCALATE, ticket_id=ticket_id)
        return TurnOutcome(state, ESCALATED_MESSAGE.format(ticket_id=ticket_id), transitions=transitions)

    def _answer(self, conversation: Conversation, result: IntentResult, text: str) -> str:
        reply = result.message
        tenant = conversation.tenant
        if tenant.kb_tag:
            charge = UsageChargeEvent.for_turn(conversation, UsageOperation.KB_READ)
            try:
                chunks = self.kb.lookup(tenant, text, charge)
            except (InsufficientFunds, WalletLocked, WalletBusy, KnowledgeBaseUnavailable) as exc:
                logger.warning(
                    "dialog.kb_lookup_skipped",
                    extra={"conversation_id": conversation.pk, "error": type(exc).__name__},
                )
                chunks = []
            if chunks and len(reply) < SHORT_REPLY_LENGTH:
                reply = build_context(chunks)
        note = self._enquiry_note(conversation, result.intent)
        if note:
            reply = f"{reply} {note}".strip()
        return reply or CLARIFY_MESSAGE

    def _enquiry_note(self, conversation: Conversation, intent: Intent) -> str:
        if intent is Intent.BOOKING_ENQUIRY:
            appointment = self.repository.latest_appointment(conversation)
            if appointment is None:
                return "I couldn't find a booking made in this conversation."
            local = appointment.scheduled_for.astimezone(ZoneInfo(conversation.tenant.timezone or "UTC"))
            return (
                f"Your booking for {local:%Y-%m-%d %H:%M} is "
                f"{appointment.get_status_display().lower()}."
            )
        if intent is Intent.ESCALATION_ENQUIRY:
            ticket = self.repository.latest_ticket(conversation)
            if ticket is None:
                return "There is no support ticket for this conversation."
            return f"Ticket {ticket.pk} is {ticket.get_status_display().lower()}."
        return ""

    def _finish(self, conversation: Conversation, outcome: TurnOutcome, intent: str) -> ServiceResult:
        with transaction.atomic():
            fields = outcome.state.apply_to(conversation)
            self.repository.save_state(conversation, [*fields, "failed_interpretations", "last_intent"])
            for from_state, to_state, trigger in outcome.transitions:
                DialogTransition.objects.create(
                    conversation=conversation,
                    turn=conversation.turn_count,
                    from_state=from_state,
                    to_state=to_state,
                    trigger=trigger,
                    metadata={"intent": intent},
                )
            self.repository.append_message(
                conversation,
                MessageRole.ASSISTANT,
                outcome.reply,
                intent=intent,
                metadata={"state": outcome.state.kind},
            )
        logger.info(
            "dialog.turn_completed",
            extra={
                "conversation_id": conversation.pk,
                "turn": conversation.turn_count,
                "intent": intent,
                "state": outcome.state.kind,
                "error": outcome.error,
            },
        )
        data = self._snapshot(conversation)
        if outcome.retry:
            data["retry"] = True
        return ServiceResult(
            ok=outcome.ok,
            message=outcome.reply,
            data=data,
            error=outcome.error,
        )

    # ------------------------------------------------------------------ helpers
    def _fire(self, transitions: list, state: DialogueState, trigger: str, **context) -> DialogueState:
        new_state = self.fsm.fire(state, trigger, **context)
        transitions.append((state.kind, new_state.kind, trigger))
        return new_state

    def _prompt_for(self, state: DialogueState) -> str:
        if state.kind == DialogState.AWAITING_CONFIRMATION:
            return CONFIRM_PROMPT.format(**state.slots)
        return self._next_prompt(state.slots)

    @staticmethod
    def _next_prompt(slots: dict) -> str:
        for slot in SLOT_NAMES:
            if not slots.get(slot):
                return SLOT_PROMPTS[slot]
        return CONFIRM_PROMPT.format(**slots)

    def _welcome_text(self, tenant: Tenant) -> str:
        return tenant.welcome_message or getattr(
            settings, "DIALOG_WELCOME_MESSAGE", "Hi! How can I help you today?"
        )

    def _welcome(self, conversation: Conversation) -> None:
        self.repository.append_message(
            conversation,
            MessageRole.ASSISTANT,
            self._welcome_text(conversation.tenant),
            metadata={"welcome": True},
        )

    @staticmethod
    def _snapshot(conversation: Conversation) -> dict:
        return {
            "conversation_id": conversation.external_id,
            "state": conversation.fsm_state,
            "slots": dict(conversation.slots or {}),
            "ticket_id": conversation.ticket_id,
            "appointment_id": conversation.appointment_id,
            "turn": conversation.turn_count,
        }
