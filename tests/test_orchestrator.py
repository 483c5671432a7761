from decimal import Decimal
from types import SimpleNamespace

import pytest
from django.db import OperationalError

from apps.appointments.models import Appointment, AppointmentStatus, AppointmentSyncState
from apps.calendars.models import CalendarCredential
from apps.conversations.models import Conversation, ConversationMessage, ConversationSummary, MessageRole
from apps.dialog.fsm import DialogState
from apps.dialog.models import DialogTransition
from apps.dialog.orchestrator import BUSY_MESSAGE
from apps.dialog.wiring import build_orchestrator
from apps.kb.models import KnowledgeChunk
from apps.llm.interpreter import InterpreterFailure
from apps.llm.schemas import TokenUsage
from apps.tickets.models import Ticket, TicketPriority
from apps.wallets.models import TransactionCategory, Wallet, WalletTransaction

pytestmark = pytest.mark.django_db


def _balance(ledger, tenant):
    return ledger.balance(tenant.pk)


def _conversation(external_id="caller-1"):
    return Conversation.objects.get(external_id=external_id)


@pytest.fixture
def book_until_confirmation(orchestrator, interpreter, tenant, make_intent, future_date):
    def book():
        date = future_date()
        interpreter.queue(
            make_intent("BOOK_APPOINTMENT", "Happy to help you book."),
            make_intent("SET_APPOINTMENT_EMAIL", email="ana@example.com", name="Ana Silva"),
            make_intent("SET_APPOINTMENT_DATE_AND_TIME", phone="+1 555 010 0200", date=date, time="10:30"),
        )
        for text in ("I'd like to book", "ana@example.com, Ana Silva", "555 010 0200 on that day at 10:30"):
            result = orchestrator.handle_turn(tenant, "caller-1", text)
        return result, date

    return book


def test_booking_flow_reaches_completed(
    orchestrator, interpreter, tenant, ledger, funded_wallet, make_intent, future_date
):
    interpreter.queue(make_intent("BOOK_APPOINTMENT"))
    first = orchestrator.handle_turn(tenant, "caller-1", "I'd like to book")
    assert first.data["state"] == DialogState.COLLECTING
    assert first.data["slots"] == {}

    interpreter.queue(make_intent("SET_APPOINTMENT_EMAIL", email="ana@example.com", name="Ana Silva"))
    second = orchestrator.handle_turn(tenant, "caller-1", "ana@example.com, Ana Silva")
    assert second.data["state"] == DialogState.COLLECTING
    assert set(second.data["slots"]) == {"email", "name"}

    date = future_date()
    interpreter.queue(
        make_intent("SET_APPOINTMENT_DATE_AND_TIME", phone="+1 555 010 0200", date=date, time="10:30")
    )
    third = orchestrator.handle_turn(tenant, "caller-1", "555 010 0200, that day at 10:30")
    assert third.data["state"] == DialogState.AWAITING_CONFIRMATION
    assert "Shall I book it?" in third.message

    interpreter.queue(make_intent("CONFIRM_APPOINTMENT"))
    final = orchestrator.handle_turn(tenant, "caller-1", "yes")

    assert final.ok is True
    assert final.data["state"] == DialogState.COMPLETED
    appointment = Appointment.objects.get(pk=final.data["appointment_id"])
    assert appointment.status == AppointmentStatus.CONFIRMED
    assert appointment.customer_phone == "+15550100200"
    assert _balance(ledger, tenant) == Decimal("60")
    assert WalletTransaction.objects.filter(category=TransactionCategory.CHAT_COMPLETION).count() == 4

    conversation = _conversation()
    triggers = list(conversation.transitions.order_by("id").values_list("trigger", flat=True))
    assert triggers == ["book", "slots_updated", "slots_complete", "confirmed"]
    roles = list(conversation.messages.values_list("role", flat=True))
    assert roles[0] == MessageRole.ASSISTANT  # welcome message
    assert roles[1:] == [MessageRole.USER, MessageRole.ASSISTANT] * 4


def test_calendar_failure_rolls_back_and_keeps_awaiting(
    orchestrator, interpreter, tenant, ledger, funded_wallet, monkeypatch, make_intent, book_until_confirmation
):
    CalendarCredential.objects.create(tenant=tenant, access_token="token")
    monkeypatch.setattr(
        "apps.calendars.services.requests.post",
        lambda *a, **k: SimpleNamespace(status_code=502, text="bad gateway", json=lambda: {}),
    )
    book_until_confirmation()
    before_confirm = _balance(ledger, tenant)

    interpreter.queue(make_intent("CONFIRM_APPOINTMENT"))
    result = orchestrator.handle_turn(tenant, "caller-1", "yes please")

    assert result.ok is False
    assert result.error == "PROVIDER_ERROR"
    assert result.data["state"] == DialogState.AWAITING_CONFIRMATION
    assert _balance(ledger, tenant) == before_confirm
    reversal = WalletTransaction.objects.get(category=TransactionCategory.TOKEN_ROLLBACK)
    assert reversal.rollback_of.idempotency_key.endswith(":4:chat-completion")
    appointment = Appointment.objects.get()
    assert appointment.status == AppointmentStatus.CANCELLED
    assert appointment.sync_state == AppointmentSyncState.FAILED


def test_calendar_success_stores_provider_id(
    orchestrator, interpreter, tenant, ledger, funded_wallet, monkeypatch, make_intent, book_until_confirmation
):
    CalendarCredential.objects.create(tenant=tenant, access_token="token")
    seen = {}

    def fake_post(url, json=None, headers=None, timeout=None):
        seen["auth"] = headers["Authorization"]
        return SimpleNamespace(status_code=200, text="", json=lambda: {"id": "evt-77"})

    monkeypatch.setattr("apps.calendars.services.requests.post", fake_post)
    book_until_confirmation()

    interpreter.queue(make_intent("CONFIRM_APPOINTMENT"))
    result = orchestrator.handle_turn(tenant, "caller-1", "confirm")

    assert result.data["state"] == DialogState.COMPLETED
    assert Appointment.objects.get().provider_appointment_id == "evt-77"
    assert seen["auth"] == "Bearer token"


def test_invalid_slot_leaves_state_untouched(
    orchestrator, interpreter, tenant, ledger, funded_wallet, make_intent
):
    interpreter.queue(
        make_intent("BOOK_APPOINTMENT", name="Ana"),
        make_intent("SET_APPOINTMENT_EMAIL", email="ana-at-example", phone="+15550100200"),
    )
    orchestrator.handle_turn(tenant, "caller-1", "Book for Ana")
    result = orchestrator.handle_turn(tenant, "caller-1", "ana-at-example, 555 010 0200")

    assert result.ok is True
    assert result.data["slots"] == {"name": "Ana"}
    assert "email" in result.message.lower()
    # the turn was still interpreted, so it is still billed
    assert _balance(ledger, tenant) == Decimal("80")


def test_three_interpreter_failures_escalate(
    orchestrator, interpreter, tenant, ledger, funded_wallet, book_until_confirmation
):
    book_until_confirmation()
    interpreter.queue(
        InterpreterFailure("llm_malformed_output", billable=True),
        InterpreterFailure("llm_timeout"),
        InterpreterFailure("llm_schema_violation", billable=True),
    )

    first = orchestrator.handle_turn(tenant, "caller-1", "???")
    second = orchestrator.handle_turn(tenant, "caller-1", "???")
    assert first.data["state"] == second.data["state"] == DialogState.AWAITING_CONFIRMATION

    third = orchestrator.handle_turn(tenant, "caller-1", "???")
    assert third.data["state"] == DialogState.ESCALATED
    ticket = Ticket.objects.get(pk=third.data["ticket_id"])
    assert ticket.priority == TicketPriority.HIGH
    assert ticket.customer_email == "ana@example.com"
    assert "???" in ticket.transcript
    # three successful turns plus two billable failures
    assert _balance(ledger, tenant) == Decimal("50")
    assert _conversation().failed_interpretations == 0


def test_successful_turn_resets_failure_count(orchestrator, interpreter, tenant, funded_wallet, make_intent):
    interpreter.queue(
        InterpreterFailure("llm_timeout"),
        InterpreterFailure("llm_timeout"),
        make_intent("GENERAL_INQUIRY", "We open at nine every weekday."),
        InterpreterFailure("llm_timeout"),
    )
    for _ in range(4):
        result = orchestrator.handle_turn(tenant, "caller-1", "hello?")

    assert result.data["state"] == DialogState.IDLE
    assert _conversation().failed_interpretations == 1


def test_insufficient_funds_aborts_turn(orchestrator, interpreter, tenant, ledger, make_intent):
    ledger.top_up(tenant.pk, Decimal("5"), "tiny")
    interpreter.queue(make_intent("BOOK_APPOINTMENT"))

    result = orchestrator.handle_turn(tenant, "caller-1", "book me in")

    assert result.ok is True
    assert "unavailable" in result.message
    assert result.data["state"] == DialogState.IDLE
    assert _conversation().last_intent == ""
    assert ConversationMessage.objects.filter(role=MessageRole.USER).count() == 1
    assert _balance(ledger, tenant) == Decimal("5")


def test_locked_wallet_is_a_hard_failure(orchestrator, interpreter, tenant, ledger, funded_wallet, make_intent):
    ledger.lock_wallet(tenant.pk)
    interpreter.queue(make_intent("BOOK_APPOINTMENT"))

    result = orchestrator.handle_turn(tenant, "caller-1", "book me in")

    assert result.ok is False
    assert result.error == "WALLET_LOCKED"
    assert result.data["state"] == DialogState.IDLE


def test_caller_escalation_and_restart(orchestrator, interpreter, tenant, funded_wallet, make_intent):
    interpreter.queue(
        make_intent("ESCALATE_CHAT"),
        make_intent("ESCALATE_CHAT"),
        make_intent("BOOK_APPOINTMENT", email="ana@example.com"),
    )
    escalated = orchestrator.handle_turn(tenant, "caller-1", "get me a person", mode="live")
    again = orchestrator.handle_turn(tenant, "caller-1", "hello??")
    rebooked = orchestrator.handle_turn(tenant, "caller-1", "ok, just book me, ana@example.com")

    assert escalated.data["state"] == DialogState.ESCALATED
    assert str(escalated.data["ticket_id"]) in again.message
    assert Ticket.objects.count() == 1
    assert rebooked.data["state"] == DialogState.COLLECTING
    assert rebooked.data["slots"] == {"email": "ana@example.com"}
    assert interpreter.calls[0]["schema"] == "live_intent"


def test_end_conversation_resets_to_idle(orchestrator, interpreter, tenant, funded_wallet, make_intent):
    interpreter.queue(make_intent("BOOK_APPOINTMENT", name="Ana"), make_intent("END_CONVERSATION"))
    orchestrator.handle_turn(tenant, "caller-1", "book for Ana")
    result = orchestrator.handle_turn(tenant, "caller-1", "never mind, bye")

    assert result.data["state"] == DialogState.IDLE
    assert result.data["slots"] == {}


def test_edit_returns_to_collecting(
    orchestrator, interpreter, tenant, funded_wallet, make_intent, book_until_confirmation
):
    book_until_confirmation()
    interpreter.queue(make_intent("EDIT_APPOINTMENT", name="Ana Maria Silva"))

    result = orchestrator.handle_turn(tenant, "caller-1", "change the name to Ana Maria Silva")

    assert result.data["state"] == DialogState.AWAITING_CONFIRMATION
    assert result.data["slots"]["name"] == "Ana Maria Silva"
    triggers = list(DialogTransition.objects.order_by("-id").values_list("trigger", flat=True)[:2])
    assert triggers == ["slots_complete", "edit"]


def test_general_inquiry_reads_knowledge_base(
    orchestrator, interpreter, tenant, ledger, funded_wallet, make_intent
):
    tenant.kb_tag = "faq"
    tenant.save()
    KnowledgeChunk.objects.create(tenant=tenant, tag="faq", chunk_index=0, content="Parking is free behind the clinic.")
    interpreter.queue(make_intent("GENERAL_INQUIRY", "Sure."))

    result = orchestrator.handle_turn(tenant, "caller-1", "Is parking free?")

    assert "Parking is free" in result.message
    assert _balance(ledger, tenant) == Decimal("89")
    assert WalletTransaction.objects.filter(category=TransactionCategory.KNOWLEDGE_BASE_READ).count() == 1


def test_failed_knowledge_base_read_is_refunded(
    orchestrator, interpreter, tenant, ledger, funded_wallet, monkeypatch, make_intent
):
    from django.db import DatabaseError

    tenant.kb_tag = "faq"
    tenant.save()

    def broken_read(*args, **kwargs):
        raise DatabaseError("replica gone")

    monkeypatch.setattr(orchestrator.kb.store, "read", broken_read)
    interpreter.queue(make_intent("GENERAL_INQUIRY", "We open at nine every weekday."))

    result = orchestrator.handle_turn(tenant, "caller-1", "When do you open?")

    assert result.message == "We open at nine every weekday."
    assert _balance(ledger, tenant) == Decimal("90")
    assert WalletTransaction.objects.filter(category=TransactionCategory.TOKEN_ROLLBACK).count() == 1


def test_booking_enquiry_reports_existing_appointment(
    orchestrator, interpreter, tenant, funded_wallet, make_intent, book_until_confirmation
):
    book_until_confirmation()
    interpreter.queue(make_intent("CONFIRM_APPOINTMENT"), make_intent("BOOKING_ENQUIRY", "Let me check."))
    orchestrator.handle_turn(tenant, "caller-1", "yes")

    result = orchestrator.handle_turn(tenant, "caller-1", "is my booking still on?")

    assert "confirmed" in result.message


def test_history_excludes_current_turn(orchestrator, interpreter, tenant, funded_wallet, make_intent):
    interpreter.queue(make_intent("GENERAL_INQUIRY", "Hello there, how can I help?"), make_intent("END_CONVERSATION"))
    orchestrator.handle_turn(tenant, "caller-1", "hi")
    orchestrator.handle_turn(tenant, "caller-1", "bye")

    second_call = interpreter.calls[1]
    assert second_call["text"] == "bye"
    assert [m["content"] for m in second_call["history"]][-2:] == ["hi", "Hello there, how can I help?"]


def test_request_payload_is_validated(orchestrator, tenant):
    result = orchestrator.handle_request(tenant, {"conversation_id": "caller-1", "mode": "sideways"})

    assert result.ok is False
    assert result.error == "INVALID_REQUEST"
    assert set(result.data) == {"text", "mode"}
    assert not Conversation.objects.exists()


def test_start_conversation_posts_welcome_once(orchestrator, tenant):
    tenant.welcome_message = "Welcome to Bright Smiles!"
    tenant.save()

    first = orchestrator.start_conversation(tenant, "caller-9", mode="live")
    orchestrator.start_conversation(tenant, "caller-9")

    assert first.message == "Welcome to Bright Smiles!"
    conversation = _conversation("caller-9")
    assert conversation.mode == "live"
    assert conversation.messages.count() == 1


def test_confirm_after_an_edit_without_changes_books(
    orchestrator, interpreter, tenant, funded_wallet, make_intent, book_until_confirmation
):
    book_until_confirmation()
    interpreter.queue(make_intent("EDIT_APPOINTMENT"), make_intent("CONFIRM_APPOINTMENT"))

    edited = orchestrator.handle_turn(tenant, "caller-1", "wait, I want to change something")
    assert edited.data["state"] == DialogState.AWAITING_CONFIRMATION
    assert "Shall I book it?" in edited.message

    result = orchestrator.handle_turn(tenant, "caller-1", "actually it's fine, book it")

    assert result.data["state"] == DialogState.COMPLETED
    assert Appointment.objects.get().status == AppointmentStatus.CONFIRMED
    triggers = list(DialogTransition.objects.order_by("-id").values_list("trigger", flat=True)[:3])
    assert triggers == ["confirmed", "slots_complete", "edit"]


def test_confirm_moves_complete_collection_to_booking(
    orchestrator, interpreter, tenant, funded_wallet, make_intent, book_until_confirmation
):
    book_until_confirmation()
    Conversation.objects.filter(external_id="caller-1").update(fsm_state=DialogState.COLLECTING)
    interpreter.queue(make_intent("CONFIRM_APPOINTMENT"))

    result = orchestrator.handle_turn(tenant, "caller-1", "yes, book it")

    assert result.data["state"] == DialogState.COMPLETED
    triggers = list(DialogTransition.objects.order_by("-id").values_list("trigger", flat=True)[:2])
    assert triggers == ["confirmed", "slots_complete"]


def test_chat_turns_are_billed_from_reported_usage(
    orchestrator, interpreter, tenant, ledger, funded_wallet, make_intent, settings
):
    settings.BILLING_DEFAULT_TOKEN_COSTS = {"prompt": "2", "cached": "1", "completion": "8"}
    settings.BILLING_DEFAULT_MARKUP_PERCENT = "0"
    interpreter.queue(
        make_intent("BOOK_APPOINTMENT", usage=TokenUsage(prompt_tokens=900, completion_tokens=100, total_tokens=1000)),
        InterpreterFailure(
            "llm_schema_violation",
            billable=True,
            usage=TokenUsage(prompt_tokens=500, completion_tokens=0, total_tokens=500),
        ),
    )

    orchestrator.handle_turn(tenant, "caller-1", "I'd like to book")
    orchestrator.handle_turn(tenant, "caller-1", "???")

    # (900 * 2 + 100 * 8) / 1000, then 500 * 2 / 1000
    assert _balance(ledger, tenant) == Decimal("96.4")
    first, second = WalletTransaction.objects.filter(category=TransactionCategory.CHAT_COMPLETION)
    assert first.quantity == Decimal("1000")
    assert first.metadata["tokens"]["completion_tokens"] == 100
    assert second.amount == Decimal("-1")


def test_long_history_is_folded_into_a_paid_summary(
    orchestrator, interpreter, tenant, ledger, funded_wallet, make_intent, settings
):
    settings.BILLING_DEFAULT_TOKEN_COSTS = {"prompt": "2", "cached": "1", "completion": "8"}
    settings.BILLING_DEFAULT_MARKUP_PERCENT = "0"
    orchestrator.summary_threshold = 4
    interpreter.queue(
        make_intent("GENERAL_INQUIRY", "We open at nine every weekday."),
        make_intent("GENERAL_INQUIRY", "We close at five in the afternoon."),
        make_intent("END_CONVERSATION"),
    )
    interpreter.summaries.append(
        ("Caller asked about opening hours.", TokenUsage(prompt_tokens=400, completion_tokens=50, total_tokens=450))
    )

    for text in ("when do you open?", "and when do you close?", "thanks, bye"):
        orchestrator.handle_turn(tenant, "caller-1", text)

    # welcome plus the first two exchanges minus the latest reply
    folded = interpreter.summarized[0]
    assert [m["content"] for m in folded][1:] == [
        "when do you open?",
        "We open at nine every weekday.",
        "and when do you close?",
    ]
    last_call = interpreter.calls[2]
    assert last_call["summaries"] == ["Caller asked about opening hours."]
    assert [m["content"] for m in last_call["history"]] == ["We close at five in the afternoon."]

    summary = ConversationSummary.objects.get()
    assert summary.message_count == 4
    charge = WalletTransaction.objects.get(idempotency_key__endswith=":3:chat-completion:summary")
    assert charge.amount == Decimal("-1.2")
    assert _balance(ledger, tenant) == Decimal("68.8")


def test_summary_is_dropped_when_it_cannot_be_paid_for(
    orchestrator, interpreter, tenant, ledger, funded_wallet, make_intent
):
    orchestrator.summary_threshold = 2
    interpreter.queue(make_intent("GENERAL_INQUIRY", "We open at nine every weekday."), make_intent("BOOK_APPOINTMENT"))
    interpreter.summaries.append(("Caller asked about opening hours.", TokenUsage()))

    orchestrator.handle_turn(tenant, "caller-1", "when do you open?")
    ledger.lock_wallet(tenant.pk)
    result = orchestrator.handle_turn(tenant, "caller-1", "book me in")

    assert result.error == "WALLET_LOCKED"
    assert len(interpreter.summarized) == 1
    assert not ConversationSummary.objects.exists()
    assert interpreter.calls[1]["summaries"] == []


def test_contended_wallet_asks_the_caller_to_retry(
    interpreter, tenant, ledger, funded_wallet, make_intent, settings, monkeypatch
):
    settings.BILLING_WALLET_LOCK_TIMEOUT_SECONDS = 0
    orchestrator = build_orchestrator(interpreter=interpreter)
    interpreter.queue(make_intent("BOOK_APPOINTMENT"))

    def held(**kwargs):
        raise OperationalError("could not obtain lock on row in relation \"wallets_wallet\"")

    monkeypatch.setattr(Wallet.objects, "select_for_update", held)
    result = orchestrator.handle_turn(tenant, "caller-1", "book me in")
    monkeypatch.undo()

    assert result.ok is True
    assert result.message == BUSY_MESSAGE
    assert result.data["retry"] is True
    assert result.data["state"] == DialogState.IDLE
    assert _balance(ledger, tenant) == Decimal("100")
