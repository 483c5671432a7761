"""Process-start assembly of the dialog stack.

Every collaborator is constructed here exactly once and handed to the pieces
that need it; nothing is looked up from module globals at call time.
"""

from __future__ import annotations

from apps.appointments.workflow import AppointmentWorkflow
from apps.calendars.services import CalendarService
from apps.dialog.orchestrator import DialogOrchestrator
from apps.events.bus import EventBus
from apps.kb.services import KnowledgeBaseService, KnowledgeBaseStore
from apps.llm.interpreter import IntentInterpreter
from apps.notifications.services import NotificationSink
from apps.speech.services import SpeechToTextService
from apps.wallets.ledger import UsageLedger
from apps.wallets.rates import RateProvider


def build_orchestrator(
    *,
    interpreter: IntentInterpreter | None = None,
    calendar: CalendarService | None = None,
    kb_store: KnowledgeBaseStore | None = None,
    rates: RateProvider | None = None,
) -> DialogOrchestrator:
    bus = EventBus()
    ledger = UsageLedger(rates=rates or RateProvider(), publisher=bus)
    workflow = AppointmentWorkflow(publisher=bus, calendar=calendar or CalendarService())
    for component in (ledger, workflow, NotificationSink()):
        bus.register(component)

    return DialogOrchestrator(
        bus=bus,
        interpreter=interpreter or IntentInterpreter(),
        kb=KnowledgeBaseService(bus, kb_store or KnowledgeBaseStore()),
        speech=SpeechToTextService(bus),
    )
