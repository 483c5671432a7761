from datetime import timedelta
from decimal import Decimal

import pytest
from django.core.cache import cache
from django.utils import timezone

from apps.dialog.wiring import build_orchestrator
from apps.llm.schemas import Intent, IntentResult, SlotParameters, TokenUsage
from apps.tenants.models import Tenant
from apps.wallets.ledger import UsageLedger
from config.celery import app as celery_app


class ScriptedInterpreter:
    """Returns queued IntentResults (or raises queued exceptions) in order."""

    def __init__(self):
        self.script = []
        self.calls = []
        self.summaries = []
        self.summarized = []

    def queue(self, *items):
        self.script.extend(items)

    def interpret(self, history, user_turn, schema, *, tenant_id=None, conversation_ref="", summaries=()):
        self.calls.append(
            {
                "history": list(history),
                "text": user_turn,
                "schema": schema.name,
                "summaries": list(summaries),
            }
        )
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def summarize(self, history, *, tenant_id=None, conversation_ref=""):
        self.summarized.append(list(history))
        item = self.summaries.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _make_intent(intent, message="", usage=None, **params):
    return IntentResult(
        intent=Intent(intent),
        parameters=SlotParameters(**params),
        message=message,
        usage=usage or TokenUsage(),
    )


def _future_date(days=7):
    return (timezone.now() + timedelta(days=days)).date().isoformat()


@pytest.fixture(autouse=True)
def _isolated_runtime(settings):
    cache.clear()
    # History folding only runs where a test lowers the threshold.
    settings.DIALOG_SUMMARY_THRESHOLD = 1000
    celery_app.conf.task_always_eager = True
    # The namespaced Django setting shadows the app-level value above.
    settings.CELERY_TASK_ALWAYS_EAGER = True
    yield
    cache.clear()


@pytest.fixture
def make_intent():
    return _make_intent


@pytest.fixture
def future_date():
    return _future_date


@pytest.fixture
def tenant(db):
    return Tenant.objects.create(name="Bright Smiles", slug="bright-smiles", timezone="UTC")


@pytest.fixture
def ledger():
    return UsageLedger()


@pytest.fixture
def funded_wallet(tenant, ledger):
    ledger.top_up(tenant.pk, Decimal("100"), "seed-topup")
    return ledger.get_or_create_wallet(tenant.pk)


@pytest.fixture
def interpreter():
    return ScriptedInterpreter()


@pytest.fixture
def orchestrator(interpreter):
    return build_orchestrator(interpreter=interpreter)
