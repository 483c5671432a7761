import json
from types import SimpleNamespace

import pytest
import requests

from apps.llm.interpreter import IntentInterpreter, InterpreterFailure
from apps.llm.models import LLMRequestLog
from apps.llm.schemas import LIVE_SCHEMA, TRAINING_SCHEMA, Intent, schema_for_mode

pytestmark = pytest.mark.django_db


def _completion(content, status_code=200):
    payload = {
        "id": "cmpl-1",
        "choices": [{"message": {"content": content}}],
        "usage": {"prompt_tokens": 120, "completion_tokens": 30, "total_tokens": 150},
    }
    return SimpleNamespace(status_code=status_code, text="", json=lambda: payload)


@pytest.fixture(autouse=True)
def _api_key(settings):
    settings.LLM_API_KEY = "test-key"


def test_structured_output_is_parsed(monkeypatch):
    called = {}

    def fake_post(url, json=None, headers=None, timeout=None):
        called["url"] = url
        called["payload"] = json
        return _completion(
            '{"intent": "SET_APPOINTMENT_EMAIL", "parameters": {"email": "ana@example.com", '
            '"name": null, "phone": null, "date": null, "time": null}, "message": "Thanks!"}'
        )

    monkeypatch.setattr("apps.llm.interpreter.requests.post", fake_post)

    result = IntentInterpreter().interpret(
        [{"role": "assistant", "content": "Hi!"}], "ana@example.com please", TRAINING_SCHEMA
    )

    assert result.intent is Intent.SET_APPOINTMENT_EMAIL
    assert result.parameters.provided() == {"email": "ana@example.com"}
    assert result.usage.total_tokens == 150
    assert called["url"].endswith("/v1/chat/completions")
    schema = called["payload"]["response_format"]["json_schema"]
    assert schema["strict"] is True
    assert schema["schema"]["additionalProperties"] is False
    assert [m["role"] for m in called["payload"]["messages"]] == ["system", "assistant", "user"]
    log = LLMRequestLog.objects.get()
    assert log.success and log.prompt_tokens == 120


def test_unknown_keys_fail_validation_and_are_billable(monkeypatch):
    content = json.dumps(
        {"intent": "GENERAL_INQUIRY", "parameters": None, "message": "ok", "confidence": 0.4}
    )
    monkeypatch.setattr("apps.llm.interpreter.requests.post", lambda *a, **k: _completion(content))

    with pytest.raises(InterpreterFailure) as excinfo:
        IntentInterpreter().interpret([], "hello", TRAINING_SCHEMA)

    assert excinfo.value.code == "llm_schema_violation"
    assert excinfo.value.billable is True
    assert LLMRequestLog.objects.get().error_code == "llm_schema_violation"


def test_intent_outside_active_schema_is_rejected(monkeypatch):
    content = json.dumps({"intent": "ESCALATE_CHAT", "parameters": None, "message": ""})
    monkeypatch.setattr("apps.llm.interpreter.requests.post", lambda *a, **k: _completion(content))

    with pytest.raises(InterpreterFailure):
        IntentInterpreter().interpret([], "get me a human", TRAINING_SCHEMA)


def test_non_json_content_is_malformed(monkeypatch):
    monkeypatch.setattr("apps.llm.interpreter.requests.post", lambda *a, **k: _completion("sure thing!"))

    with pytest.raises(InterpreterFailure) as excinfo:
        IntentInterpreter().interpret([], "hello", LIVE_SCHEMA)
    assert excinfo.value.code == "llm_malformed_output"


def test_timeout_is_not_billable(monkeypatch):
    def fake_post(*args, **kwargs):
        raise requests.Timeout("slow")

    monkeypatch.setattr("apps.llm.interpreter.requests.post", fake_post)

    with pytest.raises(InterpreterFailure) as excinfo:
        IntentInterpreter().interpret([], "hello", LIVE_SCHEMA)
    assert excinfo.value.code == "llm_timeout"
    assert excinfo.value.billable is False


def test_provider_error_status(monkeypatch):
    monkeypatch.setattr(
        "apps.llm.interpreter.requests.post",
        lambda *a, **k: _completion("{}", status_code=503),
    )
    with pytest.raises(InterpreterFailure) as excinfo:
        IntentInterpreter().interpret([], "hello", LIVE_SCHEMA)
    assert excinfo.value.code == "llm_provider_error"


def test_schema_selection_by_mode():
    assert schema_for_mode("live") is LIVE_SCHEMA
    assert schema_for_mode("training") is TRAINING_SCHEMA
    assert Intent.ESCALATE_CHAT in LIVE_SCHEMA.intents
    assert Intent.SET_APPOINTMENT_PHONE in TRAINING_SCHEMA.intents
    assert Intent.SET_APPOINTMENT_PHONE not in LIVE_SCHEMA.intents


def _payload_response(payload):
    return SimpleNamespace(status_code=200, text="", json=lambda: payload)


def test_null_usage_counts_are_read_as_zero(monkeypatch):
    content = json.dumps(
        {
            "intent": "GENERAL_INQUIRY",
            "parameters": {"email": None, "name": None, "phone": None, "date": None, "time": None},
            "message": "We open at nine.",
        }
    )
    payload = {
        "id": "cmpl-2",
        "choices": [{"message": {"content": content}}],
        "usage": {"prompt_tokens": 80, "completion_tokens": None, "total_tokens": None},
    }
    monkeypatch.setattr("apps.llm.interpreter.requests.post", lambda *a, **k: _payload_response(payload))

    result = IntentInterpreter().interpret([], "when do you open?", TRAINING_SCHEMA)

    assert result.intent is Intent.GENERAL_INQUIRY
    assert (result.usage.prompt_tokens, result.usage.completion_tokens, result.usage.total_tokens) == (80, 0, 0)
    assert LLMRequestLog.objects.get().success is True


def test_cached_prompt_tokens_are_reported(monkeypatch):
    content = json.dumps({"intent": "GENERAL_INQUIRY", "parameters": None, "message": "ok", "extra": 1})
    payload = {
        "choices": [{"message": {"content": content}}],
        "usage": {
            "prompt_tokens": 1200,
            "completion_tokens": 40,
            "total_tokens": 1240,
            "prompt_tokens_details": {"cached_tokens": 1024},
        },
    }
    monkeypatch.setattr("apps.llm.interpreter.requests.post", lambda *a, **k: _payload_response(payload))

    with pytest.raises(InterpreterFailure) as excinfo:
        IntentInterpreter().interpret([], "hello", TRAINING_SCHEMA)

    # an unusable answer still carries what the provider billed for it
    assert excinfo.value.billable is True
    assert excinfo.value.usage.cached_tokens == 1024
    assert excinfo.value.usage.completion_tokens == 40


def test_summaries_are_added_to_the_system_prompt(monkeypatch):
    called = {}

    def fake_post(url, json=None, headers=None, timeout=None):
        called["payload"] = json
        return _completion(
            '{"intent": "GENERAL_INQUIRY", "parameters": {"email": null, "name": null, '
            '"phone": null, "date": null, "time": null}, "message": "Still nine."}'
        )

    monkeypatch.setattr("apps.llm.interpreter.requests.post", fake_post)

    IntentInterpreter().interpret(
        [], "and on saturdays?", LIVE_SCHEMA, summaries=["Caller asked about opening hours."]
    )

    system = called["payload"]["messages"][0]["content"]
    assert "Context (past conversation summaries):" in system
    assert "- Caller asked about opening hours." in system


def test_summarize_returns_text_and_usage(monkeypatch):
    called = {}

    def fake_post(url, json=None, headers=None, timeout=None):
        called["payload"] = json
        return _completion("  Caller wants a cleaning next week.  ")

    monkeypatch.setattr("apps.llm.interpreter.requests.post", fake_post)

    text, usage = IntentInterpreter().summarize(
        [{"id": 1, "role": "user", "content": "I need a cleaning"}], tenant_id=None
    )

    assert text == "Caller wants a cleaning next week."
    assert usage.prompt_tokens == 120
    assert "response_format" not in called["payload"]
    assert called["payload"]["messages"][-1] == {"role": "user", "content": "Please summarize the above conversation."}
    assert LLMRequestLog.objects.get().schema_name == "summary"


def test_empty_summary_is_malformed(monkeypatch):
    monkeypatch.setattr("apps.llm.interpreter.requests.post", lambda *a, **k: _completion("   "))

    with pytest.raises(InterpreterFailure) as excinfo:
        IntentInterpreter().summarize([{"role": "user", "content": "hi"}])

    assert excinfo.value.code == "llm_malformed_output"
    assert excinfo.value.billable is True
