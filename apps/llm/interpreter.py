"""Structured-output intent interpreter over an OpenAI-compatible API."""

from __future__ import annotations

import json
import logging
from typing import Iterable, Sequence

import requests
from django.conf import settings
from django.utils import timezone

from apps.llm.models import LLMRequestLog
from apps.llm.schemas import Intent, IntentResult, IntentSchema, SlotParameters, TokenUsage
from apps.llm.serializers import IntentPayloadSerializer

logger = logging.getLogger(__name__)

SUMMARY_SCHEMA_NAME = "summary"
SUMMARY_INSTRUCTION = "Please summarize the above conversation."


class InterpreterFailure(RuntimeError):
    """Raised when no usable intent could be obtained for a turn.

    ``billable`` is true when the provider completed the call but its output
    was unusable; that attempt is metered as a chat completion using ``usage``.
    """

    def __init__(self, code: str, *, billable: bool = False, usage: TokenUsage | None = None) -> None:
        super().__init__(code)
        self.code = code
        self.billable = billable
        self.usage = usage or TokenUsage()


class IntentInterpreter:
    """Classify a caller turn into one intent plus optional slot values."""

    def __init__(self) -> None:
        self.api_key = getattr(settings, "LLM_API_KEY", "")
        self.api_base = getattr(settings, "LLM_API_BASE", "https://api.openai.com").rstrip("/")
        self.model = getattr(settings, "LLM_DEFAULT_MODEL", "gpt-4o-mini")
        self.timeout = getattr(settings, "LLM_TIMEOUT_SECONDS", 15)

    def interpret(
        self,
        history: Iterable[dict],
        user_turn: str,
        schema: IntentSchema,
        *,
        tenant_id: int | None = None,
        conversation_ref: str = "",
        summaries: Sequence[str] = (),
    ) -> IntentResult:
        if not self.api_key:
            raise InterpreterFailure("llm_not_configured")

        messages = [{"role": "system", "content": self._system_prompt(schema, summaries)}]
        messages.extend({"role": m["role"], "content": m["content"]} for m in history)
        messages.append({"role": "user", "content": user_turn})
        audit = {
            "tenant_id": tenant_id,
            "conversation_ref": conversation_ref,
            "model": self.model,
            "schema_name": schema.name,
            "prompt": user_turn,
        }

        start = timezone.now()
        payload = self._post(
            {
                "model": self.model,
                "messages": messages,
                "temperature": 0,
                "response_format": schema.response_format(),
            },
            audit,
            start,
        )
        usage = self._usage(payload)
        try:
            content = payload["choices"][0]["message"]["content"]
            data = json.loads(content)
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            self._log_failure(audit, start, "llm_malformed_output", usage=usage)
            raise InterpreterFailure("llm_malformed_output", billable=True, usage=usage) from exc

        serializer = IntentPayloadSerializer(data=data, intents=schema.intents)
        if not serializer.is_valid():
            logger.warning(
                "interpreter.schema_violation",
                extra={"errors": serializer.errors, "schema": schema.name},
            )
            self._log_failure(audit, start, "llm_schema_violation", content=content, usage=usage)
            raise InterpreterFailure("llm_schema_violation", billable=True, usage=usage)

        validated = serializer.validated_data
        parameters = validated.get("parameters") or {}
        result = IntentResult(
            intent=Intent(validated["intent"]),
            parameters=SlotParameters(**parameters),
            message=validated.get("message", ""),
            usage=usage,
        )
        self._log_success(audit, start, payload, content, usage)
        return result

    def summarize(
        self,
        history: Iterable[dict],
        *,
        tenant_id: int | None = None,
        conversation_ref: str = "",
    ) -> tuple[str, TokenUsage]:
        """Fold ``history`` into a short plain-text summary."""
        if not self.api_key:
            raise InterpreterFailure("llm_not_configured")

        messages = [{"role": m["role"], "content": m["content"]} for m in history]
        messages.append({"role": "user", "content": SUMMARY_INSTRUCTION})
        audit = {
            "tenant_id": tenant_id,
            "conversation_ref": conversation_ref,
            "model": self.model,
            "schema_name": SUMMARY_SCHEMA_NAME,
            "prompt": SUMMARY_INSTRUCTION,
        }

        start = timezone.now()
        payload = self._post(
            {"model": self.model, "messages": messages, "temperature": 0}, audit, start
        )
        usage = self._usage(payload)
        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            self._log_failure(audit, start, "llm_malformed_output", usage=usage)
            raise InterpreterFailure("llm_malformed_output", billable=True, usage=usage) from exc
        if not isinstance(content, str) or not content.strip():
            self._log_failure(audit, start, "llm_malformed_output", usage=usage)
            raise InterpreterFailure("llm_malformed_output", billable=True, usage=usage)

        self._log_success(audit, start, payload, content, usage)
        return content.strip(), usage

    # ------------------------------------------------------------------ helpers
    def _post(self, body: dict, audit: dict, start) -> dict:
        try:
            response = requests.post(
                f"{self.api_base}/v1/chat/completions",
                json=body,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            self._log_failure(audit, start, "llm_timeout")
            raise InterpreterFailure("llm_timeout") from exc
        except requests.RequestException as exc:
            self._log_failure(audit, start, "llm_unreachable")
            raise InterpreterFailure("llm_unreachable") from exc

        if response.status_code >= 400:
            logger.error(
                "interpreter.provider_error",
                extra={"status_code": response.status_code, "body": response.text[:500]},
            )
            self._log_failure(audit, start, "llm_provider_error")
            raise InterpreterFailure("llm_provider_error")

        try:
            payload = response.json()
        except ValueError as exc:
            self._log_failure(audit, start, "llm_malformed_output")
            raise InterpreterFailure("llm_malformed_output", billable=True) from exc
        if not isinstance(payload, dict):
            self._log_failure(audit, start, "llm_malformed_output")
            raise InterpreterFailure("llm_malformed_output", billable=True)
        return payload

    def _system_prompt(self, schema: IntentSchema, summaries: Sequence[str] = ()) -> str:
        allowed = ", ".join(i.value for i in schema.intents)
        prompt = f"{schema.instructions}\nAllowed intents: {allowed}."
        if summaries:
            context = "\n".join(f"- {summary}" for summary in summaries)
            prompt = f"{prompt}\nContext (past conversation summaries):\n{context}"
        return prompt

    @staticmethod
    def _count(value) -> int:
        # Providers send null for counts they do not track.
        try:
            return max(int(value or 0), 0)
        except (TypeError, ValueError):
            return 0

    @classmethod
    def _usage(cls, payload: dict) -> TokenUsage:
        raw = payload.get("usage")
        if not isinstance(raw, dict):
            return TokenUsage()
        details = raw.get("prompt_tokens_details")
        cached = details.get("cached_tokens") if isinstance(details, dict) else None
        return TokenUsage(
            prompt_tokens=cls._count(raw.get("prompt_tokens")),
            completion_tokens=cls._count(raw.get("completion_tokens")),
            total_tokens=cls._count(raw.get("total_tokens")),
            cached_tokens=cls._count(cached),
        )

    @staticmethod
    def _elapsed_ms(start) -> int:
        return int((timezone.now() - start).total_seconds() * 1000)

    def _log_success(self, audit: dict, start, payload: dict, content: str, usage: TokenUsage) -> None:
        LLMRequestLog.objects.create(
            **audit,
            response=content,
            response_metadata={"id": payload.get("id"), "usage": payload.get("usage")},
            latency_ms=self._elapsed_ms(start),
            success=True,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
        )

    def _log_failure(
        self,
        audit: dict,
        start,
        code: str,
        *,
        content: str = "",
        usage: TokenUsage | None = None,
    ) -> None:
        usage = usage or TokenUsage()
        LLMRequestLog.objects.create(
            **audit,
            response=content,
            latency_ms=self._elapsed_ms(start),
            success=False,
            error_code=code,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
        )
