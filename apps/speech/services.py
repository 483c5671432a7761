"""Speech-to-text provider client with per-minute metering."""

from __future__ import annotations

import logging
import math
from decimal import Decimal

import requests
from django.conf import settings

from apps.events.messages import Topic, UsageChargeEvent
from apps.tenants.models import Tenant
from apps.wallets.metering import rollback_charge
from apps.wallets.models import UsageOperation

logger = logging.getLogger(__name__)


class TranscriptionError(RuntimeError):
    """Raised when the provider fails to return a transcript."""


class UnsupportedAudioType(TranscriptionError):
    """Raised before any provider call for audio we do not accept."""


def billable_minutes(duration_seconds: float) -> Decimal:
    return Decimal(max(1, math.ceil(duration_seconds / 60)))


class SpeechToTextService:
    def __init__(self, bus) -> None:
        self.bus = bus
        self.api_key = getattr(settings, "SPEECH_API_KEY", "")
        self.api_base = getattr(settings, "SPEECH_API_BASE", "https://api.openai.com").rstrip("/")
        self.model = getattr(settings, "SPEECH_MODEL", "whisper-1")
        self.timeout = getattr(settings, "SPEECH_TIMEOUT_SECONDS", 30)
        self.allowed_mime_types = tuple(getattr(settings, "SPEECH_ALLOWED_MIME_TYPES", ()))
        self.bill_per_attempt = getattr(settings, "SPEECH_BILL_PER_ATTEMPT", False)

    def transcribe(
        self,
        tenant: Tenant,
        audio: bytes,
        mime_type: str,
        duration_seconds: float,
        idempotency_key: str,
    ) -> str:
        """Return the transcript of ``audio``.

        By default only a successful transcription is charged. With
        ``SPEECH_BILL_PER_ATTEMPT`` the charge is taken before the call and
        kept even when the provider fails, mirroring providers that bill
        every attempt.
        """
        mime_type = (mime_type or "").split(";")[0].strip().lower()
        if mime_type not in self.allowed_mime_types:
            raise UnsupportedAudioType(f"Unsupported audio type: {mime_type or 'unknown'}")

        charge = UsageChargeEvent(
            tenant_id=tenant.pk,
            operation=UsageOperation.SPEECH_TO_TEXT.value,
            quantity=billable_minutes(duration_seconds),
            idempotency_key=idempotency_key,
        )
        if self.bill_per_attempt:
            self.bus.request(Topic.USAGE_CHARGE, charge)
            return self._call_provider(audio, mime_type)

        text = self._call_provider(audio, mime_type)
        self.bus.request(Topic.USAGE_CHARGE, charge)
        return text

    def refund(self, tenant: Tenant, idempotency_key: str, reason: str) -> None:
        """Reverse a transcription charge, e.g. after a dispute."""
        rollback_charge(self.bus, tenant.pk, idempotency_key, reason)

    def _call_provider(self, audio: bytes, mime_type: str) -> str:
        if not self.api_key:
            raise TranscriptionError("speech_not_configured")
        extension = mime_type.split("/")[-1]
        try:
            response = requests.post(
                f"{self.api_base}/v1/audio/transcriptions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                data={"model": self.model},
                files={"file": (f"audio.{extension}", audio, mime_type)},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TranscriptionError("speech_unreachable") from exc
        if response.status_code >= 400:
            logger.error(
                "speech.provider_error",
                extra={"status_code": response.status_code, "body": response.text[:500]},
            )
            raise TranscriptionError("speech_provider_error")
        try:
            text = response.json()["text"]
        except (ValueError, KeyError, TypeError) as exc:
            raise TranscriptionError("speech_malformed_output") from exc
        return text.strip()
