"""Calendar provider integration helpers."""

from __future__ import annotations

import logging
from typing import Any, Dict

import requests
from django.conf import settings
from django.utils import timezone

from apps.appointments.models import Appointment
from apps.calendars.models import CalendarCredential

logger = logging.getLogger(__name__)


class CalendarServiceError(RuntimeError):
    """Raised when the calendar provider rejects or cannot be reached."""


class CalendarService:
    """Wrapper around a Google-Calendar-compatible events API."""

    def __init__(self) -> None:
        self.api_base = getattr(
            settings, "CALENDAR_API_BASE", "https://www.googleapis.com/calendar/v3"
        ).rstrip("/")
        self.timeout = getattr(settings, "CALENDAR_TIMEOUT_SECONDS", 15)

    def create_event(self, appointment: Appointment, credential: CalendarCredential) -> str:
        """Create the provider event and return its id."""
        headers = {
            "Authorization": f"Bearer {credential.get_access_token()}",
            "Content-Type": "application/json",
        }
        try:
            response = requests.post(
                f"{self.api_base}/calendars/{credential.calendar_id}/events",
                json=self._appointment_to_payload(appointment),
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            self._record_error(credential, str(exc))
            raise CalendarServiceError(f"calendar_unreachable: {exc}") from exc
        if response.status_code >= 400:
            self._record_error(credential, response.text)
            raise CalendarServiceError(response.text)

        event_id = response.json().get("id")
        if not event_id:
            self._record_error(credential, "missing event id")
            raise CalendarServiceError("Calendar provider returned no event id")
        if credential.last_error:
            credential.last_error = ""
            credential.last_error_at = None
            credential.save(update_fields=["last_error", "last_error_at", "updated_at"])
        return event_id

    def _record_error(self, credential: CalendarCredential, message: str) -> None:
        logger.warning(
            "calendar.create_failed",
            extra={"tenant_id": credential.tenant_id, "error": message[:500]},
        )
        credential.last_error = message
        credential.last_error_at = timezone.now()
        credential.save(update_fields=["last_error", "last_error_at", "updated_at"])

    def _appointment_to_payload(self, appointment: Appointment) -> Dict[str, Any]:
        tz_name = appointment.tenant.timezone
        return {
            "summary": f"Appointment with {appointment.customer_name}",
            "description": f"Phone: {appointment.customer_phone}",
            "start": {"dateTime": appointment.scheduled_for.isoformat(), "timeZone": tz_name},
            "end": {"dateTime": appointment.ends_at.isoformat(), "timeZone": tz_name},
            "attendees": [{"email": appointment.customer_email}],
        }
