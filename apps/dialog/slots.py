"""Validation and accumulation of appointment slots."""

from __future__ import annotations

import re
from datetime import date, datetime, time
from zoneinfo import ZoneInfo

from django.core.exceptions import ValidationError
from django.core.validators import validate_email
from django.utils import timezone

from apps.llm.schemas import SLOT_NAMES

PHONE_CLEANER = re.compile(r"[^\d+]")
MIN_PHONE_DIGITS = 7


class InvalidSlotValue(ValueError):
    """One or more supplied slot values were rejected."""

    def __init__(self, errors: dict[str, str]) -> None:
        super().__init__("; ".join(f"{slot}: {msg}" for slot, msg in errors.items()))
        self.errors = errors


def normalize_phone_number(raw: str) -> str:
    """Normalize phone numbers to E.164-ish format without whitespace."""
    if not raw:
        return ""
    cleaned = PHONE_CLEANER.sub("", raw)
    if cleaned.startswith("00"):
        cleaned = "+" + cleaned[2:]
    if not cleaned.startswith("+"):
        cleaned = "+" + cleaned.lstrip("0")
    return cleaned


def _parse_date(value: str) -> date:
    return datetime.strptime(value, "%Y-%m-%d").date()


def _parse_time(value: str) -> time:
    return datetime.strptime(value, "%H:%M").time()


def scheduled_for(slots: dict[str, str], tz_name: str) -> datetime:
    """Aware datetime for the date/time slots in the tenant's timezone."""
    naive = datetime.combine(_parse_date(slots["date"]), _parse_time(slots["time"]))
    return naive.replace(tzinfo=ZoneInfo(tz_name or "UTC"))


def is_complete(slots: dict[str, str]) -> bool:
    return all(slots.get(slot) for slot in SLOT_NAMES)


def merge_slots(
    collected: dict[str, str],
    provided: dict[str, str],
    tz_name: str = "UTC",
    now: datetime | None = None,
) -> dict[str, str]:
    """Return ``collected`` updated with ``provided``; all values or none.

    Values are normalized before they are stored. Any invalid value raises
    ``InvalidSlotValue`` and the caller keeps its previous slot set.
    """
    errors: dict[str, str] = {}
    cleaned: dict[str, str] = {}

    if "email" in provided:
        try:
            validate_email(provided["email"])
            cleaned["email"] = provided["email"].lower()
        except ValidationError:
            errors["email"] = "That email address doesn't look valid."
    if "name" in provided:
        name = " ".join(provided["name"].split())
        if name:
            cleaned["name"] = name
        else:
            errors["name"] = "Please tell me the name for the booking."
    if "phone" in provided:
        phone = normalize_phone_number(provided["phone"])
        if sum(ch.isdigit() for ch in phone) >= MIN_PHONE_DIGITS:
            cleaned["phone"] = phone
        else:
            errors["phone"] = "That phone number looks too short."
    if "date" in provided:
        try:
            cleaned["date"] = _parse_date(provided["date"]).isoformat()
        except ValueError:
            errors["date"] = "Please give the date as YYYY-MM-DD."
    if "time" in provided:
        try:
            cleaned["time"] = _parse_time(provided["time"]).strftime("%H:%M")
        except ValueError:
            errors["time"] = "Please give the time as HH:MM (24-hour)."

    merged = {**collected, **cleaned}
    now = now or timezone.now()
    touches_when = "date" in cleaned or "time" in cleaned
    if touches_when and not errors:
        if merged.get("date") and merged.get("time"):
            if scheduled_for(merged, tz_name) <= now:
                errors["date"] = "That date and time is already in the past."
        elif merged.get("date"):
            today = now.astimezone(ZoneInfo(tz_name or "UTC")).date()
            if _parse_date(merged["date"]) < today:
                errors["date"] = "That date is already in the past."

    if errors:
        raise InvalidSlotValue(errors)
    return merged
