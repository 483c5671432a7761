"""Django settings for the agent orchestration and metering backend."""

from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: bool = False) -> bool:
    return os.environ.get(name, str(default)).lower() in {"1", "true", "yes"}


SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "insecure-dev-key")
DEBUG = _env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost").split(",")

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "apps.tenants",
    "apps.wallets",
    "apps.conversations",
    "apps.dialog",
    "apps.llm",
    "apps.appointments",
    "apps.calendars",
    "apps.tickets",
    "apps.kb",
    "apps.notifications",
    "apps.workers",
]

DATABASES = {
    "default": {
        "ENGINE": os.environ.get("DB_ENGINE", "django.db.backends.sqlite3"),
        "NAME": os.environ.get("DB_NAME", str(BASE_DIR / "db.sqlite3")),
        "USER": os.environ.get("DB_USER", ""),
        "PASSWORD": os.environ.get("DB_PASSWORD", ""),
        "HOST": os.environ.get("DB_HOST", ""),
        "PORT": os.environ.get("DB_PORT", ""),
    }
}

CACHES = {
    "default": {
        "BACKEND": os.environ.get(
            "CACHE_BACKEND", "django.core.cache.backends.locmem.LocMemCache"
        ),
        "LOCATION": os.environ.get("CACHE_LOCATION", "agent-metering"),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"

ENCRYPTION_KEY = os.environ.get("ENCRYPTION_KEY", SECRET_KEY)

# LLM structured completion provider
LLM_API_BASE = os.environ.get("LLM_API_BASE", "https://api.openai.com")
LLM_API_KEY = os.environ.get("LLM_API_KEY", "")
LLM_DEFAULT_MODEL = os.environ.get("LLM_DEFAULT_MODEL", "gpt-4o-mini")
LLM_TIMEOUT_SECONDS = int(os.environ.get("LLM_TIMEOUT_SECONDS", 15))

# Speech-to-text provider
SPEECH_API_BASE = os.environ.get("SPEECH_API_BASE", "https://api.openai.com")
SPEECH_API_KEY = os.environ.get("SPEECH_API_KEY", "")
SPEECH_MODEL = os.environ.get("SPEECH_MODEL", "whisper-1")
SPEECH_TIMEOUT_SECONDS = int(os.environ.get("SPEECH_TIMEOUT_SECONDS", 30))
SPEECH_BILL_PER_ATTEMPT = _env_bool("SPEECH_BILL_PER_ATTEMPT", False)
SPEECH_ALLOWED_MIME_TYPES = (
    "audio/webm",
    "audio/mpeg",
    "audio/mp3",
    "audio/wav",
    "audio/ogg",
    "audio/mp4",
)

# Calendar/booking provider
CALENDAR_API_BASE = os.environ.get(
    "CALENDAR_API_BASE", "https://www.googleapis.com/calendar/v3"
)
CALENDAR_TIMEOUT_SECONDS = int(os.environ.get("CALENDAR_TIMEOUT_SECONDS", 15))
APPOINTMENT_DEFAULT_DURATION_MINUTES = int(
    os.environ.get("APPOINTMENT_DEFAULT_DURATION_MINUTES", 30)
)

# Dialogue orchestration
DIALOG_MAX_INTERPRETER_FAILURES = int(os.environ.get("DIALOG_MAX_INTERPRETER_FAILURES", 3))
DIALOG_TURN_LOCK_TIMEOUT_SECONDS = float(
    os.environ.get("DIALOG_TURN_LOCK_TIMEOUT_SECONDS", 30)
)
DIALOG_HISTORY_WINDOW = int(os.environ.get("DIALOG_HISTORY_WINDOW", 20))
# Unsummarized messages that trigger folding the oldest of them into a summary.
DIALOG_SUMMARY_THRESHOLD = int(os.environ.get("DIALOG_SUMMARY_THRESHOLD", 10))
# Cross-worker turn lease; must outlive the slowest turn.
DIALOG_TURN_LEASE_SECONDS = int(os.environ.get("DIALOG_TURN_LEASE_SECONDS", 120))
DIALOG_WELCOME_MESSAGE = os.environ.get(
    "DIALOG_WELCOME_MESSAGE", "Hi! How can I help you today?"
)

# Usage metering
BILLING_DEFAULT_UNIT_COSTS = {
    "chat-completion": "10",
    "speech-to-text": "5",
    "knowledge-base-read": "1",
    "knowledge-base-write": "2",
}
BILLING_DEFAULT_MARKUP_PERCENT = os.environ.get("BILLING_DEFAULT_MARKUP_PERCENT", "0")
BILLING_RATE_CACHE_SECONDS = int(os.environ.get("BILLING_RATE_CACHE_SECONDS", 300))
BILLING_LOW_BALANCE_THRESHOLD = os.environ.get("BILLING_LOW_BALANCE_THRESHOLD", "50")
# Chat completions that report token usage are billed per 1,000 tokens.
BILLING_DEFAULT_TOKEN_COSTS = {
    "prompt": os.environ.get("BILLING_PROMPT_TOKEN_COST", "2"),
    "cached": os.environ.get("BILLING_CACHED_TOKEN_COST", "1"),
    "completion": os.environ.get("BILLING_COMPLETION_TOKEN_COST", "8"),
}
BILLING_WALLET_LOCK_TIMEOUT_SECONDS = float(
    os.environ.get("BILLING_WALLET_LOCK_TIMEOUT_SECONDS", 5)
)

CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_TASK_ALWAYS_EAGER = _env_bool("CELERY_TASK_ALWAYS_EAGER", False)
CELERY_RECONCILE_WALLETS_SECONDS = int(os.environ.get("CELERY_RECONCILE_WALLETS_SECONDS", 900))
CELERY_BEAT_SCHEDULE = {
    "reconcile-wallet-ledgers": {
        "task": "apps.workers.tasks.reconcile_wallet_ledgers",
        "schedule": timedelta(seconds=CELERY_RECONCILE_WALLETS_SECONDS),
    },
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {"format": "[%(asctime)s] %(levelname)s in %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "default"},
    },
    "loggers": {
        "apps": {
            "handlers": ["console"],
            "level": os.environ.get("LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}
