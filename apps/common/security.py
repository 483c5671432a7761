"""Encryption helpers for provider credentials stored at rest."""

from __future__ import annotations

import base64
import hashlib
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

SEALED_PREFIX = "sealed::"


@lru_cache(maxsize=4)
def _fernet_for(secret: str) -> Fernet:
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def _get_fernet() -> Fernet:
    secret = getattr(settings, "ENCRYPTION_KEY", "")
    if not secret:
        raise ImproperlyConfigured("ENCRYPTION_KEY is required to store provider credentials")
    return _fernet_for(secret)


def is_sealed(value: Optional[str]) -> bool:
    return bool(value and value.startswith(SEALED_PREFIX))


def seal_secret(value: str) -> str:
    """Encrypt a credential unless it is empty or already sealed."""
    if not value or is_sealed(value):
        return value
    token = _get_fernet().encrypt(value.encode("utf-8")).decode("utf-8")
    return f"{SEALED_PREFIX}{token}"


def open_secret(value: Optional[str]) -> str:
    """Decrypt a sealed credential; plain values pass through."""
    if not value:
        return ""
    if not is_sealed(value):
        return value
    token = value[len(SEALED_PREFIX):]
    try:
        return _get_fernet().decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise ImproperlyConfigured("Stored credential could not be decrypted") from exc
