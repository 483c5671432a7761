"""Utility helpers shared across apps."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class ServiceResult:
    """Lightweight service outcome container."""

    ok: bool = True
    message: str | None = None
    data: dict | None = None
    error: str | None = None
