"""Charge-before-work helper shared by every metered call site."""

from __future__ import annotations

import logging
from typing import Callable, TypeVar

from apps.events.messages import Topic, UsageChargeEvent, UsageRollbackEvent
from apps.wallets.ledger import AlreadyRolledBack, LedgerReceipt

logger = logging.getLogger(__name__)

T = TypeVar("T")


def rollback_charge(bus, tenant_id: int, idempotency_key: str, reason: str) -> LedgerReceipt | None:
    """Reverse a charge; one that is already reversed is left alone."""
    try:
        return bus.request(
            Topic.USAGE_ROLLBACK,
            UsageRollbackEvent(tenant_id=tenant_id, idempotency_key=idempotency_key, reason=reason),
        )
    except AlreadyRolledBack:
        logger.info(
            "metering.rollback_skipped",
            extra={"idempotency_key": idempotency_key, "reason": reason},
        )
        return None


def metered(bus, charge: UsageChargeEvent, work: Callable[[], T], *, reason: str) -> T:
    """Charge first, run ``work``, and roll the charge back if the work raises.

    Ledger errors from the charge propagate before any work is attempted.
    """
    bus.request(Topic.USAGE_CHARGE, charge)
    try:
        return work()
    except Exception:
        rollback_charge(bus, charge.tenant_id, charge.idempotency_key, reason)
        raise
