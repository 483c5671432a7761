"""Celery tasks for notification delivery and ledger reconciliation."""

from __future__ import annotations

import logging

import requests
from celery import shared_task
from django.conf import settings
from django.utils import timezone

from apps.notifications.models import Notification, NotificationStatus
from apps.wallets.ledger import UsageLedger
from apps.wallets.models import Wallet

logger = logging.getLogger(__name__)

NOTIFICATION_MAX_ATTEMPTS = int(getattr(settings, "NOTIFICATION_MAX_ATTEMPTS", 5))
NOTIFICATION_INITIAL_DELAY = int(getattr(settings, "NOTIFICATION_INITIAL_DELAY", 30))
NOTIFICATION_MAX_DELAY = int(getattr(settings, "NOTIFICATION_MAX_DELAY", 900))
NOTIFICATION_TIMEOUT_SECONDS = int(getattr(settings, "NOTIFICATION_TIMEOUT_SECONDS", 10))


@shared_task(bind=True, max_retries=0)
def deliver_notification(self, notification_id: int) -> str:
    """Push a notification to the tenant webhook, retrying with backoff."""
    notification = (
        Notification.objects.select_related("tenant").filter(id=notification_id).first()
    )
    if notification is None:
        logger.warning("notification.missing", extra={"notification_id": notification_id})
        return "missing"
    if notification.status == NotificationStatus.DELIVERED:
        return "already_delivered"

    webhook_url = notification.tenant.notification_webhook_url
    if webhook_url:
        notification.attempts += 1
        try:
            response = requests.post(
                webhook_url,
                json={
                    "id": notification.pk,
                    "kind": notification.kind,
                    "title": notification.title,
                    "body": notification.body,
                    "payload": notification.payload,
                },
                timeout=NOTIFICATION_TIMEOUT_SECONDS,
            )
            if response.status_code >= 400:
                raise requests.HTTPError(f"webhook returned {response.status_code}")
        except requests.RequestException as exc:
            notification.last_error = str(exc)
            exhausted = notification.attempts >= NOTIFICATION_MAX_ATTEMPTS
            if exhausted:
                notification.status = NotificationStatus.FAILED
            notification.save(update_fields=["attempts", "last_error", "status", "updated_at"])
            if exhausted:
                logger.error(
                    "notification.failed",
                    extra={"notification_id": notification.pk, "attempt": notification.attempts},
                )
                return "failed"
            countdown = min(
                NOTIFICATION_INITIAL_DELAY * (2 ** (notification.attempts - 1)),
                NOTIFICATION_MAX_DELAY,
            )
            logger.warning(
                "notification.retry_backoff",
                extra={
                    "notification_id": notification.pk,
                    "attempt": notification.attempts,
                    "countdown": countdown,
                    "error": str(exc),
                },
            )
            deliver_notification.apply_async(
                args=[notification.pk],
                countdown=countdown,
                task_id=f"notification-{notification.pk}-retry-{notification.attempts}",
            )
            return "rescheduled"

    notification.status = NotificationStatus.DELIVERED
    notification.delivered_at = timezone.now()
    notification.last_error = ""
    notification.save(
        update_fields=["status", "attempts", "delivered_at", "last_error", "updated_at"]
    )
    logger.info("notification.delivered", extra={"notification_id": notification.pk})
    return "delivered"


@shared_task
def reconcile_wallet_ledgers() -> int:
    """Compare cached balances with their ledgers and lock any that disagree."""
    ledger = UsageLedger()
    mismatched = 0
    for tenant_id in Wallet.objects.filter(is_locked=False).values_list("tenant_id", flat=True):
        report = ledger.reconcile(tenant_id)
        if report.consistent:
            continue
        ledger.lock_wallet(tenant_id, reason="ledger_mismatch")
        mismatched += 1
    if mismatched:
        logger.error("ledger.reconcile_sweep", extra={"locked_wallets": mismatched})
    return mismatched
