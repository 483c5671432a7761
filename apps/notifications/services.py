"""Notification sink fed by the event bus."""

from __future__ import annotations

import logging

from apps.events.bus import Binding, Delivery
from apps.events.messages import NotificationEvent, Topic
from apps.notifications.models import Notification
from apps.workers.tasks import deliver_notification

logger = logging.getLogger(__name__)


class NotificationSink:
    """Persist notifications and hand delivery to a background worker."""

    def subscriptions(self) -> tuple[Binding, ...]:
        return (Binding(Topic.NOTIFICATION, self.handle, Delivery.AFTER_COMMIT),)

    def handle(self, event: NotificationEvent) -> Notification:
        notification = Notification.objects.create(
            tenant_id=event.tenant_id,
            kind=event.kind,
            title=event.title,
            body=event.body,
            payload=event.payload,
        )
        deliver_notification.delay(notification.pk)
        logger.info(
            "notification.queued",
            extra={"notification_id": notification.pk, "kind": event.kind, "tenant_id": event.tenant_id},
        )
        return notification
