"""Per-conversation FIFO serialization of dialog turns."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Hashable, Iterator

from django.conf import settings
from django.core.cache import cache

logger = logging.getLogger(__name__)


class TurnLockTimeout(RuntimeError):
    """A turn waited longer than allowed for its conversation."""


@dataclass
class _TicketQueue:
    next_ticket: int = 0
    serving: int = 0
    abandoned: set = field(default_factory=set)


def _lease_key(key: Hashable) -> str:
    return f"dialog-turn:{key}"


class ConversationTurnLock:
    """Ticket lock: turns for one key run one at a time in arrival order.

    Within a process, turns queue on a ticket so they run in arrival order.
    The ticket holder then takes a lease in the shared cache, which keeps
    turns in other worker processes out while it runs. Leases expire after
    ``lease_seconds`` so a crashed worker cannot wedge a conversation.

    Different keys never block each other beyond the short critical sections
    guarded by the shared condition. A waiter that times out gives up its
    ticket so later turns are not stuck behind it.
    """

    def __init__(self, lease_seconds: int | None = None, poll_interval: float = 0.05) -> None:
        if lease_seconds is None:
            lease_seconds = getattr(settings, "DIALOG_TURN_LEASE_SECONDS", 120)
        self.lease_seconds = lease_seconds
        self.poll_interval = poll_interval
        self._condition = threading.Condition()
        self._queues: Dict[Hashable, _TicketQueue] = {}

    @contextmanager
    def hold(self, key: Hashable, timeout: float) -> Iterator[int]:
        deadline = time.monotonic() + timeout
        with self._condition:
            queue = self._queues.setdefault(key, _TicketQueue())
            ticket = queue.next_ticket
            queue.next_ticket += 1
            while queue.serving != ticket:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    queue.abandoned.add(ticket)
                    raise TurnLockTimeout(f"Conversation {key} is busy")
                self._condition.wait(remaining)
        try:
            token = self._acquire_lease(key, deadline)
        except TurnLockTimeout:
            self._advance(key, queue)
            raise
        try:
            yield ticket
        finally:
            self._release_lease(key, token)
            self._advance(key, queue)

    def pending(self, key: Hashable) -> int:
        """Turns holding or waiting for ``key`` in this process, abandoned tickets excluded."""
        with self._condition:
            queue = self._queues.get(key)
            if queue is None:
                return 0
            return queue.next_ticket - queue.serving - len(queue.abandoned)

    def _acquire_lease(self, key: Hashable, deadline: float) -> str:
        token = uuid.uuid4().hex
        while not cache.add(_lease_key(key), token, self.lease_seconds):
            if time.monotonic() >= deadline:
                logger.info("dialog.turn_lease_busy", extra={"key": str(key)})
                raise TurnLockTimeout(f"Conversation {key} is busy in another worker")
            time.sleep(self.poll_interval)
        return token

    def _release_lease(self, key: Hashable, token: str) -> None:
        # Only the owner deletes; an expired lease may already belong to someone else.
        if cache.get(_lease_key(key)) == token:
            cache.delete(_lease_key(key))

    def _advance(self, key: Hashable, queue: _TicketQueue) -> None:
        with self._condition:
            queue.serving += 1
            while queue.serving in queue.abandoned:
                queue.abandoned.discard(queue.serving)
                queue.serving += 1
            if queue.serving == queue.next_ticket:
                del self._queues[key]
            self._condition.notify_all()
