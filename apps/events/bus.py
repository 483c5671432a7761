"""In-process message bus with statically declared bindings.

Components expose ``subscriptions()`` returning the ``Binding`` objects they
serve; the bus is assembled once at process start and never mutated by the
handlers themselves. Two delivery modes exist:

* ``request`` is synchronous, has exactly one handler, returns its result and
  lets its exceptions propagate. The billing path and appointment commits use it.
* ``publish`` fans out to every handler after the surrounding database
  transaction commits. Handler failures are logged and do not reach the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, Iterable

from django.db import transaction

from apps.events.messages import TOPIC_MESSAGE_TYPES, Topic

logger = logging.getLogger(__name__)


class Delivery(str, Enum):
    SYNC = "sync"
    AFTER_COMMIT = "after_commit"


@dataclass(frozen=True, slots=True)
class Binding:
    topic: Topic
    handler: Callable[[Any], Any]
    delivery: Delivery = Delivery.SYNC

    @property
    def handler_name(self) -> str:
        return getattr(self.handler, "__qualname__", repr(self.handler))


class EventBusError(RuntimeError):
    """Raised for wiring mistakes: missing or conflicting handlers."""


class EventBus:
    def __init__(self) -> None:
        self._bindings: Dict[Topic, list[Binding]] = {}

    def register(self, component) -> None:
        self.bind_all(component.subscriptions())

    def bind_all(self, bindings: Iterable[Binding]) -> None:
        for binding in bindings:
            self.bind(binding)

    def bind(self, binding: Binding) -> None:
        existing = self._bindings.setdefault(binding.topic, [])
        modes = {b.delivery for b in existing} | {binding.delivery}
        if len(modes) > 1:
            raise EventBusError(f"Topic {binding.topic.value} mixes sync and after-commit handlers")
        if binding.delivery is Delivery.SYNC and existing:
            raise EventBusError(f"Topic {binding.topic.value} already has a synchronous handler")
        existing.append(binding)

    def request(self, topic: Topic, message):
        """Deliver to the single synchronous handler and return its result."""
        self._check_message(topic, message)
        bindings = self._bindings.get(topic, [])
        if len(bindings) != 1 or bindings[0].delivery is not Delivery.SYNC:
            raise EventBusError(f"Topic {topic.value} has no synchronous handler")
        return bindings[0].handler(message)

    def publish(self, topic: Topic, message) -> None:
        """Queue delivery to every subscriber once the current transaction commits."""
        self._check_message(topic, message)
        bindings = self._bindings.get(topic, [])
        if not bindings:
            logger.debug("event_bus.no_subscribers", extra={"topic": topic.value})
            return
        for binding in bindings:
            if binding.delivery is not Delivery.AFTER_COMMIT:
                raise EventBusError(f"Topic {topic.value} is request-only")
            transaction.on_commit(partial(self._deliver, binding, message))

    def topology(self) -> dict[str, list[str]]:
        return {
            topic.value: [binding.handler_name for binding in bindings]
            for topic, bindings in self._bindings.items()
        }

    def _deliver(self, binding: Binding, message) -> None:
        try:
            binding.handler(message)
        except Exception:
            logger.exception(
                "event_bus.delivery_failed",
                extra={"topic": binding.topic.value, "handler": binding.handler_name},
            )

    @staticmethod
    def _check_message(topic: Topic, message) -> None:
        expected = TOPIC_MESSAGE_TYPES[topic]
        if not isinstance(message, expected):
            raise TypeError(f"{topic.value} carries {expected.__name__}, got {type(message).__name__}")
