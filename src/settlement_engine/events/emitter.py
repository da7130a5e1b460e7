"""In-process publication of settlement events.

The engine and the reconciler call ``emit_all`` once their transaction has
committed. Subscribers (contract completion, notifications, audit sinks) must
not be able to undo or block a settlement, so a subscriber that raises is
logged and skipped.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, TypeVar

from settlement_engine.events.types import DomainEvent, EventCategory

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=DomainEvent)

EventHandler = Callable[[DomainEvent], None]


@dataclass(frozen=True)
class Subscription:
    handler: EventHandler
    event_types: frozenset[str] = frozenset()
    categories: frozenset[EventCategory] = frozenset()

    def matches(self, event: DomainEvent) -> bool:
        # Empty filter means "everything"
        if self.event_types and event.event_type not in self.event_types:
            return False
        return not self.categories or event.category in self.categories


def _as_list(value):
    return list(value) if isinstance(value, (list, tuple, set, frozenset)) else [value]


class EventEmitter:
    """Fan settlement events out to subscribers, synchronously and in order.

    Example:
        emitter = EventEmitter()
        emitter.on(PaymentSucceeded, complete_contract)
        emitter.on_category(EventCategory.WITHDRAWAL, notify_payee)
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()

    def on(self, event_type: type[E] | list[type[E]], handler: EventHandler) -> None:
        names = frozenset(cls.__name__ for cls in _as_list(event_type))
        self._subscribe(Subscription(handler, event_types=names))

    def on_category(
        self, category: EventCategory | list[EventCategory], handler: EventHandler
    ) -> None:
        self._subscribe(Subscription(handler, categories=frozenset(_as_list(category))))

    def on_all(self, handler: EventHandler) -> None:
        self._subscribe(Subscription(handler))

    def off(self, handler: EventHandler) -> None:
        """Drop every subscription of ``handler``."""
        with self._lock:
            self._subscriptions = [s for s in self._subscriptions if s.handler is not handler]

    def emit(self, event: DomainEvent) -> list[Exception]:
        """Deliver one event; return what the failing subscribers raised."""
        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(event)]

        failures: list[Exception] = []
        for subscription in targets:
            try:
                subscription.handler(event)
            except Exception as exc:
                logger.exception(
                    "Subscriber %r failed on %s %s",
                    subscription.handler,
                    event.event_type,
                    event.metadata.event_id,
                )
                failures.append(exc)
        return failures

    def emit_all(self, events: Iterable[DomainEvent]) -> list[Exception]:
        failures: list[Exception] = []
        for event in events:
            failures += self.emit(event)
        return failures

    def _subscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.append(subscription)


class EventCollector:
    """Subscriber that records events, for tests and CLI inspection."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    def __call__(self, event: DomainEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: type[E]) -> list[E]:
        return [e for e in self.events if isinstance(e, event_type)]
