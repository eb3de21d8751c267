"""In-process event bus for mailbox observability, plus a metrics collector.

The store, retention engine, dispatcher and context each take an optional
``events`` bus and publish to it at their decision points (send, dedup,
eviction, gc, retries, failures). Nothing is published when no bus is
given, and there is no shared default bus.

Example::

    bus = EventBus()
    metrics = MetricsCollector(bus)
    store = MessageStore(events=bus)
    ...
    metrics.metrics().messages_sent
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Tuple, get_args

from .errors import ConfigurationError
from .types import ThreadId

logger = logging.getLogger(__name__)

EventType = Literal[
    "message:sent",
    "message:read",
    "message:expired",
    "message:deduped",
    "message:evicted",
    "observer:triggered",
    "observer:completed",
    "observer:retry",
    "observer:failed",
    "retention:applied",
    "step:completed",
]
EVENT_TYPES: Tuple[str, ...] = get_args(EventType)
WILDCARD = "*"


@dataclass(frozen=True)
class MailboxEvent:
    """One published event; ``data`` carries the type-specific fields."""
    type: EventType
    timestamp: float
    thread_id: Optional[ThreadId] = None
    data: Mapping[str, Any] = field(default_factory=dict)

    def __getitem__(self, key: str) -> Any:
        return self.data[key]


EventHandler = Callable[[MailboxEvent], Any]
Unsubscribe = Callable[[], bool]


# -----------------------------
# Bus
# -----------------------------
class EventBus:
    """
    Synchronous publish/subscribe keyed by event type.

    - ``on("*", fn)`` subscribes to every type
    - handler errors are logged and swallowed unless ``catch_handler_errors``
      is False, in which case they propagate to the publisher
    """

    def __init__(
        self,
        *,
        max_handlers: int = 100,
        catch_handler_errors: bool = True,
        clock: Callable[[], float] = time.time,
        log: Optional[logging.Logger] = None,
    ) -> None:
        if max_handlers <= 0:
            raise ConfigurationError("max_handlers must be > 0")
        self.max_handlers = max_handlers
        self.catch_handler_errors = catch_handler_errors
        self._clock = clock
        self._log = log or logger
        self._handlers: Dict[str, List[EventHandler]] = {}

    def on(self, event_type: str, handler: EventHandler) -> Unsubscribe:
        """Subscribe ``handler``; return a callable that unsubscribes it."""
        if event_type != WILDCARD and event_type not in EVENT_TYPES:
            raise ConfigurationError(f"unknown event type {event_type!r}")
        handlers = self._handlers.setdefault(event_type, [])
        if len(handlers) >= self.max_handlers:
            raise ConfigurationError(f"maximum handlers for {event_type} ({self.max_handlers}) reached")
        handlers.append(handler)

        def unsubscribe() -> bool:
            if handler in handlers:
                handlers.remove(handler)
                return True
            return False

        return unsubscribe

    def once(self, event_type: str, handler: EventHandler) -> Unsubscribe:
        fired = False

        def wrapper(event: MailboxEvent) -> Any:
            nonlocal fired
            if fired:
                return None
            fired = True
            unsubscribe()
            return handler(event)

        unsubscribe = self.on(event_type, wrapper)
        return unsubscribe

    def off(self, event_type: str) -> None:
        self._handlers.pop(event_type, None)

    def clear(self) -> None:
        self._handlers.clear()

    def listener_count(self, event_type: str) -> int:
        """Handlers that would see ``event_type``; wildcard subscribers included."""
        wildcard = len(self._handlers.get(WILDCARD, ()))
        if event_type == WILDCARD:
            return wildcard
        return len(self._handlers.get(event_type, ())) + wildcard

    def event_types(self) -> List[str]:
        return [t for t, hs in self._handlers.items() if t != WILDCARD and hs]

    def emit(self, event: MailboxEvent) -> None:
        targets = list(self._handlers.get(event.type, ())) + list(self._handlers.get(WILDCARD, ()))
        for handler in targets:
            try:
                handler(event)
            except Exception:
                if not self.catch_handler_errors:
                    raise
                self._log.exception("event handler failed for %s", event.type)

    def publish(self, event_type: EventType, *, thread_id: Optional[ThreadId] = None, **data: Any) -> MailboxEvent:
        """Build an event stamped with the bus clock and emit it."""
        event = MailboxEvent(type=event_type, timestamp=self._clock(), thread_id=thread_id, data=data)
        self.emit(event)
        return event


# -----------------------------
# Metrics
# -----------------------------
@dataclass
class MailboxMetrics:
    messages_sent: int = 0
    messages_read: int = 0
    messages_expired: int = 0
    messages_deduplicated: int = 0
    messages_evicted: int = 0
    observer_triggers: int = 0
    observer_successes: int = 0
    observer_failures: int = 0
    observer_retries: int = 0
    total_observer_duration_ms: float = 0.0
    steps_completed: int = 0
    retention_culled: int = 0


class MetricsCollector:
    """Counts events published on a bus until :meth:`dispose` is called."""

    def __init__(self, bus: EventBus) -> None:
        self._metrics = MailboxMetrics()
        self._unsubscribes: List[Unsubscribe] = [
            bus.on(event_type, handler) for event_type, handler in self._handlers().items()
        ]

    def metrics(self) -> MailboxMetrics:
        """Snapshot copy of the counters."""
        return replace(self._metrics)

    def reset(self) -> None:
        self._metrics = MailboxMetrics()

    def dispose(self) -> None:
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes = []

    def _handlers(self) -> Dict[str, EventHandler]:
        return {
            "message:sent": lambda e: self._bump("messages_sent"),
            "message:read": lambda e: self._bump("messages_read", len(e["message_ids"])),
            "message:expired": lambda e: self._bump("messages_expired", len(e["message_ids"])),
            "message:deduped": lambda e: self._bump("messages_deduplicated"),
            "message:evicted": lambda e: self._bump("messages_evicted"),
            "observer:triggered": lambda e: self._bump("observer_triggers"),
            "observer:completed": self._on_completed,
            "observer:retry": lambda e: self._bump("observer_retries"),
            "observer:failed": lambda e: self._bump("observer_failures"),
            "step:completed": lambda e: self._bump("steps_completed"),
            "retention:applied": lambda e: self._bump("retention_culled", e["culled_count"]),
        }

    def _on_completed(self, event: MailboxEvent) -> None:
        self._bump("observer_successes")
        self._metrics.total_observer_duration_ms += event["duration_ms"]

    def _bump(self, name: str, by: int = 1) -> None:
        setattr(self._metrics, name, getattr(self._metrics, name) + by)


def emit_to(bus: Optional[EventBus], event_type: EventType, **kwargs: Any) -> None:
    """Publish on ``bus`` when one is configured."""
    if bus is not None:
        bus.publish(event_type, **kwargs)
