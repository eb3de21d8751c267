"""Named, prioritized observer handlers.

Observers run highest priority first; equal priorities keep the order in
which they were registered.
"""
from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Union

from .errors import ConfigurationError, DuplicateObserverError
from .types import CandidateLike, StepSnapshot

DEFAULT_PRIORITY = 50


@dataclass
class ObserverResult:
    """What a handler hands back: messages to send, and whether to stop the chain."""
    messages: List[CandidateLike] = field(default_factory=list)
    skip_remaining: bool = False


HandleFn = Callable[[StepSnapshot], Union[Optional[ObserverResult], Awaitable[Optional[ObserverResult]]]]
SnapshotFilter = Callable[[StepSnapshot], bool]
MessagesFn = Callable[..., Union[Iterable[CandidateLike], Awaitable[Iterable[CandidateLike]], None]]


@dataclass
class ObserverHandler:
    """
    An analyzer invoked with each dispatched snapshot.

    Fields:
        id: unique key in a registry; also the default message sender.
        handle: sync or async callable returning an ObserverResult (or None).
        priority: higher runs first.
        name: human-readable label (defaults to id).
        filter: optional predicate; a False result skips the handler.
    """
    id: str
    handle: HandleFn
    priority: int = DEFAULT_PRIORITY
    name: str = ""
    filter: Optional[SnapshotFilter] = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ConfigurationError("observer id must be a non-empty string")
        if not self.name:
            self.name = self.id

    def accepts(self, snapshot: StepSnapshot) -> bool:
        return self.filter is None or bool(self.filter(snapshot))


async def resolve(value: Any) -> Any:
    """Await ``value`` if it is awaitable, else return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value


def order_handlers(handlers: Iterable[ObserverHandler]) -> List[ObserverHandler]:
    # sorted() is stable, so ties keep registration order
    return sorted(handlers, key=lambda h: -h.priority)


# -----------------------------
# Registry
# -----------------------------
class ObserverRegistry:
    """Id-keyed collection of observer handlers."""

    def __init__(self, handlers: Iterable[ObserverHandler] = ()) -> None:
        self._handlers: Dict[str, ObserverHandler] = {}
        for h in handlers:
            self.register(h)

    def register(self, handler: ObserverHandler) -> Callable[[], bool]:
        """Add ``handler``; return a callable that unregisters it."""
        if handler.id in self._handlers:
            raise DuplicateObserverError(handler.id)
        self._handlers[handler.id] = handler
        return lambda: self.unregister(handler.id)

    def unregister(self, observer_id: str) -> bool:
        return self._handlers.pop(observer_id, None) is not None

    def has(self, observer_id: str) -> bool:
        return observer_id in self._handlers

    def get(self, observer_id: str) -> Optional[ObserverHandler]:
        return self._handlers.get(observer_id)

    def ids(self) -> List[str]:
        return list(self._handlers)

    def handlers(self) -> List[ObserverHandler]:
        """All handlers, highest priority first."""
        return order_handlers(self._handlers.values())

    def clear(self) -> None:
        self._handlers.clear()

    def __len__(self) -> int:
        return len(self._handlers)

    def __iter__(self) -> Iterator[ObserverHandler]:
        return iter(self.handlers())

    def __contains__(self, observer_id: object) -> bool:
        return observer_id in self._handlers


# -----------------------------
# Helper constructors
# -----------------------------
def _wrap(fn: MessagesFn, *extra: Callable[[StepSnapshot], Any]) -> HandleFn:
    async def handle(snapshot: StepSnapshot) -> ObserverResult:
        args = [snapshot] + [x(snapshot) for x in extra]
        produced = await resolve(fn(*args))
        return ObserverResult(messages=list(produced or []))
    return handle


def simple_observer(
    observer_id: str,
    fn: MessagesFn,
    *,
    priority: int = DEFAULT_PRIORITY,
    name: str = "",
) -> ObserverHandler:
    """Observer that runs ``fn(snapshot) -> messages`` on every snapshot."""
    return ObserverHandler(id=observer_id, name=name, priority=priority, handle=_wrap(fn))


def tool_call_observer(
    observer_id: str,
    fn: MessagesFn,
    *,
    tool_names: Optional[Sequence[str]] = None,
    priority: int = DEFAULT_PRIORITY,
    name: str = "",
) -> ObserverHandler:
    """Observer that only runs when the step made tool calls (optionally named ones)."""
    wanted = set(tool_names or ())

    def has_calls(snapshot: StepSnapshot) -> bool:
        calls = snapshot.response.tool_calls
        if not calls:
            return False
        if wanted:
            return any(tc.name in wanted for tc in calls)
        return True

    return ObserverHandler(id=observer_id, name=name, priority=priority, filter=has_calls, handle=_wrap(fn))


def keyword_observer(
    observer_id: str,
    keywords: Sequence[str],
    fn: MessagesFn,
    *,
    case_sensitive: bool = False,
    priority: int = DEFAULT_PRIORITY,
    name: str = "",
) -> ObserverHandler:
    """Observer that runs ``fn(snapshot, matched_keywords)`` when the response mentions a keyword."""

    def matched(snapshot: StepSnapshot) -> List[str]:
        text = snapshot.response.text or ""
        if not case_sensitive:
            text = text.lower()
        return [k for k in keywords if (k if case_sensitive else k.lower()) in text]

    return ObserverHandler(
        id=observer_id,
        name=name,
        priority=priority,
        filter=lambda s: bool(matched(s)),
        handle=_wrap(fn, matched),
    )
