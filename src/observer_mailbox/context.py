"""Per-thread helper for the driving loop.

Typical step::

    ctx = ObserverContext(store, "thread-123", coordinator=coordinator)

    ctx.next_step()
    pending = ctx.get_pending_context()
    prompt = ctx.inject_context(messages, pending.formatted)

    response = agent.generate(prompt)

    ctx.mark_incorporated(pending.message_ids)
    snapshot = ctx.create_snapshot(messages, response)
    await ctx.dispatch(snapshot, registry)
    ctx.gc()
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Union

from .dispatch import Background, DispatchCoordinator, DispatchResult, HandlerFailure
from .errors import ConfigurationError
from .events import EventBus, emit_to
from .injection import INJECTION_TARGETS, InjectionTarget, format_messages, inject_into_prompt
from .registry import ObserverHandler
from .store import MessageStore
from .types import (
    Message,
    MessageId,
    MessageType,
    PromptMessage,
    StepNumber,
    StepResponse,
    StepSnapshot,
    ThreadId,
    ToolCall,
    ToolResult,
)


@dataclass
class InjectionConfig:
    target: InjectionTarget = "end-of-history"
    max_messages_per_turn: int = 3
    min_confidence: float = 0.6

    def __post_init__(self) -> None:
        if self.target not in INJECTION_TARGETS:
            raise ConfigurationError(f"unknown injection target {self.target!r}")
        if self.max_messages_per_turn < 0:
            raise ConfigurationError("max_messages_per_turn must be >= 0")
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ConfigurationError("min_confidence must be within [0, 1]")


@dataclass
class PendingContext:
    messages: List[Message] = field(default_factory=list)
    formatted: str = ""
    message_ids: List[MessageId] = field(default_factory=list)


class ObserverContext:
    """Binds a store, a thread id and a step counter together."""

    def __init__(
        self,
        store: MessageStore,
        thread_id: ThreadId,
        *,
        initial_step: StepNumber = 0,
        auto_increment_step: bool = False,
        injection: Optional[InjectionConfig] = None,
        coordinator: Optional[DispatchCoordinator] = None,
        clock: Callable[[], float] = time.time,
        events: Optional[EventBus] = None,
    ) -> None:
        self.store = store
        self.thread_id = thread_id
        self.auto_increment_step = auto_increment_step
        self.injection = injection or InjectionConfig()
        self.coordinator = coordinator or DispatchCoordinator(store)
        self.events = events if events is not None else store.events
        self._clock = clock
        self._step = initial_step
        self._incorporated: List[MessageId] = []

    # ---------- step management ----------
    @property
    def current_step(self) -> StepNumber:
        return self._step

    def next_step(self) -> StepNumber:
        self._step += 1
        self._incorporated = []
        return self._step

    def set_step(self, step: StepNumber) -> None:
        self._step = step
        self._incorporated = []

    def gc(self) -> int:
        return self.store.gc(self.thread_id, self._step)

    # ---------- input side ----------
    def get_pending_context(
        self,
        *,
        min_confidence: Optional[float] = None,
        max_messages: Optional[int] = None,
        categories: Optional[Iterable[MessageType]] = None,
    ) -> PendingContext:
        if self.auto_increment_step:
            self.next_step()

        messages = self.store.query(
            self.thread_id,
            status="pending",
            min_confidence=self.injection.min_confidence if min_confidence is None else min_confidence,
            limit=self.injection.max_messages_per_turn if max_messages is None else max_messages,
            categories=categories,
            at_step=self._step,
        )
        return PendingContext(
            messages=messages,
            formatted=format_messages(messages) if messages else "",
            message_ids=[m.id for m in messages],
        )

    def inject_context(
        self,
        prompt: Sequence[PromptMessage],
        formatted: str,
        target: Optional[InjectionTarget] = None,
    ) -> List[PromptMessage]:
        if not formatted:
            return list(prompt)
        return inject_into_prompt(prompt, formatted, target or self.injection.target)

    # ---------- output side ----------
    def mark_incorporated(self, message_ids: Iterable[MessageId]) -> int:
        ids = list(message_ids)
        if not ids:
            return 0
        self._incorporated.extend(i for i in ids if i not in self._incorporated)
        return self.store.mark_incorporated(ids, self._step)

    def create_snapshot(
        self,
        prompt: Sequence[PromptMessage],
        response: Union[StepResponse, Mapping[str, Any], str, None],
        *,
        working_memory: Optional[Mapping[str, Any]] = None,
        store: bool = True,
    ) -> StepSnapshot:
        """Build this step's snapshot and (by default) append it to the store's log."""
        snapshot = StepSnapshot(
            thread_id=self.thread_id,
            step_number=self._step,
            timestamp=self._clock(),
            prompt_messages=tuple(prompt),
            working_memory=working_memory or {},
            response=_as_response(response),
            incorporated_message_ids=tuple(self._incorporated),
        )
        if store:
            self.store.store_snapshot(snapshot)
        if self.events is not None:
            pending = self.store.query(self.thread_id, status="pending", at_step=self._step)
            emit_to(
                self.events, "step:completed",
                thread_id=self.thread_id, step=self._step,
                active_messages=len(pending), incorporated_messages=len(self._incorporated),
            )
        return snapshot

    async def dispatch(
        self,
        snapshot: StepSnapshot,
        handlers: Iterable[ObserverHandler],
        *,
        wait: bool = True,
    ) -> Union[DispatchResult, Background]:
        """Run registered observers; with ``wait=False`` return the background task."""
        if wait:
            return await self.coordinator.dispatch(snapshot, handlers)
        return self.coordinator.dispatch_nowait(snapshot, handlers)

    async def dispatch_to_observers(
        self,
        snapshot: StepSnapshot,
        handler: Callable[[StepSnapshot], Any],
        *,
        wait: bool = False,
    ) -> Union[Optional[HandlerFailure], Background]:
        """Hand the snapshot to one plain callable, retried per the coordinator policy.

        Fire-and-forget by default; failures then surface only through the
        coordinator's ``on_error``.
        """
        label = f"{self.thread_id}:{snapshot.step_number}"
        if wait:
            return await self.coordinator.run_with_retry(snapshot, handler, label=label)
        return self.coordinator.spawn(lambda: self.coordinator.run_with_retry(snapshot, handler, label=label))

    def dispatch_background(self, snapshot: StepSnapshot, handlers: Iterable[ObserverHandler]) -> Background:
        """Schedule dispatch from synchronous code; see :meth:`DispatchCoordinator.dispatch_nowait`."""
        return self.coordinator.dispatch_nowait(snapshot, handlers)


def _as_response(response: Union[StepResponse, Mapping[str, Any], str, None]) -> StepResponse:
    if response is None:
        return StepResponse()
    if isinstance(response, StepResponse):
        return response
    if isinstance(response, str):
        return StepResponse(text=response)
    return StepResponse(
        text=response.get("text"),
        tool_calls=tuple(
            tc if isinstance(tc, ToolCall) else ToolCall(tc["name"], tc.get("args"))
            for tc in response.get("tool_calls") or ()
        ),
        tool_results=tuple(
            tr if isinstance(tr, ToolResult) else ToolResult(tr["name"], tr.get("result"))
            for tr in response.get("tool_results") or ()
        ),
    )
