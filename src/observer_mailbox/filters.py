"""Composable predicates for when to inject context and when to trigger observers.

Every factory returns a plain function; ``all_of``, ``any_of`` and ``not_``
combine them.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Sequence, TypeVar

from .failure import default_failure_detector
from .types import PromptMessage, StepNumber, StepResponse, StepSnapshot, ThreadId


@dataclass(frozen=True)
class InjectionFilterInput:
    messages: Sequence[PromptMessage]
    step: StepNumber
    thread_id: ThreadId


@dataclass(frozen=True)
class TriggerFilterInput:
    snapshot: StepSnapshot

    @property
    def response(self) -> StepResponse:
        return self.snapshot.response


T = TypeVar("T")
Predicate = Callable[[T], bool]
InjectionFilter = Callable[[InjectionFilterInput], bool]
TriggerFilter = Callable[[TriggerFilterInput], bool]


# -----------------------------
# Combinators
# -----------------------------
def all_of(*filters: Predicate) -> Predicate:
    def check(x) -> bool:
        return all(f(x) for f in filters)
    return check


def any_of(*filters: Predicate) -> Predicate:
    def check(x) -> bool:
        return any(f(x) for f in filters)
    return check


def not_(f: Predicate) -> Predicate:
    def check(x) -> bool:
        return not f(x)
    return check


def custom(f: Predicate) -> Predicate:
    return f


def _always(_: object) -> bool:
    return True


def _never(_: object) -> bool:
    return False


def _user_turns(messages: Sequence[PromptMessage]) -> int:
    return sum(1 for m in messages if m.get("role") == "user")


# -----------------------------
# Injection filters
# -----------------------------
class InjectionFilters:
    """Factories deciding whether pending messages go into this step's prompt."""

    all_of = staticmethod(all_of)
    any_of = staticmethod(any_of)
    not_ = staticmethod(not_)
    custom = staticmethod(custom)

    @staticmethod
    def always() -> InjectionFilter:
        return _always

    @staticmethod
    def never() -> InjectionFilter:
        return _never

    @staticmethod
    def user_input_only() -> InjectionFilter:
        """Only when the last prompt message comes from the user."""
        def check(i: InjectionFilterInput) -> bool:
            return bool(i.messages) and i.messages[-1].get("role") == "user"
        return check

    @staticmethod
    def every_n_steps(n: int) -> InjectionFilter:
        if n <= 0:
            raise ValueError("n must be positive")

        def check(i: InjectionFilterInput) -> bool:
            return i.step % n == 0
        return check

    @staticmethod
    def after_step(min_step: StepNumber) -> InjectionFilter:
        def check(i: InjectionFilterInput) -> bool:
            return i.step > min_step
        return check

    @staticmethod
    def first_n_steps(n: int) -> InjectionFilter:
        def check(i: InjectionFilterInput) -> bool:
            return i.step <= n
        return check

    @staticmethod
    def has_user_message() -> InjectionFilter:
        def check(i: InjectionFilterInput) -> bool:
            return _user_turns(i.messages) > 0
        return check

    @staticmethod
    def min_turns(count: int) -> InjectionFilter:
        def check(i: InjectionFilterInput) -> bool:
            return _user_turns(i.messages) >= count
        return check

    @staticmethod
    def conversation_contains(*keywords: str) -> InjectionFilter:
        """Case-insensitive substring match over every prompt message."""
        wanted = [k.lower() for k in keywords]

        def check(i: InjectionFilterInput) -> bool:
            text = " ".join(m.get("content", "") for m in i.messages).lower()
            return any(k in text for k in wanted)
        return check


# -----------------------------
# Trigger filters
# -----------------------------
class TriggerFilters:
    """Factories deciding whether a step snapshot reaches an observer."""

    all_of = staticmethod(all_of)
    any_of = staticmethod(any_of)
    not_ = staticmethod(not_)
    custom = staticmethod(custom)

    @staticmethod
    def every_step() -> TriggerFilter:
        return _always

    @staticmethod
    def never() -> TriggerFilter:
        return _never

    @staticmethod
    def on_tool_call() -> TriggerFilter:
        def check(t: TriggerFilterInput) -> bool:
            return len(t.response.tool_calls) > 0
        return check

    @staticmethod
    def on_tool_names(*names: str) -> TriggerFilter:
        wanted = set(names)

        def check(t: TriggerFilterInput) -> bool:
            return any(tc.name in wanted for tc in t.response.tool_calls)
        return check

    @staticmethod
    def on_tool_error() -> TriggerFilter:
        def check(t: TriggerFilterInput) -> bool:
            return any("error" in str(tr.result).lower() for tr in t.response.tool_results)
        return check

    @staticmethod
    def on_failure(detector: Optional[object] = None) -> TriggerFilter:
        d = detector or default_failure_detector()

        def check(t: TriggerFilterInput) -> bool:
            return d.detect(t.response).is_failure  # type: ignore[attr-defined]
        return check

    @staticmethod
    def contains_keywords(*keywords: str) -> TriggerFilter:
        wanted = [k.lower() for k in keywords]

        def check(t: TriggerFilterInput) -> bool:
            return any(k in (t.response.text or "").lower() for k in wanted)
        return check

    @staticmethod
    def response_longer_than(chars: int) -> TriggerFilter:
        def check(t: TriggerFilterInput) -> bool:
            return len(t.response.text or "") > chars
        return check

    @staticmethod
    def on_step(predicate: Callable[[StepNumber], bool]) -> TriggerFilter:
        def check(t: TriggerFilterInput) -> bool:
            return bool(predicate(t.snapshot.step_number))
        return check


def as_snapshot_filter(f: TriggerFilter) -> Callable[[StepSnapshot], bool]:
    """Adapt a trigger filter to the ``ObserverHandler.filter`` signature."""
    def check(snapshot: StepSnapshot) -> bool:
        return f(TriggerFilterInput(snapshot))
    return check
