from __future__ import annotations

import asyncio

import pytest

from observer_mailbox.dispatch import DispatchCoordinator
from observer_mailbox.errors import ConfigurationError, DuplicateObserverError
from observer_mailbox.registry import (
    ObserverHandler,
    ObserverRegistry,
    keyword_observer,
    simple_observer,
    tool_call_observer,
)
from observer_mailbox.types import StepResponse, ToolCall


def noop(snapshot):
    return None


def test_register_and_lookup():
    registry = ObserverRegistry()
    registry.register(ObserverHandler("a", noop, priority=1))
    registry.register(ObserverHandler("b", noop, priority=9))

    assert len(registry) == 2
    assert "a" in registry and registry.has("b")
    assert registry.get("a").name == "a"
    assert registry.get("missing") is None
    assert registry.ids() == ["a", "b"]
    assert [h.id for h in registry.handlers()] == ["b", "a"]
    assert [h.id for h in registry] == ["b", "a"]


def test_duplicate_id_rejected():
    registry = ObserverRegistry([ObserverHandler("dup", noop)])
    with pytest.raises(DuplicateObserverError) as exc:
        registry.register(ObserverHandler("dup", noop))
    assert exc.value.observer_id == "dup"
    assert 'Observer with id "dup" already registered' in str(exc.value)


def test_unregister_via_returned_callable():
    registry = ObserverRegistry()
    remove = registry.register(ObserverHandler("temp", noop))

    assert remove() is True
    assert remove() is False
    assert registry.unregister("temp") is False
    assert len(registry) == 0


def test_clear():
    registry = ObserverRegistry([ObserverHandler("a", noop), ObserverHandler("b", noop)])
    registry.clear()
    assert registry.ids() == []


def test_empty_id_rejected():
    with pytest.raises(ConfigurationError):
        ObserverHandler("", noop)


def test_simple_observer_sends_messages(store, snapshot):
    handler = simple_observer(
        "always", lambda s: [{"category": "context", "content": f"step {s.step_number}", "confidence": 0.7}]
    )

    result = asyncio.run(DispatchCoordinator(store).dispatch(snapshot(2), [handler]))

    assert result.messages_sent == 1
    assert store.query("t1")[0].content == "step 2"


def test_tool_call_observer_filters_on_tool_names(snapshot):
    handler = tool_call_observer("tools", lambda s: [], tool_names=["search"])

    assert not handler.accepts(snapshot(1, text="no tools"))
    assert not handler.accepts(snapshot(1, response=StepResponse(tool_calls=(ToolCall("write"),))))
    assert handler.accepts(snapshot(1, response=StepResponse(tool_calls=(ToolCall("search"),))))


def test_tool_call_observer_without_names_accepts_any_call(snapshot):
    handler = tool_call_observer("tools", lambda s: [])
    assert handler.accepts(snapshot(1, response=StepResponse(tool_calls=(ToolCall("anything"),))))


def test_keyword_observer_passes_matches(store, snapshot):
    seen = []

    def on_match(s, matched):
        seen.append(matched)
        return [{"category": "warning", "content": "keyword hit", "confidence": 0.6}]

    handler = keyword_observer("kw", ["Timeout", "refused"], on_match)

    assert not handler.accepts(snapshot(1, text="all good"))
    result = asyncio.run(
        DispatchCoordinator(store).dispatch(snapshot(1, text="connection TIMEOUT, then refused"), [handler])
    )

    assert seen == [["Timeout", "refused"]]
    assert result.messages_sent == 1


def test_keyword_observer_case_sensitive(snapshot):
    handler = keyword_observer("kw", ["Error"], lambda s, m: [], case_sensitive=True)
    assert not handler.accepts(snapshot(1, text="an error"))
    assert handler.accepts(snapshot(1, text="an Error"))
