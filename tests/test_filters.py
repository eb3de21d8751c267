from __future__ import annotations

import pytest

from observer_mailbox.failure import (
    CompositeFailureDetector,
    FailureResult,
    KeywordFailureDetector,
    PredicateFailureDetector,
    ToolErrorDetector,
    default_failure_detector,
)
from observer_mailbox.filters import (
    InjectionFilterInput,
    InjectionFilters,
    TriggerFilterInput,
    TriggerFilters,
    as_snapshot_filter,
)
from observer_mailbox.types import StepResponse, ToolCall, ToolResult


# -----------------------------
# Failure detection
# -----------------------------
@pytest.mark.parametrize(
    "text, severity",
    [
        ("The request failed", "error"),
        ("Upstream timeout while searching", "warning"),
        ("Worker crash detected", "critical"),
    ],
)
def test_keyword_detector_flags_failures(text, severity):
    result = KeywordFailureDetector().detect(StepResponse(text=text))
    assert result.is_failure
    assert result.severity == severity
    assert result.reason.startswith("Response contains failure indicator")


@pytest.mark.parametrize("text", ["Completed without error", "All good", "", None])
def test_keyword_detector_ignores_negated_or_clean_text(text):
    assert not KeywordFailureDetector().detect(StepResponse(text=text)).is_failure


def test_tool_error_detector():
    detector = ToolErrorDetector()
    bad = StepResponse(tool_results=(ToolResult("fetch", {"isError": True}),))
    msg = StepResponse(tool_results=(ToolResult("fetch", {"error": "404"}),))
    ok = StepResponse(tool_results=(ToolResult("fetch", {"error": ""}), ToolResult("x", "error text")))

    assert detector.detect(bad).reason == 'Tool "fetch" returned an error'
    assert detector.detect(msg).is_failure
    assert not detector.detect(ok).is_failure


def test_predicate_and_composite_detectors():
    flag = PredicateFailureDetector(lambda r: "halt" in (r.text or ""))
    rich = PredicateFailureDetector(lambda r: FailureResult(True, "custom", "critical"))

    assert flag.detect(StepResponse(text="halt now")) == FailureResult(True)
    assert not flag.detect(StepResponse(text="go")).is_failure

    composite = CompositeFailureDetector([flag, rich])
    assert composite.detect(StepResponse(text="halt")).reason is None
    assert composite.detect(StepResponse(text="go")).reason == "custom"


def test_default_detector_combines_keyword_and_tool_checks():
    detector = default_failure_detector()
    assert detector.detect(StepResponse(text="could not parse")).is_failure
    assert detector.detect(StepResponse(tool_results=(ToolResult("t", {"is_error": True}),))).is_failure
    assert not detector.detect(StepResponse(text="done")).is_failure


# -----------------------------
# Injection filters
# -----------------------------
def inj(step=1, *messages):
    return InjectionFilterInput(messages=list(messages), step=step, thread_id="t1")


USER = {"role": "user", "content": "Book a flight to Paris"}
ASSISTANT = {"role": "assistant", "content": "Sure"}


def test_basic_injection_filters():
    assert InjectionFilters.always()(inj())
    assert not InjectionFilters.never()(inj())
    assert InjectionFilters.user_input_only()(inj(1, ASSISTANT, USER))
    assert not InjectionFilters.user_input_only()(inj(1, USER, ASSISTANT))
    assert not InjectionFilters.user_input_only()(inj(1))


def test_step_based_injection_filters():
    every_third = InjectionFilters.every_n_steps(3)
    assert [s for s in range(1, 10) if every_third(inj(s))] == [3, 6, 9]
    assert InjectionFilters.after_step(2)(inj(3))
    assert not InjectionFilters.after_step(2)(inj(2))
    assert InjectionFilters.first_n_steps(2)(inj(2))
    assert not InjectionFilters.first_n_steps(2)(inj(3))
    with pytest.raises(ValueError):
        InjectionFilters.every_n_steps(0)


def test_conversation_injection_filters():
    assert InjectionFilters.has_user_message()(inj(1, USER))
    assert not InjectionFilters.has_user_message()(inj(1, ASSISTANT))
    assert InjectionFilters.min_turns(2)(inj(1, USER, ASSISTANT, USER))
    assert not InjectionFilters.min_turns(2)(inj(1, USER))
    assert InjectionFilters.conversation_contains("paris")(inj(1, USER))
    assert not InjectionFilters.conversation_contains("rome")(inj(1, USER))


def test_injection_combinators():
    f = InjectionFilters.all_of(InjectionFilters.has_user_message(), InjectionFilters.after_step(1))
    assert f(inj(2, USER))
    assert not f(inj(1, USER))

    g = InjectionFilters.any_of(InjectionFilters.never(), InjectionFilters.first_n_steps(1))
    assert g(inj(1))
    assert not InjectionFilters.not_(g)(inj(1))
    assert InjectionFilters.custom(lambda i: i.thread_id == "t1")(inj())


# -----------------------------
# Trigger filters
# -----------------------------
def trig(snapshot_factory, **response):
    return TriggerFilterInput(snapshot_factory(2, response=StepResponse(**response)))


def test_tool_trigger_filters(snapshot):
    calls = trig(snapshot, tool_calls=(ToolCall("search"),))
    none = trig(snapshot, text="hi")

    assert TriggerFilters.on_tool_call()(calls)
    assert not TriggerFilters.on_tool_call()(none)
    assert TriggerFilters.on_tool_names("search", "book")(calls)
    assert not TriggerFilters.on_tool_names("book")(calls)


def test_tool_error_and_failure_triggers(snapshot):
    errored = trig(snapshot, tool_results=(ToolResult("search", {"error": "quota"}),))
    assert TriggerFilters.on_tool_error()(errored)
    assert not TriggerFilters.on_tool_error()(trig(snapshot, tool_results=(ToolResult("search", {"ok": 1}),)))

    assert TriggerFilters.on_failure()(trig(snapshot, text="Request failed"))
    assert not TriggerFilters.on_failure()(trig(snapshot, text="Request succeeded"))


def test_text_and_step_triggers(snapshot):
    t = trig(snapshot, text="The API returned a Timeout")
    assert TriggerFilters.every_step()(t)
    assert not TriggerFilters.never()(t)
    assert TriggerFilters.contains_keywords("timeout")(t)
    assert not TriggerFilters.contains_keywords("refused")(t)
    assert TriggerFilters.response_longer_than(10)(t)
    assert not TriggerFilters.response_longer_than(100)(t)
    assert TriggerFilters.on_step(lambda n: n % 2 == 0)(t)


def test_trigger_filter_as_handler_filter(snapshot):
    predicate = as_snapshot_filter(
        TriggerFilters.all_of(TriggerFilters.on_tool_call(), TriggerFilters.not_(TriggerFilters.on_tool_error()))
    )
    assert predicate(snapshot(1, response=StepResponse(tool_calls=(ToolCall("x"),))))
    assert not predicate(snapshot(1, text="no tools"))


@pytest.mark.parametrize(
    "factory, args",
    [
        (InjectionFilters.user_input_only, ()),
        (InjectionFilters.every_n_steps, (2,)),
        (InjectionFilters.conversation_contains, ("paris",)),
        (TriggerFilters.on_tool_names, ("search",)),
        (TriggerFilters.response_longer_than, (5,)),
        (TriggerFilters.on_step, (bool,)),
    ],
)
def test_factories_are_named_functions(factory, args):
    assert factory.__qualname__.split(".")[0] in {"InjectionFilters", "TriggerFilters"}
    predicate = factory(*args)
    assert predicate.__name__ == "check"
    assert predicate.__qualname__.startswith(factory.__qualname__)
