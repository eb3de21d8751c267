"""Decide whether a step's response looks like a failure.

Used by the driving loop (and the ``on_failure`` trigger filter) to pick
which steps are worth dispatching to observers.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Literal, Optional, Sequence, Union

from .types import StepResponse

Severity = Literal["warning", "error", "critical"]

DEFAULT_FAILURE_KEYWORDS = (
    "error",
    "failed",
    "failure",
    "unable to",
    "cannot",
    "could not",
    "exception",
    "crash",
    "timeout",
    "timed out",
)

DEFAULT_NEGATION_PHRASES = (
    "no error",
    "without error",
    "no failure",
    "successfully",
    "success",
    "completed",
    "resolved",
    "fixed",
    "no issues",
    "worked",
)

_CRITICAL = ("crash", "exception", "critical")
_WARNING = ("timeout", "timed out", "unable to")


@dataclass(frozen=True)
class FailureResult:
    is_failure: bool
    reason: Optional[str] = None
    severity: Optional[Severity] = None


NOT_A_FAILURE = FailureResult(False)


class KeywordFailureDetector:
    """Keyword matching that backs off when the text also contains a negation.

    "There was an error" is a failure; "completed without error" is not.
    """

    def __init__(
        self,
        failure_keywords: Sequence[str] = DEFAULT_FAILURE_KEYWORDS,
        negation_phrases: Sequence[str] = DEFAULT_NEGATION_PHRASES,
        case_insensitive: bool = True,
    ) -> None:
        self.case_insensitive = case_insensitive
        self.failure_keywords = [self._norm(k) for k in failure_keywords]
        self.negation_phrases = [self._norm(p) for p in negation_phrases]

    def _norm(self, s: str) -> str:
        return s.lower() if self.case_insensitive else s

    def detect(self, response: StepResponse) -> FailureResult:
        text = self._norm(response.text or "")
        if any(p in text for p in self.negation_phrases):
            return NOT_A_FAILURE
        for keyword in self.failure_keywords:
            if keyword in text:
                return FailureResult(
                    True,
                    reason=f'Response contains failure indicator: "{keyword}"',
                    severity=_severity(keyword),
                )
        return NOT_A_FAILURE


def _severity(keyword: str) -> Severity:
    k = keyword.lower()
    if any(c in k for c in _CRITICAL):
        return "critical"
    if any(w in k for w in _WARNING):
        return "warning"
    return "error"


class ToolErrorDetector:
    """Flags a tool result that carries a truthy error field."""

    def __init__(self, error_fields: Sequence[str] = ("error", "errorMessage", "is_error", "isError")) -> None:
        self.error_fields = tuple(error_fields)

    def detect(self, response: StepResponse) -> FailureResult:
        for tr in response.tool_results:
            if self._has_error(tr.result):
                return FailureResult(True, reason=f'Tool "{tr.name}" returned an error', severity="error")
        return NOT_A_FAILURE

    def _has_error(self, result: Any) -> bool:
        if not isinstance(result, dict):
            return False
        for key in self.error_fields:
            value = result.get(key)
            if value is True or (isinstance(value, str) and value):
                return True
        return False


class PredicateFailureDetector:
    def __init__(self, predicate: Callable[[StepResponse], Union[FailureResult, bool]]) -> None:
        self.predicate = predicate

    def detect(self, response: StepResponse) -> FailureResult:
        out = self.predicate(response)
        if isinstance(out, FailureResult):
            return out
        return FailureResult(bool(out))


class CompositeFailureDetector:
    """First detector reporting a failure wins."""

    def __init__(self, detectors: Iterable[Any]) -> None:
        self.detectors: List[Any] = list(detectors)

    def detect(self, response: StepResponse) -> FailureResult:
        for d in self.detectors:
            result = d.detect(response)
            if result.is_failure:
                return result
        return NOT_A_FAILURE


def default_failure_detector() -> CompositeFailureDetector:
    return CompositeFailureDetector([KeywordFailureDetector(), ToolErrorDetector()])
