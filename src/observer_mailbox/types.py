"""Data model shared by the store, retention engine and dispatcher."""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Literal, Mapping, NotRequired, Optional, Tuple, TypedDict, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigurationError, MessageValidationError

StepNumber = int
ThreadId = str
MessageId = str
AgentId = str

MessageType = Literal["insight", "correction", "warning", "context"]
MessageStatus = Literal["pending", "incorporated", "all"]

CATEGORIES: Tuple[str, ...] = get_args(MessageType)
STATUSES: Tuple[str, ...] = get_args(MessageStatus)


class PromptMessage(TypedDict):
    """A single chat message the main agent was prompted with."""

    role: str            # "system" | "user" | "assistant" | "tool"
    content: str

    name: NotRequired[str]
    tool_call_id: NotRequired[str]


# -----------------------------
# Messages
# -----------------------------
class SendMessageInput(BaseModel):
    """Candidate message handed to :meth:`MessageStore.send`.

    ``thread_id``, ``sender`` and ``sent_at_step`` may be left out by
    observer handlers; the dispatcher fills them from the snapshot and
    handler before the message reaches the store, which requires them.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    thread_id: Optional[ThreadId] = None
    sender: Optional[AgentId] = None
    sent_at_step: Optional[StepNumber] = None
    sent_at_time: Optional[float] = None

    category: MessageType
    content: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0.0, le=1.0)

    expires_at_step: Optional[StepNumber] = None


CandidateLike = Union[SendMessageInput, Mapping[str, Any]]


def coerce_input(candidate: CandidateLike, **overrides: Any) -> SendMessageInput:
    """Build a validated :class:`SendMessageInput` from a model or mapping.

    ``overrides`` replace fields of the candidate; ``None`` overrides are
    ignored so callers can pass optional defaults unconditionally.
    """
    if isinstance(candidate, SendMessageInput):
        data: Dict[str, Any] = candidate.model_dump(exclude_unset=True)
    elif isinstance(candidate, Mapping):
        data = dict(candidate)
    else:
        raise MessageValidationError(
            f"message must be a SendMessageInput or a mapping, got {type(candidate).__name__}"
        )
    for key, value in overrides.items():
        if value is not None:
            data[key] = value
    try:
        return SendMessageInput.model_validate(data)
    except ValidationError as e:
        raise MessageValidationError(f"invalid message: {e}") from e


@dataclass(frozen=True)
class Message:
    """A stored mailbox message.

    Immutable; the store swaps in a copy when the message is incorporated.
    """

    id: MessageId
    thread_id: ThreadId

    sender: AgentId
    sent_at_step: StepNumber
    sent_at_time: float

    category: MessageType
    content: str
    confidence: float

    incorporated_at_step: Optional[StepNumber] = None  # None = pending
    expires_at_step: Optional[StepNumber] = None       # None = never expires

    content_hash: str = ""

    @property
    def is_pending(self) -> bool:
        return self.incorporated_at_step is None

    def is_expired(self, at_step: StepNumber) -> bool:
        return self.expires_at_step is not None and self.expires_at_step <= at_step


# -----------------------------
# Snapshots
# -----------------------------
@dataclass(frozen=True)
class ToolCall:
    name: str
    args: Any = None


@dataclass(frozen=True)
class ToolResult:
    name: str
    result: Any = None


@dataclass(frozen=True)
class StepResponse:
    """What the main agent produced in one step."""

    text: Optional[str] = None
    tool_calls: Tuple[ToolCall, ...] = ()
    tool_results: Tuple[ToolResult, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "tool_calls", tuple(self.tool_calls))
        object.__setattr__(self, "tool_results", tuple(self.tool_results))


@dataclass(frozen=True)
class StepSnapshot:
    """State of one driving-loop step, handed to observers for analysis."""

    thread_id: ThreadId
    step_number: StepNumber
    timestamp: float

    prompt_messages: Tuple[PromptMessage, ...] = ()
    working_memory: Mapping[str, Any] = field(default_factory=dict)

    response: StepResponse = field(default_factory=StepResponse)

    incorporated_message_ids: Tuple[MessageId, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "prompt_messages", tuple(self.prompt_messages))
        object.__setattr__(self, "working_memory", MappingProxyType(dict(self.working_memory)))
        object.__setattr__(self, "incorporated_message_ids", tuple(self.incorporated_message_ids))


# -----------------------------
# Queries
# -----------------------------
@dataclass
class QueryOptions:
    """Filters for :meth:`MessageStore.query`; every field is optional and ANDed.

    ``at_step`` is the reference step for hiding expired-but-uncollected
    messages. When unset, ``newer_than_step`` is used, then 0.
    """

    status: MessageStatus = "all"
    min_confidence: Optional[float] = None
    categories: Optional[Iterable[MessageType]] = None
    newer_than_step: Optional[StepNumber] = None
    at_step: Optional[StepNumber] = None
    limit: Optional[int] = None

    def __post_init__(self) -> None:
        if self.status not in STATUSES:
            raise ConfigurationError(f"unknown status {self.status!r}; expected one of {STATUSES}")
        if self.limit is not None and self.limit < 0:
            raise ConfigurationError("limit must be >= 0")
        if isinstance(self.categories, str):
            raise ConfigurationError(f"categories must be a collection, not the string {self.categories!r}")
        if self.categories is not None:
            self.categories = frozenset(self.categories)

    @property
    def reference_step(self) -> StepNumber:
        if self.at_step is not None:
            return self.at_step
        if self.newer_than_step is not None:
            return self.newer_than_step
        return 0

    def matches(self, m: Message) -> bool:
        if self.status == "pending" and not m.is_pending:
            return False
        if self.status == "incorporated" and m.is_pending:
            return False
        if self.min_confidence is not None and m.confidence < self.min_confidence:
            return False
        if self.categories is not None and m.category not in self.categories:
            return False
        if self.newer_than_step is not None and m.sent_at_step <= self.newer_than_step:
            return False
        return not m.is_expired(self.reference_step)


def sort_for_query(messages: Iterable[Message]) -> List[Message]:
    """Confidence descending, then newest step first; stable otherwise."""
    return sorted(messages, key=lambda m: (-m.confidence, -m.sent_at_step))
