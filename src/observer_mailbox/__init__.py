"""Observer mailbox: short-lived advisory messages from background observers.

An asynchronous observer posts messages into an in-process
:class:`MessageStore`; the synchronous driving loop reads them once per
step, marks the ones it used as incorporated, snapshots the step and
dispatches the snapshot back to the observers.

Typical usage
-------------
from observer_mailbox import MessageStore, ObserverContext, ObserverRegistry

store = MessageStore()
registry = ObserverRegistry()
ctx = ObserverContext(store, "thread-1")
"""

from __future__ import annotations

from .context import InjectionConfig, ObserverContext, PendingContext
from .dispatch import DispatchCoordinator, DispatchResult, HandlerFailure, RetryPolicy, make_error_logger
from .errors import ConfigurationError, DuplicateObserverError, MailboxError, MessageValidationError
from .events import EventBus, MailboxEvent, MailboxMetrics, MetricsCollector
from .failure import FailureResult, default_failure_detector
from .filters import InjectionFilters, TriggerFilters, as_snapshot_filter
from .injection import format_messages, inject_into_prompt, inject_messages
from .registry import (
    ObserverHandler,
    ObserverRegistry,
    ObserverResult,
    keyword_observer,
    simple_observer,
    tool_call_observer,
)
from .retention import RetentionEngine, RetentionPolicy, RetentionResult, RetentionStats, apply_retention
from .sanitization import SanitizeOptions, sanitize
from .snapshots import SnapshotLog
from .store import MailboxConfig, MessageStore
from .types import (
    Message,
    PromptMessage,
    QueryOptions,
    SendMessageInput,
    StepResponse,
    StepSnapshot,
    ToolCall,
    ToolResult,
)

__all__ = [
    "__version__",
    "get_version",
    # model
    "Message",
    "PromptMessage",
    "QueryOptions",
    "SendMessageInput",
    "StepResponse",
    "StepSnapshot",
    "ToolCall",
    "ToolResult",
    # store
    "MailboxConfig",
    "MessageStore",
    "SnapshotLog",
    # events
    "EventBus",
    "MailboxEvent",
    "MailboxMetrics",
    "MetricsCollector",
    # retention
    "RetentionEngine",
    "RetentionPolicy",
    "RetentionResult",
    "RetentionStats",
    "apply_retention",
    # dispatch
    "DispatchCoordinator",
    "DispatchResult",
    "HandlerFailure",
    "RetryPolicy",
    "make_error_logger",
    "ObserverHandler",
    "ObserverRegistry",
    "ObserverResult",
    "keyword_observer",
    "simple_observer",
    "tool_call_observer",
    # driving loop
    "InjectionConfig",
    "ObserverContext",
    "PendingContext",
    "format_messages",
    "inject_into_prompt",
    "inject_messages",
    "SanitizeOptions",
    "sanitize",
    "InjectionFilters",
    "TriggerFilters",
    "as_snapshot_filter",
    "FailureResult",
    "default_failure_detector",
    # errors
    "ConfigurationError",
    "DuplicateObserverError",
    "MailboxError",
    "MessageValidationError",
]

__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__
