"""Category-aware retention: decide which messages survive under limits.

Pure functions over message lists; nothing here touches a store. Typical
use is culling queried messages before they are formatted into a prompt.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Literal, Optional, Sequence, Tuple, get_args

from .errors import ConfigurationError
from .events import EventBus, emit_to
from .types import CATEGORIES, Message, MessageType

logger = logging.getLogger(__name__)

Priority = Literal["newest", "oldest", "highest-confidence"]
PRIORITIES: Tuple[str, ...] = get_args(Priority)


# -----------------------------
# Policies
# -----------------------------
@dataclass
class RetentionPolicy:
    """
    Retention rules for one message category.

    Fields:
        category: message category the rules apply to.
        max_count: keep at most this many (None = unlimited).
        dedupe: collapse messages with identical content, keeping the newest.
        priority: order used before truncation: "newest" | "oldest" |
            "highest-confidence" (newest breaks confidence ties).
        min_confidence: cull anything below this floor first.
    """
    category: MessageType
    max_count: Optional[int] = None
    dedupe: bool = False
    priority: Priority = "newest"
    min_confidence: Optional[float] = None

    def __post_init__(self) -> None:
        if self.category not in CATEGORIES:
            raise ConfigurationError(f"unknown category {self.category!r}")
        if self.max_count is not None and self.max_count < 0:
            raise ConfigurationError(f"max_count must be >= 0 for {self.category}")
        if self.priority not in PRIORITIES:
            raise ConfigurationError(f"unknown priority {self.priority!r}; expected one of {PRIORITIES}")
        if self.min_confidence is not None and not 0.0 <= self.min_confidence <= 1.0:
            raise ConfigurationError("min_confidence must be within [0, 1]")


DEFAULT_RETENTION_POLICIES: Tuple[RetentionPolicy, ...] = (
    RetentionPolicy("insight", max_count=5, dedupe=True, priority="highest-confidence"),
    RetentionPolicy("correction", max_count=3, dedupe=True, priority="newest"),
    RetentionPolicy("warning", max_count=3, dedupe=True, priority="newest"),
    RetentionPolicy("context", max_count=2, dedupe=True, priority="newest"),
)

# applied to categories without an explicit policy
DEFAULT_FALLBACK: Dict[str, Any] = {"max_count": 5, "dedupe": True, "priority": "newest"}

DEFAULT_GLOBAL_MAX = 15


# -----------------------------
# Results
# -----------------------------
@dataclass
class RetentionStats:
    """Counts per cull reason; together with ``total_kept`` they sum to ``total_input``."""
    total_input: int = 0
    total_kept: int = 0
    culled_by_type: Dict[str, int] = field(default_factory=lambda: {c: 0 for c in CATEGORIES})
    culled_by_dedup: int = 0
    culled_by_confidence: int = 0
    culled_by_global: int = 0
    # every reason, broken down per category
    culled_by_category: Dict[str, int] = field(default_factory=lambda: {c: 0 for c in CATEGORIES})

    @property
    def total_culled(self) -> int:
        return self.culled_by_confidence + self.culled_by_dedup + sum(self.culled_by_type.values()) + self.culled_by_global


@dataclass
class RetentionResult:
    keep: List[Message]
    cull: List[Message]
    stats: RetentionStats


# -----------------------------
# Engine
# -----------------------------
class RetentionEngine:
    """
    Applies per-category policies, then an optional global cap
    (``global_max_messages`` of None or 0 disables the cap).

    Example:
        engine = RetentionEngine(
            [RetentionPolicy("insight", max_count=3, dedupe=True)],
            global_max_messages=10,
        )
        result = engine.apply(messages)
        result.keep   # messages to inject
        result.cull   # messages to drop
    """

    def __init__(
        self,
        policies: Optional[Iterable[RetentionPolicy]] = None,
        *,
        default_policy: Optional[Dict[str, Any]] = None,
        global_max_messages: Optional[int] = DEFAULT_GLOBAL_MAX,
        events: Optional[EventBus] = None,
    ) -> None:
        if global_max_messages is not None and global_max_messages < 0:
            raise ConfigurationError("global_max_messages must be >= 0")
        self.global_max_messages = global_max_messages
        self.events = events
        self.default_policy = dict(DEFAULT_FALLBACK if default_policy is None else default_policy)
        if "category" in self.default_policy:
            raise ConfigurationError("default_policy must not name a category")
        # fail fast on a bad default
        RetentionPolicy("insight", **self.default_policy)

        self._policies: Dict[str, RetentionPolicy] = {}
        for p in DEFAULT_RETENTION_POLICIES if policies is None else policies:
            self._policies[p.category] = replace(p)

    @property
    def policies(self) -> List[RetentionPolicy]:
        return list(self._policies.values())

    def get_policy(self, category: MessageType) -> RetentionPolicy:
        explicit = self._policies.get(category)
        if explicit is not None:
            return explicit
        return RetentionPolicy(category, **self.default_policy)

    def set_policy(self, policy: RetentionPolicy) -> None:
        self._policies[policy.category] = policy

    def apply(self, messages: Sequence[Message]) -> RetentionResult:
        stats = RetentionStats(total_input=len(messages))

        groups: Dict[str, List[Message]] = {}
        for m in messages:
            groups.setdefault(m.category, []).append(m)

        keep: List[Message] = []
        cull: List[Message] = []
        for category, group in groups.items():
            kept, culled = self._apply_policy(group, self.get_policy(category), stats)
            keep.extend(kept)
            cull.extend(culled)

        if self.global_max_messages and len(keep) > self.global_max_messages:
            keep = sorted(keep, key=lambda m: -m.confidence)
            overflow = keep[self.global_max_messages:]
            keep = keep[: self.global_max_messages]
            cull.extend(overflow)
            stats.culled_by_global = len(overflow)
            for m in overflow:
                stats.culled_by_category[m.category] += 1

        stats.total_kept = len(keep)
        if cull:
            logger.debug(
                "retention: kept=%d culled=%d (confidence=%d dedup=%d type=%d global=%d)",
                stats.total_kept, len(cull), stats.culled_by_confidence, stats.culled_by_dedup,
                sum(stats.culled_by_type.values()), stats.culled_by_global,
            )
        emit_to(self.events, "retention:applied", kept_count=len(keep), culled_count=len(cull), stats=stats)
        return RetentionResult(keep=keep, cull=cull, stats=stats)

    # ----------------- per category -----------------
    def _apply_policy(
        self, messages: List[Message], policy: RetentionPolicy, stats: RetentionStats
    ) -> Tuple[List[Message], List[Message]]:
        keep = list(messages)
        cull: List[Message] = []

        if policy.min_confidence is not None:
            failing = [m for m in keep if m.confidence < policy.min_confidence]
            keep = [m for m in keep if m.confidence >= policy.min_confidence]
            cull.extend(failing)
            stats.culled_by_confidence += len(failing)

        if policy.dedupe:
            keep, duplicates = _deduplicate(keep)
            cull.extend(duplicates)
            stats.culled_by_dedup += len(duplicates)

        keep = _sort_by_priority(keep, policy.priority)

        if policy.max_count is not None and len(keep) > policy.max_count:
            excess = keep[policy.max_count:]
            keep = keep[: policy.max_count]
            cull.extend(excess)
            stats.culled_by_type[policy.category] += len(excess)

        stats.culled_by_category[policy.category] += len(cull)
        return keep, cull


def _deduplicate(messages: List[Message]) -> Tuple[List[Message], List[Message]]:
    """Keep the newest message per content hash."""
    unique: List[Message] = []
    duplicates: List[Message] = []
    seen = set()
    for m in sorted(messages, key=lambda m: -m.sent_at_step):
        if m.content_hash in seen:
            duplicates.append(m)
        else:
            seen.add(m.content_hash)
            unique.append(m)
    return unique, duplicates


def _sort_by_priority(messages: List[Message], priority: Priority) -> List[Message]:
    if priority == "oldest":
        return sorted(messages, key=lambda m: m.sent_at_step)
    if priority == "highest-confidence":
        return sorted(messages, key=lambda m: (-m.confidence, -m.sent_at_step))
    return sorted(messages, key=lambda m: -m.sent_at_step)


def apply_retention(messages: Sequence[Message], **kwargs: Any) -> RetentionResult:
    """One-shot convenience: build an engine from ``kwargs`` and apply it."""
    return RetentionEngine(**kwargs).apply(messages)
