from __future__ import annotations

import hashlib
import logging
import threading
import time
import uuid
from dataclasses import dataclass, fields, replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import ConfigurationError, MessageValidationError
from .events import EventBus, emit_to
from .snapshots import SnapshotLog
from .types import (
    CandidateLike,
    Message,
    MessageId,
    QueryOptions,
    StepNumber,
    StepSnapshot,
    ThreadId,
    coerce_input,
    sort_for_query,
)

logger = logging.getLogger(__name__)


# -----------------------------
# Config & helpers
# -----------------------------
@dataclass
class MailboxConfig:
    # steps back to look for duplicate content
    dedupe_window_steps: int = 5
    # hard cap on messages held per thread
    max_messages_per_thread: int = 50
    # snapshots kept per thread
    snapshot_retention_steps: int = 10
    # expiry applied when a message has none; None = never expire
    default_ttl_steps: Optional[int] = 10
    # how long incorporated messages survive gc (audit window)
    incorporated_retention_steps: int = 10

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None and f.name == "default_ttl_steps":
                continue
            if not isinstance(value, int) or isinstance(value, bool):
                raise ConfigurationError(f"{f.name} must be an integer, got {value!r}")
            if value < 0:
                raise ConfigurationError(f"{f.name} must be >= 0, got {value}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MailboxConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"unknown store settings: {sorted(unknown)}")
        return cls(**data)


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def _new_id() -> MessageId:
    return str(uuid.uuid4())


# -----------------------------
# Message Store
# -----------------------------
class MessageStore:
    """
    In-memory, thread-isolated mailbox of observer messages.

    - Deduplicates identical content sent within ``dedupe_window_steps``
    - Expires messages by step (``expires_at_step``), collected by :meth:`gc`
    - Caps each thread at ``max_messages_per_thread`` (evicts oldest
      incorporated first, then oldest pending)
    - Keeps a bounded per-thread log of step snapshots
    - Publishes send/dedup/evict/read/expire events when given a bus

    Every public method takes an internal lock, so background dispatch
    may write while the driving loop reads. The store never runs
    maintenance on its own.
    """

    def __init__(
        self,
        config: Optional[MailboxConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], MessageId] = _new_id,
        events: Optional[EventBus] = None,
    ) -> None:
        self._cfg = config or MailboxConfig()
        self._clock = clock
        self._id_factory = id_factory
        self.events = events
        self._lock = threading.RLock()
        self._messages: Dict[ThreadId, List[Message]] = {}
        self._snapshots = SnapshotLog(self._cfg.snapshot_retention_steps)

    @property
    def config(self) -> MailboxConfig:
        return replace(self._cfg)

    # ----------------- write side -----------------
    def send(self, candidate: CandidateLike) -> bool:
        """Append a message; return False if it duplicates a recent one.

        Raises :class:`MessageValidationError` for malformed input.
        """
        msg_in = coerce_input(candidate)
        if msg_in.thread_id is None:
            raise MessageValidationError("thread_id is required")
        if msg_in.sender is None:
            raise MessageValidationError("sender is required")
        if msg_in.sent_at_step is None:
            raise MessageValidationError("sent_at_step is required")

        digest = content_hash(msg_in.content)
        step = msg_in.sent_at_step
        low = step - self._cfg.dedupe_window_steps

        with self._lock:
            thread = self._messages.get(msg_in.thread_id, [])
            for m in thread:
                if m.content_hash == digest and low <= m.sent_at_step <= step:
                    logger.debug("dedup: thread=%s step=%d hash=%s matches %s", msg_in.thread_id, step, digest, m.id)
                    emit_to(
                        self.events, "message:deduped",
                        thread_id=msg_in.thread_id, original_id=m.id, content_hash=digest, content=msg_in.content,
                    )
                    return False

            expires = msg_in.expires_at_step
            if expires is None and self._cfg.default_ttl_steps is not None:
                expires = step + self._cfg.default_ttl_steps

            message = Message(
                id=self._id_factory(),
                thread_id=msg_in.thread_id,
                sender=msg_in.sender,
                sent_at_step=step,
                sent_at_time=msg_in.sent_at_time if msg_in.sent_at_time is not None else self._clock(),
                category=msg_in.category,
                content=msg_in.content,
                confidence=msg_in.confidence,
                incorporated_at_step=None,
                expires_at_step=expires,
                content_hash=digest,
            )
            thread.append(message)
            self._messages[msg_in.thread_id] = thread
            emit_to(self.events, "message:sent", thread_id=message.thread_id, message=message)
            self._enforce_capacity(thread)
        return True

    def store_snapshot(self, snapshot: StepSnapshot) -> None:
        with self._lock:
            self._snapshots.append(snapshot)

    # ----------------- read side -----------------
    def query(self, thread_id: ThreadId, options: Optional[QueryOptions] = None, **filters: Any) -> List[Message]:
        """Return matching messages, best first. Never mutates the store.

        Filters come either as a :class:`QueryOptions` or as its fields in
        keyword form (``status="pending", limit=3``), not both.
        """
        if options is not None and filters:
            raise TypeError("pass either a QueryOptions or keyword filters, not both")
        opts = options or QueryOptions(**filters)

        with self._lock:
            found = sort_for_query(m for m in self._messages.get(thread_id, ()) if opts.matches(m))
        if opts.limit is not None:
            found = found[: opts.limit]
        return found

    def mark_incorporated(self, message_ids: Iterable[MessageId], at_step: StepNumber) -> int:
        """Record that pending messages were used at ``at_step``.

        Unknown or already incorporated ids are ignored. Returns the
        number of messages that changed.
        """
        wanted = set(message_ids)
        if not wanted:
            return 0
        changed: Dict[ThreadId, List[MessageId]] = {}
        with self._lock:
            for thread_id, thread in self._messages.items():
                for i, m in enumerate(thread):
                    if m.id in wanted and m.incorporated_at_step is None:
                        thread[i] = replace(m, incorporated_at_step=at_step)
                        changed.setdefault(thread_id, []).append(m.id)
            for thread_id, ids in changed.items():
                emit_to(self.events, "message:read", thread_id=thread_id, message_ids=ids, step=at_step)
        return sum(len(ids) for ids in changed.values())

    def get_snapshots(self, thread_id: ThreadId, limit: Optional[int] = None) -> List[StepSnapshot]:
        with self._lock:
            return self._snapshots.recent(thread_id, limit)

    # ----------------- maintenance -----------------
    def gc(self, thread_id: ThreadId, at_step: StepNumber) -> int:
        """Drop expired messages and incorporated ones past the audit window."""
        with self._lock:
            thread = self._messages.get(thread_id)
            if not thread:
                return 0

            horizon = at_step - self._cfg.incorporated_retention_steps
            remaining: List[Message] = []
            dropped: List[MessageId] = []
            for m in thread:
                if m.is_expired(at_step) or (m.incorporated_at_step is not None and m.incorporated_at_step < horizon):
                    dropped.append(m.id)
                else:
                    remaining.append(m)
            self._messages[thread_id] = remaining
            if dropped:
                logger.debug("gc: thread=%s step=%d removed=%d kept=%d", thread_id, at_step, len(dropped), len(remaining))
                emit_to(self.events, "message:expired", thread_id=thread_id, message_ids=dropped, step=at_step)
        return len(dropped)

    def clear_thread(self, thread_id: ThreadId) -> None:
        with self._lock:
            self._messages.pop(thread_id, None)
            self._snapshots.clear_thread(thread_id)

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()
            self._snapshots.clear()

    def message_count(self, thread_id: ThreadId) -> int:
        with self._lock:
            return len(self._messages.get(thread_id, ()))

    def snapshot_count(self, thread_id: ThreadId) -> int:
        with self._lock:
            return self._snapshots.count(thread_id)

    def thread_ids(self) -> List[ThreadId]:
        with self._lock:
            return sorted(self._messages)

    # ----------------- capacity -----------------
    def _enforce_capacity(self, thread: List[Message]) -> None:
        # oldest by sent step; min() keeps the earliest inserted on ties
        while len(thread) > self._cfg.max_messages_per_thread:
            incorporated = [i for i, m in enumerate(thread) if not m.is_pending]
            candidates = incorporated or list(range(len(thread)))
            if not candidates:
                break
            victim = min(candidates, key=lambda i: thread[i].sent_at_step)
            evicted = thread.pop(victim)
            logger.debug(
                "evict: thread=%s id=%s step=%d incorporated=%s",
                evicted.thread_id, evicted.id, evicted.sent_at_step, not evicted.is_pending,
            )
            emit_to(
                self.events, "message:evicted",
                thread_id=evicted.thread_id, message_id=evicted.id, incorporated=not evicted.is_pending,
            )
