"""Bounded per-thread history of step snapshots."""
from __future__ import annotations

from collections import deque
from typing import Deque, Dict, List, Optional

from .errors import ConfigurationError
from .types import StepSnapshot, ThreadId


class SnapshotLog:
    """Per-thread FIFO ring buffer; the oldest snapshot drops on overflow."""

    def __init__(self, capacity: int = 10) -> None:
        if capacity < 0:
            raise ConfigurationError("snapshot capacity must be >= 0")
        self.capacity = capacity
        self._threads: Dict[ThreadId, Deque[StepSnapshot]] = {}

    def append(self, snapshot: StepSnapshot) -> None:
        buf = self._threads.get(snapshot.thread_id)
        if buf is None:
            buf = deque(maxlen=self.capacity)
            self._threads[snapshot.thread_id] = buf
        buf.append(snapshot)

    def recent(self, thread_id: ThreadId, limit: Optional[int] = None) -> List[StepSnapshot]:
        """Return up to ``limit`` most recent snapshots, oldest first."""
        buf = self._threads.get(thread_id)
        if not buf:
            return []
        items = list(buf)
        if limit is None:
            return items
        if limit <= 0:
            return []
        return items[-limit:]

    def count(self, thread_id: ThreadId) -> int:
        return len(self._threads.get(thread_id, ()))

    def clear_thread(self, thread_id: ThreadId) -> None:
        self._threads.pop(thread_id, None)

    def clear(self) -> None:
        self._threads.clear()
