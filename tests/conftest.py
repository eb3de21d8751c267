"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import itertools
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from observer_mailbox.store import MailboxConfig, MessageStore  # noqa: E402
from observer_mailbox.types import StepResponse, StepSnapshot  # noqa: E402


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var == "OBSERVER_MAILBOX_CONFIG" or var.startswith("OBSERVER_MAILBOX__"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def ids() -> Callable[[], str]:
    """Deterministic message ids: m1, m2, ..."""
    counter = itertools.count(1)
    return lambda: f"m{next(counter)}"


@pytest.fixture
def store(ids) -> MessageStore:
    return MessageStore(MailboxConfig(), clock=lambda: 1000.0, id_factory=ids)


@pytest.fixture
def make_store(ids) -> Callable[..., MessageStore]:
    def factory(**cfg: Any) -> MessageStore:
        return MessageStore(MailboxConfig(**cfg), clock=lambda: 1000.0, id_factory=ids)
    return factory


@pytest.fixture
def msg() -> Callable[..., Dict[str, Any]]:
    """Build a candidate message dict with sensible defaults."""
    def factory(content: str = "note", *, step: int = 1, **overrides: Any) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "thread_id": "t1",
            "sender": "observer",
            "sent_at_step": step,
            "category": "insight",
            "content": content,
            "confidence": 0.8,
        }
        data.update(overrides)
        return data
    return factory


@pytest.fixture
def snapshot() -> Callable[..., StepSnapshot]:
    def factory(step: int = 1, *, thread_id: str = "t1", text: str = "", **kw: Any) -> StepSnapshot:
        return StepSnapshot(
            thread_id=thread_id,
            step_number=step,
            timestamp=1000.0,
            response=kw.pop("response", None) or StepResponse(text=text),
            **kw,
        )
    return factory


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()
