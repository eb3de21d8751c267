"""Run observer handlers against a snapshot with retry and failure isolation.

Each handler gets ``max_retries + 1`` attempts; the wait between attempt
``i`` and ``i + 1`` (zero-based) is ``base_delay * 2 ** i``. Only the final,
exhausted failure is reported, through the ``on_error`` callback and the
``errors`` list of the result. A failing handler never stops its siblings
unless ``stop_on_error`` is set.

Fire-and-forget work runs on the caller's event loop when there is one.
A synchronous caller gets a coordinator-owned loop on a daemon thread
instead; :meth:`DispatchCoordinator.drain` waits for that work and
:meth:`DispatchCoordinator.close` stops the thread.
"""
from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Coroutine, Iterable, List, Optional, Set, Tuple, Union

from .errors import ConfigurationError, MessageValidationError
from .events import EventBus, emit_to
from .registry import ObserverHandler, ObserverResult, order_handlers, resolve
from .store import MessageStore
from .types import StepSnapshot, coerce_input

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[BaseException, StepSnapshot, int], None]
SleepFn = Callable[[float], Awaitable[Any]]
CoroFactory = Callable[[], Coroutine[Any, Any, Any]]
Background = Union[asyncio.Task, concurrent.futures.Future]


# -----------------------------
# Types
# -----------------------------
@dataclass
class RetryPolicy:
    max_retries: int = 0        # extra attempts after the first
    base_delay: float = 0.1     # seconds before the first retry

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must be >= 0")
        if self.base_delay < 0:
            raise ConfigurationError("base_delay must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Wait after the zero-based ``attempt`` failed."""
        return self.base_delay * (2 ** attempt)


@dataclass
class HandlerFailure:
    """A handler that still failed after every attempt."""
    handler_id: str
    error: BaseException
    attempts: int


@dataclass
class DispatchResult:
    ran: int = 0                        # handlers that completed successfully
    messages_sent: int = 0              # accepted by the store (not deduplicated)
    skipped: List[str] = field(default_factory=list)
    errors: List[HandlerFailure] = field(default_factory=list)
    short_circuited: bool = False
    aborted: bool = False               # stopped by stop_on_error


def make_error_logger(log: Optional[logging.Logger] = None) -> ErrorCallback:
    """Default ``on_error``: log the exhausted failure with its traceback."""
    log = log or logger

    def log_failure(error: BaseException, snapshot: StepSnapshot, attempts: int) -> None:
        log.error(
            "Observer dispatch failed after %d attempt(s) (thread=%s step=%d): %s",
            attempts, snapshot.thread_id, snapshot.step_number, error,
            exc_info=(type(error), error, error.__traceback__),
        )

    return log_failure


# -----------------------------
# Coordinator
# -----------------------------
class DispatchCoordinator:
    """Dispatch snapshots to observers and forward what they produce to a store.

    ``dispatch`` is the awaited variant; ``dispatch_nowait`` schedules the
    same work in the background and returns at once. ``sleep`` is
    injectable so tests can record backoff without waiting. ``events``
    defaults to the store's bus.
    """

    def __init__(
        self,
        store: MessageStore,
        *,
        retry: Optional[RetryPolicy] = None,
        on_error: Optional[ErrorCallback] = None,
        stop_on_error: bool = False,
        sleep: SleepFn = asyncio.sleep,
        log: Optional[logging.Logger] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.store = store
        self.retry = retry or RetryPolicy()
        self.stop_on_error = stop_on_error
        self.events = events if events is not None else store.events
        self._log = log or logger
        self.on_error = on_error or make_error_logger(self._log)
        self._sleep = sleep
        self._tasks: Set[Background] = set()
        self._tasks_lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None

    # ----------------- public API -----------------
    async def dispatch(self, snapshot: StepSnapshot, handlers: Iterable[ObserverHandler]) -> DispatchResult:
        result = DispatchResult()

        for handler in order_handlers(handlers):
            try:
                accepted = handler.accepts(snapshot)
            except Exception as e:
                self._log.warning("filter for observer %s raised: %s", handler.id, e)
                if self._fail(result, HandlerFailure(handler.id, e, 0), snapshot):
                    break
                continue
            if not accepted:
                result.skipped.append(handler.id)
                continue

            self._emit("observer:triggered", snapshot, observer_id=handler.id)
            started = time.perf_counter()
            outcome, failure = await self._with_retry(handler.id, snapshot, lambda s, h=handler: self._invoke(h, s))
            if failure is not None:
                if self._fail(result, failure, snapshot):
                    break
                continue

            result.ran += 1
            sent = self._forward(handler, snapshot, outcome, result)
            result.messages_sent += sent
            self._emit(
                "observer:completed", snapshot,
                observer_id=handler.id,
                duration_ms=(time.perf_counter() - started) * 1000.0,
                messages_generated=len(outcome.messages),
                messages_sent=sent,
            )

            if outcome.skip_remaining:
                result.short_circuited = True
                break

        return result

    def dispatch_nowait(self, snapshot: StepSnapshot, handlers: Iterable[ObserverHandler]) -> Background:
        """Fire-and-forget dispatch; failures reach ``on_error`` only.

        Returns an ``asyncio.Task`` inside a running loop, otherwise a
        ``concurrent.futures.Future`` from the background loop.
        """
        chosen = list(handlers)
        return self.spawn(lambda: self.dispatch(snapshot, chosen))

    async def run_with_retry(
        self,
        snapshot: StepSnapshot,
        fn: Callable[[StepSnapshot], Any],
        *,
        label: str = "handler",
    ) -> Optional[HandlerFailure]:
        """Call a single plain handler with the retry policy; report exhaustion."""
        _, failure = await self._with_retry(label, snapshot, lambda s: resolve(fn(s)))
        if failure is not None:
            self._report(failure, snapshot)
        return failure

    def spawn(self, make: CoroFactory) -> Background:
        """Run the coroutine built by ``make`` in the background.

        The coroutine is only created once a loop has been picked, so
        nothing is left un-awaited if scheduling fails.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            job: Background = loop.create_task(self._guard(make()))
        else:
            job = asyncio.run_coroutine_threadsafe(self._guard(make()), self._background_loop())
        with self._tasks_lock:
            self._tasks.add(job)
        job.add_done_callback(self._forget)
        return job

    @property
    def pending(self) -> int:
        with self._tasks_lock:
            return sum(1 for job in self._tasks if not job.done())

    async def join(self) -> None:
        """Wait for every background dispatch started so far."""
        while True:
            with self._tasks_lock:
                jobs = [job for job in self._tasks if not job.done()]
            if not jobs:
                return
            await asyncio.gather(*(
                job if isinstance(job, asyncio.Future) else asyncio.wrap_future(job) for job in jobs
            ))

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Block until work on the background loop finishes; False on timeout.

        For synchronous callers. Tasks on a caller's own loop are awaited
        with :meth:`join` instead.
        """
        with self._tasks_lock:
            futures = [job for job in self._tasks if isinstance(job, concurrent.futures.Future)]
        _, not_done = concurrent.futures.wait(futures, timeout=timeout)
        return not not_done

    def close(self, timeout: Optional[float] = None) -> None:
        """Stop the background loop thread, if one was started."""
        loop, thread = self._loop, self._thread
        self._loop = self._thread = None
        if loop is None:
            return
        loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(timeout)
        if not loop.is_running():
            loop.close()

    # ----------------- internals -----------------
    def _background_loop(self) -> asyncio.AbstractEventLoop:
        with self._tasks_lock:
            if self._loop is None:
                loop = asyncio.new_event_loop()
                thread = threading.Thread(target=loop.run_forever, name="observer-dispatch", daemon=True)
                thread.start()
                self._loop, self._thread = loop, thread
            return self._loop

    def _forget(self, job: Background) -> None:
        with self._tasks_lock:
            self._tasks.discard(job)

    async def _invoke(self, handler: ObserverHandler, snapshot: StepSnapshot) -> ObserverResult:
        out = await resolve(handler.handle(snapshot))
        if out is None:
            return ObserverResult()
        if not isinstance(out, ObserverResult):
            raise TypeError(f"observer {handler.id} returned {type(out).__name__}, expected ObserverResult or None")
        return out

    async def _with_retry(
        self,
        label: str,
        snapshot: StepSnapshot,
        call: Callable[[StepSnapshot], Awaitable[Any]],
    ) -> Tuple[Any, Optional[HandlerFailure]]:
        last_err: Optional[BaseException] = None
        attempts = 0
        for attempt in range(self.retry.max_retries + 1):
            attempts = attempt + 1
            try:
                return await call(snapshot), None
            except Exception as e:
                last_err = e
                if attempt < self.retry.max_retries:
                    delay = self.retry.delay_for(attempt)
                    self._log.warning("observer %s retry %d: %s (sleep %.2fs)", label, attempts, e, delay)
                    self._emit("observer:retry", snapshot, observer_id=label, attempt=attempts, delay=delay, error=str(e))
                    await self._sleep(delay)
        return None, HandlerFailure(label, last_err, attempts)  # type: ignore[arg-type]

    def _forward(
        self,
        handler: ObserverHandler,
        snapshot: StepSnapshot,
        outcome: ObserverResult,
        result: DispatchResult,
    ) -> int:
        sent = 0
        for raw in outcome.messages:
            try:
                candidate = coerce_input(raw, thread_id=snapshot.thread_id)
                if candidate.sender is None or candidate.sent_at_step is None:
                    candidate = coerce_input(
                        candidate,
                        sender=candidate.sender or handler.id,
                        sent_at_step=snapshot.step_number if candidate.sent_at_step is None else None,
                    )
                if self.store.send(candidate):
                    sent += 1
            except MessageValidationError as e:
                self._log.warning("observer %s produced an invalid message: %s", handler.id, e)
                self._fail(result, HandlerFailure(handler.id, e, 1), snapshot, stop=False)
        return sent

    def _fail(self, result: DispatchResult, failure: HandlerFailure, snapshot: StepSnapshot, *, stop: bool = True) -> bool:
        """Record and report a failure; return True if dispatch should stop."""
        result.errors.append(failure)
        self._report(failure, snapshot)
        if stop and self.stop_on_error:
            result.aborted = True
            return True
        return False

    def _report(self, failure: HandlerFailure, snapshot: StepSnapshot) -> None:
        self._emit(
            "observer:failed", snapshot,
            observer_id=failure.handler_id, error=str(failure.error), attempts=failure.attempts,
        )
        try:
            self.on_error(failure.error, snapshot, failure.attempts)
        except Exception:
            self._log.exception("on_error callback raised for observer %s", failure.handler_id)

    def _emit(self, event_type: str, snapshot: StepSnapshot, **data: Any) -> None:
        emit_to(self.events, event_type, thread_id=snapshot.thread_id, step=snapshot.step_number, **data)  # type: ignore[arg-type]

    async def _guard(self, coro: Coroutine[Any, Any, Any]) -> Any:
        try:
            return await coro
        except Exception:
            self._log.exception("background dispatch crashed")
            return None
