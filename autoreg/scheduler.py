"""Coordinator loop: one thread consumes a FIFO of events, one at a time.

Every handler runs to completion before the next event is taken, so state
owned by the handlers needs no further locking. Blocking work goes to a
``TaskRunner`` and comes back as a new event.
"""
from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class LoopEvent:
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    reply: Optional[Future] = None


Handler = Callable[[LoopEvent], Any]

# Returned by a handler that resolves the reply itself from a later event.
DEFERRED = object()


class TaskRunner:
    def submit(self, fn: Callable[[], None], *, name: str = "") -> None:
        raise NotImplementedError

    def join(self, timeout: float | None = None) -> None:
        return None


class ThreadTaskRunner(TaskRunner):
    """Runs each job on its own daemon thread."""

    def __init__(self) -> None:
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def submit(self, fn: Callable[[], None], *, name: str = "") -> None:
        thread = threading.Thread(target=fn, name=name or "autoreg-worker", daemon=True)
        with self._lock:
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
        thread.start()

    def join(self, timeout: float | None = None) -> None:
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout=timeout)


class InlineTaskRunner(TaskRunner):
    """Runs jobs immediately on the caller's thread."""

    def submit(self, fn: Callable[[], None], *, name: str = "") -> None:
        fn()


class ReactionLoop:
    def __init__(self, handler: Handler, *, name: str = "autoreg-coordinator") -> None:
        self.handler = handler
        self.name = name
        self._queue: "queue.Queue[LoopEvent | None]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._timers: set[threading.Timer] = set()
        self._timers_lock = threading.Lock()

    def post(self, kind: str, payload: dict[str, Any] | None = None, *, reply: Future | None = None) -> None:
        self._queue.put(LoopEvent(kind=kind, payload=dict(payload or {}), reply=reply))

    def request(self, kind: str, payload: dict[str, Any] | None = None) -> Future:
        future: Future = Future()
        self.post(kind, payload, reply=future)
        return future

    def call_later(self, delay: float, kind: str, payload: dict[str, Any] | None = None) -> None:
        if delay <= 0:
            self.post(kind, payload)
            return

        def _fire() -> None:
            with self._timers_lock:
                self._timers.discard(timer)
            self.post(kind, payload)

        timer = threading.Timer(delay, _fire)
        timer.daemon = True
        with self._timers_lock:
            self._timers.add(timer)
        timer.start()

    def cancel_timers(self) -> None:
        with self._timers_lock:
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    @property
    def pending_timers(self) -> int:
        with self._timers_lock:
            return len(self._timers)

    def _dispatch(self, event: LoopEvent) -> None:
        try:
            result = self.handler(event)
        except Exception as exc:  # noqa: BLE001
            logger.exception("coordinator handler for %s failed", event.kind)
            if event.reply is not None and not event.reply.done():
                event.reply.set_exception(exc)
            return
        if result is DEFERRED:
            return
        if event.reply is not None and not event.reply.done():
            event.reply.set_result(result)

    def run_pending(self, max_events: int | None = None) -> int:
        """Process queued events on the calling thread until the queue is empty."""
        processed = 0
        while max_events is None or processed < max_events:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                break
            if event is None:
                continue
            self._dispatch(event)
            processed += 1
        return processed

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self.cancel_timers()
        self._queue.put(None)
        if self._thread:
            self._thread.join(timeout=5)

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            event = self._queue.get()
            if event is None:
                continue
            self._dispatch(event)
