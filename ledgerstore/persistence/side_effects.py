"""Background queue for best-effort durability side effects of writes."""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional

Callback = Optional[Callable[[], None]]


@dataclass(frozen=True)
class SideEffectFailure:
    """One failed task run, kept for diagnostics."""

    task: str
    error: str
    failed_at: float


class SideEffectQueue:
    """Run named tasks (checkpoint, emergency backup) off the write path.

    Requests for a task that is already pending are coalesced. Failures are
    logged and recorded in a bounded failure log; they never reach the writer.
    """

    def __init__(
        self,
        *,
        tasks: Dict[str, Callable[[], object]],
        logger: Optional[logging.Logger] = None,
        on_done_getter: Optional[Callable[[], Callback]] = None,
        max_failures: int = 50,
    ) -> None:
        self._tasks = dict(tasks)
        self._logger = logger or logging.getLogger(__name__)
        self._on_done_getter = on_done_getter or (lambda: None)

        self._lock = threading.Lock()
        self._wakeup = threading.Condition(self._lock)
        self._pending: List[str] = []
        self._failures: Deque[SideEffectFailure] = deque(maxlen=max_failures)
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._closed = False
        self._busy = False

    def enqueue(self, name: str) -> bool:
        """Request ``name``; returns False when the queue is closed or the task is unknown."""
        if name not in self._tasks:
            self._logger.warning("Unknown side effect requested: %s", name)
            return False
        with self._lock:
            if self._closed:
                self._debug(f"enqueue skipped after shutdown: {name}")
                return False
            if name not in self._pending:
                self._pending.append(name)
            self._ensure_worker()
            self._wakeup.notify_all()
        return True

    def _ensure_worker(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._running = True
        self._thread = threading.Thread(target=self._worker, name="LedgerSideEffects", daemon=True)
        self._thread.start()

    def _worker(self) -> None:
        while True:
            with self._lock:
                while not self._pending and self._running:
                    self._wakeup.wait()
                if not self._pending and not self._running:
                    self._wakeup.notify_all()
                    return
                name = self._pending.pop(0)
                self._busy = True
            try:
                self._tasks[name]()
            except Exception as exc:  # best effort: recorded, never raised to writers
                self._logger.error("Side effect %s failed: %s", name, exc, exc_info=True)
                with self._lock:
                    self._failures.append(SideEffectFailure(name, str(exc), time.time()))
            finally:
                with self._lock:
                    self._busy = False
                    self._wakeup.notify_all()
                self._invoke_callback(self._on_done_getter())

    def drain(self, timeout: float = 5.0) -> bool:
        """Block until every pending task has run; returns False on timeout."""
        deadline = time.monotonic() + timeout
        with self._lock:
            while self._pending or self._busy:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._wakeup.wait(remaining)
        return True

    def failures(self) -> List[SideEffectFailure]:
        with self._lock:
            return list(self._failures)

    def shutdown(self, *, wait: bool = True, join_timeout: float = 8.0) -> None:
        """Stop accepting work; optionally let queued tasks finish."""
        with self._lock:
            self._closed = True
            if not wait:
                self._pending.clear()
            self._running = False
            self._wakeup.notify_all()
            thread = self._thread
        if wait and thread and thread.is_alive():
            thread.join(timeout=join_timeout)

    def _invoke_callback(self, callback: Callback) -> None:
        if callable(callback):
            try:
                callback()
            except Exception as exc:  # pragma: no cover - observer must not break the worker
                self._logger.debug("Side effect callback raised: %s", exc, exc_info=True)

    def _debug(self, message: str) -> None:
        self._logger.debug(message)
