"""Cancellable delayed tasks and request cancellation signals."""

import logging
import threading
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)


class ScheduledTask:
    """Handle for a callback scheduled to run once after a delay.

    ``cancel()`` is idempotent and safe to call from any thread, including
    from inside the callback itself. A cancelled task never runs its
    callback.
    """

    def __init__(self, callback: Callable[[], None]) -> None:
        self._callback = callback
        self._lock = threading.Lock()
        self._cancelled = False
        self._started = False
        self._timer: threading.Timer | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        """True once the callback has started or the task was cancelled."""
        return self._started or self._cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            timer = self._timer
        if timer is not None:
            timer.cancel()

    def run(self) -> None:
        """Run the callback unless the task was cancelled or already ran."""
        with self._lock:
            if self._cancelled or self._started:
                return
            self._started = True
        try:
            self._callback()
        except Exception as e:
            logger.error("Scheduled task failed: %s", e)


class Scheduler(Protocol):
    """Anything that can run a callback after a delay in seconds."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledTask: ...


class ThreadScheduler:
    """Scheduler backed by daemon ``threading.Timer`` threads.

    Each task gets its own timer thread, so a slow callback (a blocking HTTP
    request) never delays tasks belonging to other sessions.
    """

    def __init__(self, name: str = "canopy") -> None:
        self._name = name
        self._counter = 0
        self._lock = threading.Lock()

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        task = ScheduledTask(callback)
        with self._lock:
            self._counter += 1
            count = self._counter
        timer = threading.Timer(max(0.0, delay), task.run)
        timer.daemon = True
        timer.name = f"{self._name}-task-{count}"
        task._timer = timer
        timer.start()
        return task


class CancelSignal:
    """One-shot cancellation flag for a single in-flight request.

    Both the per-request timeout and session teardown cancel through the
    same signal; only the first reason is kept. Callbacks registered with
    ``add_callback`` run once, on the thread that cancels, so a blocked
    read can be interrupted from outside.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel the signal.

        Returns:
            True if this call cancelled it, False if it was already cancelled.
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            callbacks = self._callbacks
            self._callbacks = []

        for callback in callbacks:
            self._run_callback(callback)
        return True

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on cancellation, or right away if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        self._run_callback(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def _run_callback(self, callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as e:
            logger.error("Cancel callback failed: %s", e)

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)
