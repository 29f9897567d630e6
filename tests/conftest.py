"""Shared fixtures and test doubles."""

import base64
import heapq
from collections.abc import Callable

import pytest

from canopy.models import Result, ResultKind
from canopy.scheduler import CancelSignal, ScheduledTask

ZERO_SECRET = base64.b64encode(bytes(384)).decode("ascii")
SEGMENTED_SECRET = base64.b64encode(b"".join(bytes([k]) * 64 for k in range(1, 7))).decode("ascii")


class ManualScheduler:
    """Scheduler on a virtual clock; tasks only run inside ``advance``."""

    def __init__(self) -> None:
        self.now = 0.0
        self._seq = 0
        self._queue: list[tuple[float, int, ScheduledTask]] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        task = ScheduledTask(callback)
        self._seq += 1
        heapq.heappush(self._queue, (self.now + max(0.0, delay), self._seq, task))
        return task

    def advance(self, seconds: float = 0.0) -> None:
        """Move the clock forward, running every task that falls due."""
        target = self.now + seconds
        while self._queue and self._queue[0][0] <= target:
            due, _, task = heapq.heappop(self._queue)
            if task.done:
                continue
            self.now = max(self.now, due)
            task.run()
        self.now = max(self.now, target)

    def pending(self) -> list[ScheduledTask]:
        return [task for _, _, task in self._queue if not task.done]


def ok(payload=None) -> Result:
    return Result(kind=ResultKind.OK, status_code=200, payload=payload if payload is not None else {"status": "ok"})


def fail(error: str = "Connection refused") -> Result:
    return Result.unavailable(error)


def forbidden() -> Result:
    return Result(kind=ResultKind.AUTH_REJECTED, status_code=403, error="Authentication failed")


class FakeTransport:
    """Transport returning scripted results, recording every call.

    ``hook`` runs inside the request (while it is in flight); if it returns
    a Result, that result is used.
    """

    def __init__(self, results: list[Result] | None = None, default: Result | None = None) -> None:
        self.results = list(results or [])
        self.default = default if default is not None else fail()
        self.calls: list[tuple[str, CancelSignal | None, float | None]] = []
        self.hook: Callable[[str, CancelSignal | None], Result | None] | None = None

    def request(self, endpoint: str, signal: CancelSignal | None = None, timeout: float | None = None) -> Result:
        self.calls.append((endpoint, signal, timeout))
        if self.hook is not None:
            hooked = self.hook(endpoint, signal)
            if hooked is not None:
                return hooked
        if self.results:
            return self.results.pop(0)
        return self.default


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
