"""Resilient polling sessions for dashboard data feeds.

One PollSession drives one feed: it requests an endpoint, waits a fixed
interval, and repeats. Failures are counted and mapped onto a small
connection state machine:

    loading --success--> connected
    loading --no success within bootstrap period--> disconnected
    loading/connected --threshold consecutive failures--> retrying
    retrying --grace period without success--> disconnected
    any --success--> connected

Only one request per session is ever in flight. Sessions share nothing, so
any number of them can poll the same node independently.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from .config import PollingConfig, SubscriptionConfig
from .models import ConnectionStatus, Result
from .scheduler import CancelSignal, ScheduledTask, Scheduler
from .transport import Transport

logger = logging.getLogger(__name__)

DataCallback = Callable[[Any], None]
StatusCallback = Callable[[ConnectionStatus], None]
FailureCallback = Callable[[Result], None]


@dataclass(frozen=True)
class PollPolicy:
    """Timing and failure policy for a single session.

    Attributes:
        interval_ms: Delay between the end of one request and the next.
        timeout_ms: Budget for a single request before it is cancelled.
        failure_threshold: Consecutive failures before entering "retrying".
        grace_ms: Time spent in "retrying" before demotion to "disconnected".
        bootstrap_ms: Time allowed in "loading" before "disconnected".
        auth_retry_limit: Consecutive 403 responses after which the session
            stops issuing requests.
    """

    interval_ms: int = 1000
    timeout_ms: int = 5000
    failure_threshold: int = 3
    grace_ms: int = 3000
    bootstrap_ms: int = 3000
    auth_retry_limit: int = 3

    @classmethod
    def from_config(cls, subscription: SubscriptionConfig, polling: PollingConfig) -> "PollPolicy":
        return cls(
            interval_ms=subscription.interval_ms,
            timeout_ms=subscription.timeout_ms,
            failure_threshold=polling.failure_threshold,
            grace_ms=polling.grace_ms,
            bootstrap_ms=polling.bootstrap_ms,
            auth_retry_limit=polling.auth_retry_limit,
        )


class _Attempt:
    """Bookkeeping for the one request a session has in flight."""

    __slots__ = ("signal", "deadline")

    def __init__(self) -> None:
        self.signal = CancelSignal()
        self.deadline: ScheduledTask | None = None


class PollSession:
    """Independent polling subscription with connection status tracking.

    Example:
        session = PollSession("/v1/monitor/cpu", PollPolicy(interval_ms=1000),
                              transport, scheduler, on_data=render)
        session.start()
        # ... later ...
        session.stop()
    """

    def __init__(
        self,
        endpoint: str,
        policy: PollPolicy,
        transport: Transport,
        scheduler: Scheduler,
        on_data: DataCallback | None = None,
        on_status_change: StatusCallback | None = None,
        on_failure: FailureCallback | None = None,
        name: str | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._policy = policy
        self._transport = transport
        self._scheduler = scheduler
        self._on_data = on_data
        self._on_status_change = on_status_change
        self._on_failure = on_failure
        self._name = name or endpoint

        # Callbacks run while holding the lock, and may call stop().
        self._lock = threading.RLock()
        self._status = ConnectionStatus.LOADING
        self._failure_count = 0
        self._auth_failures = 0
        self._started = False
        self._active = False
        self._halted = False
        self._attempt: _Attempt | None = None
        self._next_task: ScheduledTask | None = None
        self._demotion_task: ScheduledTask | None = None
        self._bootstrap_task: ScheduledTask | None = None
        self._last_payload: Any = None
        self._last_result: Result | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def policy(self) -> PollPolicy:
        return self._policy

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    def get_connection_status(self) -> ConnectionStatus:
        return self._status

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def in_flight(self) -> bool:
        return self._attempt is not None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def auth_rejected(self) -> bool:
        """True while the most recent failures were 403 responses."""
        return self._auth_failures > 0

    @property
    def halted(self) -> bool:
        """True once repeated 403s stopped the session from polling."""
        return self._halted

    @property
    def last_payload(self) -> Any:
        """Most recent successful payload; kept while disconnected."""
        return self._last_payload

    @property
    def last_result(self) -> Result | None:
        return self._last_result

    @property
    def disconnect_pending(self) -> bool:
        return self._demotion_task is not None

    def start(self) -> "PollSession":
        """Start polling. The first request is issued immediately.

        Returns:
            The session itself, whose ``stop`` method is the stop handle.
        """
        with self._lock:
            if self._started:
                logger.warning("%s: session already started", self._name)
                return self
            self._started = True
            self._active = True
            self._bootstrap_task = self._scheduler.call_later(
                self._policy.bootstrap_ms / 1000,
                self._on_bootstrap_expired,
            )
            self._next_task = self._scheduler.call_later(0, self._run_cycle)
        logger.debug("%s: polling %s every %dms", self._name, self._endpoint, self._policy.interval_ms)
        return self

    def stop(self) -> None:
        """Tear the session down. Idempotent and safe from any thread.

        No request is issued after this returns; an outstanding request is
        cancelled and its result discarded.
        """
        with self._lock:
            # Also marks a never-started session as finished.
            self._started = True
            was_active = self._active
            self._active = False

            if self._next_task is not None:
                self._next_task.cancel()
                self._next_task = None

            attempt = self._attempt
            self._attempt = None
            if attempt is not None:
                attempt.signal.cancel("teardown")
                if attempt.deadline is not None:
                    attempt.deadline.cancel()

            self._cancel_demotion()

            if self._bootstrap_task is not None:
                self._bootstrap_task.cancel()
                self._bootstrap_task = None

        if was_active:
            logger.debug("%s: polling stopped", self._name)

    def poll_now(self) -> None:
        """Run a cycle immediately unless one is already in flight."""
        self._run_cycle()

    def _run_cycle(self) -> None:
        with self._lock:
            if not self._active or self._halted or self._attempt is not None:
                return

            if self._next_task is not None:
                self._next_task.cancel()
                self._next_task = None

            attempt = _Attempt()
            self._attempt = attempt
            attempt.deadline = self._scheduler.call_later(
                self._policy.timeout_ms / 1000,
                lambda: self._on_deadline(attempt),
            )

        # The network call is the only blocking step; it runs unlocked so
        # stop() can cancel it.
        result = self._fetch(attempt)
        self._finish(attempt, result)

    def _fetch(self, attempt: _Attempt) -> Result:
        try:
            return self._transport.request(
                self._endpoint,
                signal=attempt.signal,
                timeout=self._policy.timeout_ms / 1000,
            )
        except Exception as e:
            logger.error("%s: transport raised: %s", self._name, e)
            return Result.unavailable(str(e))

    def _on_deadline(self, attempt: _Attempt) -> None:
        if attempt.signal.cancel("timeout"):
            logger.debug("%s: request exceeded %dms", self._name, self._policy.timeout_ms)

    def _finish(self, attempt: _Attempt, result: Result) -> None:
        with self._lock:
            # Torn down while the request was outstanding.
            if attempt is not self._attempt:
                return
            self._attempt = None
            if attempt.deadline is not None:
                attempt.deadline.cancel()

            if attempt.signal.cancelled and result.ok:
                result = Result.unavailable(f"Request cancelled ({attempt.signal.reason})", result.elapsed_ms)

            self._last_result = result
            if result.ok:
                self._handle_success(result)
            else:
                self._handle_failure(result)

            if self._active and not self._halted:
                self._next_task = self._scheduler.call_later(self._policy.interval_ms / 1000, self._run_cycle)

    def _handle_success(self, result: Result) -> None:
        if self._failure_count:
            logger.info("%s: recovered after %d failure(s)", self._name, self._failure_count)
        self._failure_count = 0
        self._auth_failures = 0
        self._cancel_demotion()
        if self._bootstrap_task is not None:
            self._bootstrap_task.cancel()
            self._bootstrap_task = None

        self._set_status(ConnectionStatus.CONNECTED)
        self._last_payload = result.payload
        self._notify(self._on_data, result.payload, "data")

    def _handle_failure(self, result: Result) -> None:
        self._failure_count += 1
        if result.is_auth_error:
            self._auth_failures += 1
        else:
            self._auth_failures = 0

        logger.debug(
            "%s: request failed (%d/%d): %s",
            self._name,
            self._failure_count,
            self._policy.failure_threshold,
            result.error,
        )
        self._notify(self._on_failure, result, "failure")
        if not self._active:
            return

        if self._failure_count >= self._policy.failure_threshold and self._status in (
            ConnectionStatus.LOADING,
            ConnectionStatus.CONNECTED,
        ):
            self._set_status(ConnectionStatus.RETRYING)
            self._demotion_task = self._scheduler.call_later(
                self._policy.grace_ms / 1000,
                self._on_grace_expired,
            )

        if self._auth_failures >= self._policy.auth_retry_limit and not self._halted:
            self._halted = True
            logger.warning(
                "%s: node rejected credentials %d times in a row, polling halted",
                self._name,
                self._auth_failures,
            )

    def _on_grace_expired(self) -> None:
        with self._lock:
            self._demotion_task = None
            if self._active and self._status is ConnectionStatus.RETRYING:
                self._set_status(ConnectionStatus.DISCONNECTED)

    def _on_bootstrap_expired(self) -> None:
        with self._lock:
            self._bootstrap_task = None
            if self._active and self._status is ConnectionStatus.LOADING:
                self._set_status(ConnectionStatus.DISCONNECTED)

    def _cancel_demotion(self) -> None:
        if self._demotion_task is not None:
            self._demotion_task.cancel()
            self._demotion_task = None

    def _set_status(self, status: ConnectionStatus) -> None:
        if status is self._status:
            return
        previous = self._status
        self._status = status
        logger.info("%s: %s -> %s", self._name, previous, status)
        self._notify(self._on_status_change, status, "status")

    def _notify(self, callback: Callable[[Any], None] | None, value: Any, kind: str) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception as e:
            logger.error("%s: %s callback failed: %s", self._name, kind, e)


def start_polling(
    endpoint: str,
    interval_ms: int,
    on_data: DataCallback | None,
    on_status_change: StatusCallback | None,
    *,
    transport: Transport,
    scheduler: Scheduler,
    policy: PollPolicy | None = None,
    on_failure: FailureCallback | None = None,
    name: str | None = None,
) -> PollSession:
    """Create and start a polling session.

    Args:
        endpoint: API path to poll.
        interval_ms: Delay between requests for this subscription.
        on_data: Called with each successful payload.
        on_status_change: Called with each new ConnectionStatus.
        transport: Transport used to issue requests.
        scheduler: Scheduler driving the session's timers.
        policy: Remaining policy values; its interval is replaced by interval_ms.
        on_failure: Called with each failed Result (e.g. to prompt for a new
            secret on ResultKind.AUTH_REJECTED).
        name: Label used in log messages.

    Returns:
        The started session; call ``session.stop()`` to end it.
    """
    session_policy = replace(policy or PollPolicy(), interval_ms=interval_ms)
    session = PollSession(
        endpoint,
        session_policy,
        transport,
        scheduler,
        on_data=on_data,
        on_status_change=on_status_change,
        on_failure=on_failure,
        name=name,
    )
    return session.start()
