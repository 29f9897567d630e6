"""Headless dashboard: one polling session per configured feed."""

import logging
import threading
from collections.abc import Callable
from typing import Any

from .config import Config, SubscriptionConfig
from .models import ConnectionStatus, Result
from .poller import PollPolicy, PollSession
from .scheduler import Scheduler
from .transport import Transport

logger = logging.getLogger(__name__)


class Dashboard:
    """Runs every configured subscription as an independent session.

    Sessions are started and stopped together but otherwise share nothing:
    each has its own failure counter, timers and connection status.

    Example:
        dashboard = Dashboard(config, transport, ThreadScheduler())
        dashboard.start()
        # ... later ...
        dashboard.stop()
    """

    def __init__(
        self,
        config: Config,
        transport: Transport,
        scheduler: Scheduler,
        on_data: Callable[[str, Any], None] | None = None,
        on_status_change: Callable[[str, ConnectionStatus], None] | None = None,
        on_failure: Callable[[str, Result], None] | None = None,
        only: list[str] | None = None,
    ) -> None:
        """Initialize the dashboard.

        Args:
            config: Application configuration with the subscriptions to run.
            transport: Transport shared by all sessions.
            scheduler: Scheduler shared by all sessions.
            on_data: Called with (subscription name, payload).
            on_status_change: Called with (subscription name, new status).
            on_failure: Called with (subscription name, failed Result).
            only: Restrict to these subscription names.
        """
        self._config = config
        self._transport = transport
        self._scheduler = scheduler
        self._on_data = on_data
        self._on_status_change = on_status_change
        self._on_failure = on_failure
        self._lock = threading.Lock()
        self._sessions: dict[str, PollSession] = {}
        self._subscriptions = self._select(config.subscriptions, only)

    @staticmethod
    def _select(subscriptions: list[SubscriptionConfig], only: list[str] | None) -> list[SubscriptionConfig]:
        if not only:
            return list(subscriptions)
        known = {sub.name for sub in subscriptions}
        unknown = [name for name in only if name not in known]
        if unknown:
            logger.warning("Ignoring unknown subscriptions: %s", ", ".join(unknown))
        return [sub for sub in subscriptions if sub.name in only]

    @property
    def subscriptions(self) -> list[SubscriptionConfig]:
        return list(self._subscriptions)

    def start(self) -> None:
        """Start a session for every selected subscription."""
        with self._lock:
            if self._sessions:
                logger.warning("Dashboard already running")
                return
            for sub in self._subscriptions:
                self._sessions[sub.name] = self._create_session(sub)
            sessions = list(self._sessions.values())

        for session in sessions:
            session.start()
        logger.info("Dashboard started with %d subscription(s)", len(sessions))

    def stop(self) -> None:
        """Stop every session. Safe to call more than once."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions = {}

        for session in sessions:
            session.stop()
        if sessions:
            logger.info("Dashboard stopped")

    def is_running(self) -> bool:
        return bool(self._sessions)

    def session(self, name: str) -> PollSession | None:
        return self._sessions.get(name)

    def statuses(self) -> dict[str, ConnectionStatus]:
        return {name: session.status for name, session in self._sessions.items()}

    def latest(self, name: str) -> Any:
        """Return the most recent payload for a subscription, stale or not."""
        session = self._sessions.get(name)
        return session.last_payload if session is not None else None

    def _create_session(self, sub: SubscriptionConfig) -> PollSession:
        name = sub.name

        def on_data(payload: Any) -> None:
            if self._on_data is not None:
                self._on_data(name, payload)

        def on_status_change(status: ConnectionStatus) -> None:
            if self._on_status_change is not None:
                self._on_status_change(name, status)

        def on_failure(result: Result) -> None:
            if self._on_failure is not None:
                self._on_failure(name, result)

        return PollSession(
            sub.endpoint,
            PollPolicy.from_config(sub, self._config.polling),
            self._transport,
            self._scheduler,
            on_data=on_data,
            on_status_change=on_status_change,
            on_failure=on_failure,
            name=name,
        )
