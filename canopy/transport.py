"""Authenticated HTTP transport for node API requests."""

import json
import logging
import socket
import threading
import time
from collections.abc import Mapping
from typing import Any, Protocol
from urllib.parse import urljoin

import requests

from .auth import issue_token
from .models import STATUS_FORBIDDEN, Node, Result, ResultKind
from .nodes import NodeRegistry
from .scheduler import CancelSignal
from .store import StoreError

logger = logging.getLogger(__name__)

USER_AGENT = "Canopy/0.1"

# Used when the caller does not pass a timeout.
DEFAULT_TIMEOUT_SECONDS = 10.0

READ_CHUNK_SIZE = 8192


class Transport(Protocol):
    """What a polling session needs from the transport."""

    def request(
        self,
        endpoint: str,
        signal: CancelSignal | None = None,
        timeout: float | None = None,
    ) -> Result: ...


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def build_url(address: str, endpoint: str) -> str:
    """Resolve an endpoint against a node base address.

    Absolute endpoint paths replace any path on the base address, the same
    way a browser resolves ``new URL(endpoint, base)``.
    """
    return urljoin(address, endpoint)


class AuthenticatedTransport:
    """Issues requests to the active node with a fresh bearer token.

    Every outcome, including "no node configured" and network failures, is
    returned as a Result. Nothing is retried here.

    Example:
        transport = AuthenticatedTransport(registry)
        result = transport.request("/v1/monitor/cpu", timeout=5)
        if result.ok:
            print(result.payload)
    """

    def __init__(
        self,
        registry: NodeRegistry,
        session: requests.Session | None = None,
    ) -> None:
        self._registry = registry
        self._session = session or requests.Session()

    def request(
        self,
        endpoint: str,
        signal: CancelSignal | None = None,
        timeout: float | None = None,
        headers: Mapping[str, str] | None = None,
        method: str = "GET",
        **kwargs: Any,
    ) -> Result:
        """Request an endpoint on the active node.

        Args:
            endpoint: API path such as "/v1/monitor/cpu".
            signal: Cancellation signal; a cancelled request yields a 503 result.
            timeout: Request timeout in seconds.
            headers: Extra headers merged under the Authorization header.
            method: HTTP method.
            **kwargs: Passed through unchanged to ``requests.Session.request``.

        Returns:
            Result describing the outcome. Never raises.
        """
        try:
            node = self._registry.get_active_node()
        except StoreError as e:
            logger.error("Failed to read active node: %s", e)
            node = None

        if node is None:
            logger.debug("No active node configured, skipping %s", endpoint)
            return Result.no_node()

        return self.request_node(
            node,
            endpoint,
            signal=signal,
            timeout=timeout,
            headers=headers,
            method=method,
            **kwargs,
        )

    def request_node(
        self,
        node: Node,
        endpoint: str,
        signal: CancelSignal | None = None,
        timeout: float | None = None,
        headers: Mapping[str, str] | None = None,
        method: str = "GET",
        **kwargs: Any,
    ) -> Result:
        """Request an endpoint on a specific node (used by health checks).

        ``timeout`` bounds the whole exchange, body included. When it runs
        out, or ``signal`` is cancelled, the socket is shut down so a node
        that stalls mid-response cannot hold the request open.
        """
        if signal is None:
            signal = CancelSignal()
        if signal.cancelled:
            return _cancelled(signal)

        merged_headers = {"User-Agent": USER_AGENT}
        if headers:
            merged_headers.update(headers)
        merged_headers["Authorization"] = issue_token(node.secret)

        url = build_url(node.address, endpoint)
        budget = timeout if timeout is not None else DEFAULT_TIMEOUT_SECONDS

        # requests' timeout applies to each socket read, not to the total.
        watchdog = threading.Timer(budget, signal.cancel, args=("timeout",))
        watchdog.daemon = True
        start = time.monotonic()
        watchdog.start()

        try:
            return self._exchange(method, url, merged_headers, budget, signal, start, **kwargs)
        except Exception as e:
            elapsed_ms = _elapsed_ms(start)
            if signal.cancelled:
                logger.debug("%s cancelled (%s)", url, signal.reason)
                return _cancelled(signal, elapsed_ms)
            return _request_failed(url, e, elapsed_ms)
        finally:
            watchdog.cancel()

    def _exchange(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        timeout: float,
        signal: CancelSignal,
        start: float,
        **kwargs: Any,
    ) -> Result:
        with self._session.request(
            method,
            url,
            headers=headers,
            timeout=timeout,
            stream=True,
            **kwargs,
        ) as response:
            if signal.cancelled:
                return _cancelled(signal, _elapsed_ms(start))
            if not 200 <= response.status_code < 300:
                return _interpret_response(response, None, _elapsed_ms(start))

            body = _read_body(response, signal)
            elapsed_ms = _elapsed_ms(start)
            if signal.cancelled:
                return _cancelled(signal, elapsed_ms)
            return _interpret_response(response, body, elapsed_ms)

    def close(self) -> None:
        self._session.close()


def _cancelled(signal: CancelSignal, elapsed_ms: int = 0) -> Result:
    return Result.unavailable(f"Request cancelled ({signal.reason})", elapsed_ms)


def _request_failed(url: str, error: Exception, elapsed_ms: int) -> Result:
    """Turn an exception raised while requesting ``url`` into a Result."""
    if isinstance(error, requests.Timeout):
        logger.debug("%s timed out", url)
        return Result.unavailable("Request timed out", elapsed_ms)
    if isinstance(error, requests.ConnectionError):
        logger.debug("%s connection failed: %s", url, error)
        return Result.unavailable(f"Connection failed: {error}", elapsed_ms)
    if isinstance(error, requests.RequestException):
        logger.warning("%s request failed: %s", url, error)
        return Result.unavailable(f"Request failed: {error}", elapsed_ms)
    logger.error("%s unexpected transport error: %s", url, error)
    return Result.unavailable(str(error), elapsed_ms)


def _shutdown_socket(response: requests.Response) -> None:
    """Wake a thread blocked reading ``response``. Closing alone does not."""
    connection = getattr(response.raw, "connection", None)
    sock = getattr(connection, "sock", None)
    if sock is None:
        response.close()
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        logger.debug("Socket already closed: %s", e)


def _read_body(response: requests.Response, signal: CancelSignal) -> bytes:
    """Read a streamed body, aborting the read if ``signal`` is cancelled."""
    lock = threading.Lock()
    reading = True

    def abort() -> None:
        # Once reading is over the connection may be back in the pool.
        with lock:
            if reading:
                _shutdown_socket(response)

    signal.add_callback(abort)
    try:
        chunks = []
        for chunk in response.iter_content(chunk_size=READ_CHUNK_SIZE):
            if signal.cancelled:
                break
            chunks.append(chunk)
        return b"".join(chunks)
    finally:
        with lock:
            reading = False
        signal.remove_callback(abort)


def _interpret_response(response: requests.Response, body: bytes | None, elapsed_ms: int) -> Result:
    """Turn an HTTP response and its body into a Result."""
    status_code = response.status_code

    if status_code == STATUS_FORBIDDEN:
        return Result(
            kind=ResultKind.AUTH_REJECTED,
            status_code=status_code,
            error="Authentication failed: node rejected the token",
            elapsed_ms=elapsed_ms,
        )

    if not 200 <= status_code < 300:
        return Result(
            kind=ResultKind.HTTP_ERROR,
            status_code=status_code,
            error=f"HTTP {status_code}: {response.reason}",
            elapsed_ms=elapsed_ms,
        )

    try:
        payload = json.loads(body or b"")
    except ValueError as e:
        return Result(
            kind=ResultKind.INVALID_RESPONSE,
            status_code=status_code,
            error=f"Invalid JSON response: {e}",
            elapsed_ms=elapsed_ms,
        )

    return Result(
        kind=ResultKind.OK,
        status_code=status_code,
        payload=payload,
        elapsed_ms=elapsed_ms,
    )
