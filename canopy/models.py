"""Data models shared by the node registry, transport and poller."""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class NodeStatus(StrEnum):
    """Health of a configured node as last observed by a health check."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    UNAUTHORIZED = "unauthorized"
    CHECKING = "checking"


class ConnectionStatus(StrEnum):
    """Connection state of a single polling session."""

    LOADING = "loading"
    CONNECTED = "connected"
    RETRYING = "retrying"
    DISCONNECTED = "disconnected"


class ResultKind(StrEnum):
    """Classification of a request outcome."""

    OK = "ok"
    HTTP_ERROR = "http_error"
    AUTH_REJECTED = "auth_rejected"
    UNAVAILABLE = "unavailable"
    NO_NODE = "no_node"
    INVALID_RESPONSE = "invalid_response"


# Synthetic status codes used when no real response exists.
STATUS_NO_NODE = 400
STATUS_FORBIDDEN = 403
STATUS_UNAVAILABLE = 503


@dataclass(frozen=True)
class Node:
    """A remote twig agent the dashboard can poll.

    Attributes:
        id: Registry key (e.g. "node_1718000000000").
        name: Human readable label.
        address: Base URL of the agent API (http:// or https://).
        secret: Base64-encoded shared secret used to derive tokens.
        status: Last observed health status.
    """

    id: str
    name: str
    address: str
    secret: str
    status: NodeStatus = NodeStatus.CHECKING

    def to_dict(self) -> dict[str, str]:
        return {
            "name": self.name,
            "address": self.address,
            "secret": self.secret,
            "status": str(self.status),
        }

    @classmethod
    def from_dict(cls, node_id: str, data: dict[str, Any]) -> "Node":
        status = data.get("status", NodeStatus.CHECKING)
        try:
            status = NodeStatus(status)
        except ValueError:
            status = NodeStatus.CHECKING
        return cls(
            id=node_id,
            name=str(data.get("name", node_id)),
            address=str(data.get("address", "")),
            secret=str(data.get("secret", "")),
            status=status,
        )


@dataclass(frozen=True)
class Result:
    """Uniform outcome of an authenticated request.

    Every request path (success, HTTP error, network failure, missing node)
    produces one of these instead of raising.

    Attributes:
        kind: Classification of the outcome.
        status_code: HTTP status code, or the synthetic code for failures
            that never reached the node (400 no node, 503 unavailable).
        payload: Parsed JSON body for successful responses, passed through
            unchanged. None otherwise.
        error: Human readable failure description, or None on success.
        elapsed_ms: Wall time spent on the request in milliseconds.
    """

    kind: ResultKind
    status_code: int
    payload: Any = None
    error: str | None = None
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.kind is ResultKind.OK

    @property
    def is_auth_error(self) -> bool:
        return self.kind is ResultKind.AUTH_REJECTED

    @classmethod
    def no_node(cls) -> "Result":
        return cls(
            kind=ResultKind.NO_NODE,
            status_code=STATUS_NO_NODE,
            error="No active node configured",
        )

    @classmethod
    def unavailable(cls, error: str, elapsed_ms: int = 0) -> "Result":
        return cls(
            kind=ResultKind.UNAVAILABLE,
            status_code=STATUS_UNAVAILABLE,
            error=error,
            elapsed_ms=elapsed_ms,
        )
