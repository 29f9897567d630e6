"""Node health checks and new-node verification."""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed

import requests

from .auth import issue_token
from .models import Node, NodeStatus, ResultKind
from .nodes import NodeRegistry, validate_address
from .transport import USER_AGENT, AuthenticatedTransport, build_url

logger = logging.getLogger(__name__)

HEALTH_ENDPOINT = "/v1/system/information"

# Node lists are short; a few workers check them all in one round trip.
MAX_WORKERS = 4

DEFAULT_CHECK_TIMEOUT = 5.0


class NodeVerifyError(Exception):
    """Raised when a node cannot be added."""

    pass


class NodeUnreachable(NodeVerifyError):
    """The node's base address did not answer at all."""

    pass


class NodeAuthError(NodeVerifyError):
    """The node answered but rejected the secret."""

    pass


def check_node(
    node: Node,
    transport: AuthenticatedTransport,
    timeout: float = DEFAULT_CHECK_TIMEOUT,
) -> NodeStatus:
    """Check a node once and classify it.

    Returns:
        ACTIVE on 2xx, UNAUTHORIZED on 403, INACTIVE otherwise.
    """
    result = transport.request_node(node, HEALTH_ENDPOINT, timeout=timeout)
    if result.ok:
        return NodeStatus.ACTIVE
    if result.kind is ResultKind.AUTH_REJECTED:
        return NodeStatus.UNAUTHORIZED
    logger.debug("Node %s inactive: %s", node.id, result.error)
    return NodeStatus.INACTIVE


def check_all_nodes(
    registry: NodeRegistry,
    transport: AuthenticatedTransport,
    timeout: float = DEFAULT_CHECK_TIMEOUT,
) -> dict[str, NodeStatus]:
    """Check every registered node concurrently and persist the results.

    Returns:
        Mapping of node id to its new status.
    """
    nodes = registry.get_nodes()
    if not nodes:
        return {}

    for node_id in nodes:
        registry.update_node_status(node_id, NodeStatus.CHECKING)

    statuses: dict[str, NodeStatus] = {}
    with ThreadPoolExecutor(max_workers=MAX_WORKERS) as executor:
        futures = {executor.submit(check_node, node, transport, timeout): node_id for node_id, node in nodes.items()}

        for future in as_completed(futures):
            node_id = futures[future]
            try:
                statuses[node_id] = future.result()
            except Exception as e:
                logger.error("Failed to check node %s: %s", node_id, e)
                statuses[node_id] = NodeStatus.INACTIVE

    for node_id, status in statuses.items():
        registry.update_node_status(node_id, status)

    return statuses


def startup_check(
    registry: NodeRegistry,
    transport: AuthenticatedTransport,
    timeout: float = DEFAULT_CHECK_TIMEOUT,
) -> NodeStatus | None:
    """Health-check the active node before the dashboard starts.

    A node that rejects its secret is marked UNAUTHORIZED and deselected so
    the user is sent back to node setup.

    Returns:
        The active node's new status, or None if no node is active.
    """
    node = registry.get_active_node()
    if node is None:
        return None

    status = check_node(node, transport, timeout)
    registry.update_node_status(node.id, status)

    if status is NodeStatus.UNAUTHORIZED:
        logger.warning("Node %s rejected its secret; deselecting it", node.id)
        registry.set_current_node(None)
    elif status is NodeStatus.INACTIVE:
        logger.warning("Node %s is not responding", node.id)

    return status


def verify_new_node(
    address: str,
    secret: str,
    session: requests.Session | None = None,
    timeout: float = DEFAULT_CHECK_TIMEOUT,
) -> None:
    """Check that a node can be reached and accepts the secret.

    Raises:
        ConfigError: If the address is malformed.
        NodeUnreachable: If the base address does not respond.
        NodeAuthError: If the node rejects the derived token.
        NodeVerifyError: If the node answers with any other error.
    """
    validate_address(address)
    owns_session = session is None
    http = session or requests.Session()
    try:
        _verify(http, address, secret, timeout)
    finally:
        if owns_session:
            http.close()


def _verify(http: requests.Session, address: str, secret: str, timeout: float) -> None:
    try:
        http.get(address, headers={"User-Agent": USER_AGENT}, timeout=timeout).close()
    except requests.RequestException as e:
        raise NodeUnreachable(f"API address is not reachable: {e}")

    try:
        response = http.get(
            build_url(address, HEALTH_ENDPOINT),
            headers={"User-Agent": USER_AGENT, "Authorization": issue_token(secret)},
            timeout=timeout,
        )
    except requests.RequestException as e:
        raise NodeUnreachable(f"API address is not reachable: {e}")

    with response:
        if response.status_code == 403:
            raise NodeAuthError("Authentication failed. Invalid node key.")
        if not 200 <= response.status_code < 300:
            raise NodeVerifyError(f"Server error: {response.status_code}")
