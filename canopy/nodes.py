"""Registry of configured nodes and the active node selection."""

import logging
import threading
import time
from dataclasses import replace
from urllib.parse import urlparse

from .config import ConfigError
from .models import Node, NodeStatus
from .store import NodeStore

logger = logging.getLogger(__name__)

NODES_KEY = "nodes"
CURRENT_NODE_KEY = "current"


def validate_address(address: str) -> str:
    """Validate a node base address.

    Returns:
        The address unchanged.

    Raises:
        ConfigError: If the address is not an http(s) URL with a host.
    """
    if not address:
        raise ConfigError("Node address cannot be empty")
    parsed = urlparse(address)
    if parsed.scheme not in ("http", "https"):
        raise ConfigError(f"Node address must start with http:// or https://, got '{address}'")
    if not parsed.hostname:
        raise ConfigError(f"Node address has no host: '{address}'")
    return address


class NodeRegistry:
    """Nodes the user has added, plus which one is active.

    The polling core only ever calls ``get_active_node()``. Everything else
    is used by setup flows and health checks.
    """

    def __init__(self, store: NodeStore) -> None:
        self._store = store
        self._lock = threading.Lock()

    def close(self) -> None:
        """Close the underlying store."""
        self._store.close()

    def _load(self) -> dict[str, Node]:
        raw = self._store.get(NODES_KEY, {})
        if not isinstance(raw, dict):
            return {}
        return {node_id: Node.from_dict(node_id, data) for node_id, data in raw.items() if isinstance(data, dict)}

    def _save(self, nodes: dict[str, Node]) -> None:
        self._store.set(NODES_KEY, {node_id: node.to_dict() for node_id, node in nodes.items()})

    def get_nodes(self) -> dict[str, Node]:
        return self._load()

    def get_node(self, node_id: str) -> Node | None:
        return self._load().get(node_id)

    def get_current_node_id(self) -> str | None:
        current = self._store.get(CURRENT_NODE_KEY)
        return current if isinstance(current, str) and current else None

    def get_active_node(self) -> Node | None:
        """Return the active node, or None if none is selected or it was removed."""
        node_id = self.get_current_node_id()
        if node_id is None:
            return None
        return self.get_node(node_id)

    def set_current_node(self, node_id: str | None) -> None:
        """Select the active node, or clear the selection with None.

        Raises:
            ConfigError: If node_id is not a known node.
        """
        if node_id is None:
            self._store.delete(CURRENT_NODE_KEY)
            logger.info("Active node cleared")
            return
        if self.get_node(node_id) is None:
            raise ConfigError(f"Unknown node: {node_id}")
        self._store.set(CURRENT_NODE_KEY, node_id)
        logger.info("Active node set to %s", node_id)

    @staticmethod
    def new_node_id() -> str:
        return f"node_{int(time.time() * 1000)}"

    def add_node(self, node: Node) -> Node:
        """Add or replace a node.

        Raises:
            ConfigError: If the node has no id, name, secret or a bad address.
        """
        if not node.id:
            raise ConfigError("Node id cannot be empty")
        if not node.name:
            raise ConfigError("Node name cannot be empty")
        if not node.secret:
            raise ConfigError(f"Node secret cannot be empty for '{node.name}'")
        validate_address(node.address)

        with self._lock:
            nodes = self._load()
            nodes[node.id] = node
            self._save(nodes)
        logger.info("Node %s (%s) added at %s", node.id, node.name, node.address)
        return node

    def remove_node(self, node_id: str) -> bool:
        """Remove a node. Clears the active selection if it pointed at it.

        Returns:
            True if the node existed.
        """
        with self._lock:
            nodes = self._load()
            if node_id not in nodes:
                return False
            del nodes[node_id]
            self._save(nodes)

        if self.get_current_node_id() == node_id:
            self.set_current_node(None)
        logger.info("Node %s removed", node_id)
        return True

    def update_node_status(self, node_id: str, status: NodeStatus) -> bool:
        """Persist a node's status if it changed.

        Returns:
            True if the stored status was changed.
        """
        with self._lock:
            nodes = self._load()
            node = nodes.get(node_id)
            if node is None or node.status == status:
                return False
            nodes[node_id] = replace(node, status=status)
            self._save(nodes)
        logger.debug("Node %s status: %s -> %s", node_id, node.status, status)
        return True
