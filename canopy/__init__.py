"""Canopy - headless dashboard client for twig management agents."""

import argparse
import json
import logging
import signal
import sys
from pathlib import Path
from threading import Event
from typing import Any, Optional

__version__ = "0.1.0"

DEFAULT_CONFIG_PATH = "canopy.yaml"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _load_config(args: argparse.Namespace):
    """Load the config file, falling back to defaults when none was requested.

    Exits with status 1 on configuration errors.
    """
    from .config import ConfigError, default_config, load_config

    config_path = getattr(args, "config", None)
    try:
        if config_path is None:
            if Path(DEFAULT_CONFIG_PATH).exists():
                return load_config(DEFAULT_CONFIG_PATH)
            return default_config()
        return load_config(config_path)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)


def _open_registry(config):
    """Open the node store and wrap it in a registry. Exits on failure.

    The caller owns the registry and must close it.
    """
    from .nodes import NodeRegistry
    from .store import NodeStore, StoreError

    try:
        return NodeRegistry(NodeStore.open(config.store.path))
    except StoreError as e:
        print(f"Error: {e}")
        sys.exit(1)


def _summarize(payload: Any, limit: int = 120) -> str:
    text = json.dumps(payload, separators=(",", ":"), default=str)
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _cmd_watch(args: argparse.Namespace) -> None:
    """Execute the watch command - poll the active node until interrupted."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("Canopy %s starting...", __version__)

    from .dashboard import Dashboard
    from .health import startup_check
    from .models import NodeStatus, Result
    from .scheduler import ThreadScheduler
    from .transport import AuthenticatedTransport

    # 1. Load configuration and node registry
    config = _load_config(args)
    registry = _open_registry(config)
    transport = AuthenticatedTransport(registry)

    # 2. Check the active node before starting the feeds
    status = startup_check(registry, transport)
    if status is None or status is NodeStatus.UNAUTHORIZED:
        if status is None:
            logger.error("No active node configured. Add one with 'canopy nodes add'.")
        else:
            logger.error("Active node rejected its secret. Re-add it with the correct key.")
        transport.close()
        registry.close()
        sys.exit(1)

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    def on_data(name: str, payload: Any) -> None:
        if args.json:
            print(json.dumps({"feed": name, "payload": payload}, default=str), flush=True)
        else:
            logger.debug("%s: %s", name, _summarize(payload))

    def on_failure(name: str, result: Result) -> None:
        if result.is_auth_error:
            logger.warning("%s: node rejected credentials (HTTP 403)", name)

    dashboard = Dashboard(
        config,
        transport,
        ThreadScheduler(),
        on_data=on_data,
        on_failure=on_failure,
        only=args.only,
    )

    # 4. Start feeds and wait for shutdown signal
    try:
        dashboard.start()
        logger.info("All feeds started, waiting for shutdown signal...")
        _shutdown_event.wait()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        logger.info("Shutting down feeds...")
        dashboard.stop()
        transport.close()
        registry.close()
        logger.info("Shutdown complete")


def _cmd_token(args: argparse.Namespace) -> None:
    """Execute the token command - print the current bearer token."""
    from .auth import INVALID_TOKEN, issue_token

    if args.secret is not None:
        secret = args.secret
    else:
        registry = _open_registry(_load_config(args))
        try:
            node = registry.get_node(args.node) if args.node else registry.get_active_node()
        finally:
            registry.close()
        if node is None:
            print("Error: No such node" if args.node else "Error: No active node configured")
            sys.exit(1)
        secret = node.secret

    token = issue_token(secret)
    print(token)
    if token == INVALID_TOKEN:
        sys.exit(1)


def _cmd_nodes_list(args: argparse.Namespace) -> None:
    """List configured nodes, marking the active one."""
    registry = _open_registry(_load_config(args))
    try:
        nodes = registry.get_nodes()
        current = registry.get_current_node_id()
    finally:
        registry.close()

    if not nodes:
        print("No nodes configured.")
        return

    for node_id, node in nodes.items():
        marker = "*" if node_id == current else " "
        print(f"{marker} {node_id}  {node.name:<16} {node.status:<12} {node.address}")


def _cmd_nodes_add(args: argparse.Namespace) -> None:
    """Verify and add a node, then make it active."""
    _setup_logging(args.verbose)

    from .config import ConfigError
    from .health import NodeVerifyError, verify_new_node
    from .models import Node, NodeStatus
    from .store import StoreError

    registry = _open_registry(_load_config(args))

    try:
        if not args.no_verify:
            verify_new_node(args.address, args.secret)
        node = registry.add_node(
            Node(
                id=registry.new_node_id(),
                name=args.name,
                address=args.address,
                secret=args.secret,
                status=NodeStatus.CHECKING if args.no_verify else NodeStatus.ACTIVE,
            )
        )
        if not args.no_activate:
            registry.set_current_node(node.id)
    except (ConfigError, NodeVerifyError, StoreError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        registry.close()

    print(f"Added {node.id} ({node.name})")


def _cmd_nodes_remove(args: argparse.Namespace) -> None:
    """Remove a node."""
    registry = _open_registry(_load_config(args))
    try:
        removed = registry.remove_node(args.node_id)
    finally:
        registry.close()
    if not removed:
        print(f"Error: No such node: {args.node_id}")
        sys.exit(1)
    print(f"Removed {args.node_id}")


def _cmd_nodes_use(args: argparse.Namespace) -> None:
    """Select the active node."""
    from .config import ConfigError

    registry = _open_registry(_load_config(args))
    try:
        registry.set_current_node(args.node_id)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        registry.close()
    print(f"Active node: {args.node_id}")


def _cmd_nodes_check(args: argparse.Namespace) -> None:
    """Health-check every node and print the results."""
    _setup_logging(args.verbose)

    from .health import check_all_nodes
    from .models import NodeStatus
    from .transport import AuthenticatedTransport

    registry = _open_registry(_load_config(args))
    transport = AuthenticatedTransport(registry)
    try:
        statuses = check_all_nodes(registry, transport)
        nodes = registry.get_nodes()
    finally:
        transport.close()
        registry.close()

    if not statuses:
        print("No nodes configured.")
        return

    for node_id, status in statuses.items():
        name = nodes[node_id].name if node_id in nodes else node_id
        print(f"{node_id}  {name:<16} {status}")

    if any(status is not NodeStatus.ACTIVE for status in statuses.values()):
        sys.exit(1)


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config",
        default=None,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH} if present)",
    )


def _add_verbose_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )


def main() -> None:
    """Main entry point for the canopy package."""
    parser = argparse.ArgumentParser(
        description="Canopy - headless dashboard client for twig management agents"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"canopy {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Watch subcommand (default behavior)
    watch_parser = subparsers.add_parser(
        "watch",
        help="Poll the active node's feeds until interrupted (default)",
    )
    _add_config_argument(watch_parser)
    _add_verbose_argument(watch_parser)
    watch_parser.add_argument(
        "--only",
        nargs="+",
        metavar="NAME",
        help="Only poll these subscriptions",
    )
    watch_parser.add_argument(
        "--json",
        action="store_true",
        help="Print every payload as a JSON line",
    )
    watch_parser.set_defaults(func=_cmd_watch)

    # Token subcommand
    token_parser = subparsers.add_parser(
        "token",
        help="Print the current bearer token",
    )
    _add_config_argument(token_parser)
    token_source = token_parser.add_mutually_exclusive_group()
    token_source.add_argument("--node", help="Node id (default: active node)")
    token_source.add_argument("--secret", help="Base64 secret to derive the token from")
    token_parser.set_defaults(func=_cmd_token)

    # Nodes subcommand
    nodes_parser = subparsers.add_parser(
        "nodes",
        help="Manage configured nodes",
    )
    nodes_sub = nodes_parser.add_subparsers(dest="nodes_command", required=True)

    list_parser = nodes_sub.add_parser("list", help="List configured nodes")
    _add_config_argument(list_parser)
    list_parser.set_defaults(func=_cmd_nodes_list)

    add_parser = nodes_sub.add_parser("add", help="Verify and add a node")
    _add_config_argument(add_parser)
    _add_verbose_argument(add_parser)
    add_parser.add_argument("name", help="Display name for the node")
    add_parser.add_argument("address", help="Base API address, e.g. http://192.168.1.10:8000")
    add_parser.add_argument("secret", help="Base64 node key")
    add_parser.add_argument(
        "--no-verify",
        action="store_true",
        help="Add without contacting the node",
    )
    add_parser.add_argument(
        "--no-activate",
        action="store_true",
        help="Do not make the new node active",
    )
    add_parser.set_defaults(func=_cmd_nodes_add)

    remove_parser = nodes_sub.add_parser("remove", help="Remove a node")
    _add_config_argument(remove_parser)
    remove_parser.add_argument("node_id", help="Node id to remove")
    remove_parser.set_defaults(func=_cmd_nodes_remove)

    use_parser = nodes_sub.add_parser("use", help="Select the active node")
    _add_config_argument(use_parser)
    use_parser.add_argument("node_id", help="Node id to activate")
    use_parser.set_defaults(func=_cmd_nodes_use)

    check_parser = nodes_sub.add_parser("check", help="Health-check every node")
    _add_config_argument(check_parser)
    _add_verbose_argument(check_parser)
    check_parser.set_defaults(func=_cmd_nodes_check)

    args = parser.parse_args()

    # Default to 'watch' if no command specified
    if args.command is None:
        args.config = None
        args.verbose = False
        args.only = None
        args.json = False
        args.func = _cmd_watch

    args.func(args)
