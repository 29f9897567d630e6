"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Sub-100ms intervals would hammer the agent; every dashboard feed is at
# least that slow in practice.
MIN_INTERVAL_MS = 100
MIN_TIMEOUT_MS = 100


@dataclass(frozen=True)
class PollingConfig:
    """Failure handling shared by every polling session."""

    failure_threshold: int = 3  # consecutive failures before "retrying"
    grace_ms: int = 3000  # time in "retrying" before "disconnected"
    bootstrap_ms: int = 3000  # time in "loading" before "disconnected"
    auth_retry_limit: int = 3  # consecutive 403s before a session stops polling

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ConfigError(f"Failure threshold must be at least 1 (got {self.failure_threshold})")
        if self.grace_ms < 0:
            raise ConfigError(f"Grace period must be non-negative (got {self.grace_ms})")
        if self.bootstrap_ms < 0:
            raise ConfigError(f"Bootstrap timeout must be non-negative (got {self.bootstrap_ms})")
        if self.auth_retry_limit < 1:
            raise ConfigError(f"Auth retry limit must be at least 1 (got {self.auth_retry_limit})")


@dataclass(frozen=True)
class SubscriptionConfig:
    """One dashboard data feed: an endpoint polled at its own cadence."""

    name: str
    endpoint: str
    interval_ms: int = 1000
    timeout_ms: int = 5000

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigError("Subscription name cannot be empty")
        if not self.endpoint:
            raise ConfigError(f"Endpoint cannot be empty for '{self.name}'")
        if not self.endpoint.startswith("/"):
            raise ConfigError(f"Endpoint must start with '/' for '{self.name}'")
        if self.interval_ms < MIN_INTERVAL_MS:
            raise ConfigError(
                f"Interval must be at least {MIN_INTERVAL_MS}ms for '{self.name}' (got {self.interval_ms})"
            )
        if self.timeout_ms < MIN_TIMEOUT_MS:
            raise ConfigError(
                f"Timeout must be at least {MIN_TIMEOUT_MS}ms for '{self.name}' (got {self.timeout_ms})"
            )


# Feeds shown on the stock dashboard.
DEFAULT_SUBSCRIPTIONS = (
    SubscriptionConfig("system", "/v1/system/information", 1000, 5000),
    SubscriptionConfig("cpu", "/v1/monitor/cpu", 1000, 5000),
    SubscriptionConfig("cpu-freq", "/v1/monitor/cpu/frequency", 1000, 5000),
    SubscriptionConfig("memory", "/v1/monitor/memory", 1000, 5000),
    SubscriptionConfig("network", "/v1/monitor/network", 1000, 7000),
    SubscriptionConfig("storage", "/v1/monitor/storage", 2000, 7000),
    SubscriptionConfig("power", "/v1/monitor/cpu/power", 2000, 7000),
    SubscriptionConfig("ipconfig", "/v1/system/ipconfig", 60_000, 7000),
    SubscriptionConfig("containers", "/v1/containers", 5000, 10_000),
    SubscriptionConfig("ip", "/v2/ip", 900_000, 15_000),
)


def _get_default_store_path() -> str:
    """Get the default node store path using XDG-compliant directory."""
    home = Path.home()
    return str(home / ".local" / "share" / "canopy" / "nodes.db")


DEFAULT_STORE_PATH = _get_default_store_path()


@dataclass(frozen=True)
class StoreConfig:
    """Configuration for the local node store."""

    path: str = DEFAULT_STORE_PATH

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Store path cannot be empty")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    subscriptions: list[SubscriptionConfig] = field(default_factory=lambda: list(DEFAULT_SUBSCRIPTIONS))
    polling: PollingConfig = field(default_factory=PollingConfig)
    store: StoreConfig = field(default_factory=StoreConfig)

    def __post_init__(self) -> None:
        if not self.subscriptions:
            raise ConfigError("At least one subscription must be configured")
        names = [sub.name for sub in self.subscriptions]
        duplicates = [name for name in names if names.count(name) > 1]
        if duplicates:
            raise ConfigError(f"Duplicate subscription names found: {set(duplicates)}")

    def subscription(self, name: str) -> SubscriptionConfig | None:
        for sub in self.subscriptions:
            if sub.name == name:
                return sub
        return None


def _parse_subscription_config(data: dict, index: int) -> SubscriptionConfig:
    """Parse a single subscription entry."""
    if not isinstance(data, dict):
        raise ConfigError(f"Subscription entry {index} must be a dictionary")

    name = data.get("name")
    endpoint = data.get("endpoint")

    if name is None:
        raise ConfigError(f"Subscription entry {index} is missing 'name' field")
    if endpoint is None:
        raise ConfigError(f"Subscription entry {index} is missing 'endpoint' field")

    try:
        interval_ms = int(data.get("interval_ms", 1000))
        timeout_ms = int(data.get("timeout_ms", 5000))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Subscription entry {index} has a non-integer timing value: {e}")

    return SubscriptionConfig(
        name=str(name),
        endpoint=str(endpoint),
        interval_ms=interval_ms,
        timeout_ms=timeout_ms,
    )


def _parse_polling_config(data: dict | None) -> PollingConfig:
    """Parse polling configuration section."""
    if data is None:
        return PollingConfig()
    if not isinstance(data, dict):
        raise ConfigError("'polling' section must be a dictionary")

    try:
        return PollingConfig(
            failure_threshold=int(data.get("failure_threshold", 3)),
            grace_ms=int(data.get("grace_ms", 3000)),
            bootstrap_ms=int(data.get("bootstrap_ms", 3000)),
            auth_retry_limit=int(data.get("auth_retry_limit", 3)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"'polling' section has a non-integer value: {e}")


def _parse_store_config(data: dict | None) -> StoreConfig:
    """Parse store configuration section."""
    if data is None:
        return StoreConfig()
    if not isinstance(data, dict):
        raise ConfigError("'store' section must be a dictionary")

    return StoreConfig(path=os.path.expanduser(str(data.get("path", DEFAULT_STORE_PATH))))


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - CANOPY_STORE_PATH: Override store.path
    - CANOPY_FAILURE_THRESHOLD: Override polling.failure_threshold
    - CANOPY_GRACE_MS: Override polling.grace_ms
    - CANOPY_BOOTSTRAP_MS: Override polling.bootstrap_ms
    """
    if config_data.get("polling") is None:
        config_data["polling"] = {}
    if config_data.get("store") is None:
        config_data["store"] = {}
    # Malformed sections are reported by the section parsers.
    if not isinstance(config_data["polling"], dict) or not isinstance(config_data["store"], dict):
        return config_data

    store_path = os.environ.get("CANOPY_STORE_PATH")
    if store_path is not None:
        config_data["store"]["path"] = store_path

    polling_overrides = {
        "CANOPY_FAILURE_THRESHOLD": "failure_threshold",
        "CANOPY_GRACE_MS": "grace_ms",
        "CANOPY_BOOTSTRAP_MS": "bootstrap_ms",
    }
    for env_name, key in polling_overrides.items():
        value = os.environ.get(env_name)
        if value is None:
            continue
        try:
            config_data["polling"][key] = int(value)
        except ValueError:
            raise ConfigError(f"{env_name} must be an integer (got {value!r})")

    return config_data


def parse_config(data: dict) -> Config:
    """Build a validated Config from already-loaded YAML data."""
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    data = _apply_env_overrides(data)

    subscriptions_data = data.get("subscriptions")
    if subscriptions_data is None:
        subscriptions = list(DEFAULT_SUBSCRIPTIONS)
    else:
        if not isinstance(subscriptions_data, list):
            raise ConfigError("'subscriptions' must be a list")
        subscriptions = [_parse_subscription_config(sub, i) for i, sub in enumerate(subscriptions_data)]

    return Config(
        subscriptions=subscriptions,
        polling=_parse_polling_config(data.get("polling")),
        store=_parse_store_config(data.get("store")),
    )


def default_config() -> Config:
    """Return the built-in configuration with environment overrides applied."""
    return parse_config({})


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    return parse_config(data)
