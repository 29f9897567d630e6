"""Tests for configuration loading."""

from pathlib import Path

import pytest

from canopy.config import (
    DEFAULT_STORE_PATH,
    DEFAULT_SUBSCRIPTIONS,
    Config,
    ConfigError,
    PollingConfig,
    StoreConfig,
    SubscriptionConfig,
    default_config,
    load_config,
    parse_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host environment overrides out of every test."""
    for name in ("CANOPY_STORE_PATH", "CANOPY_FAILURE_THRESHOLD", "CANOPY_GRACE_MS", "CANOPY_BOOTSTRAP_MS"):
        monkeypatch.delenv(name, raising=False)


def write_config(tmp_path: Path, content: str) -> str:
    path = tmp_path / "canopy.yaml"
    path.write_text(content, encoding="utf-8")
    return str(path)


class TestSubscriptionConfig:
    """Tests for SubscriptionConfig validation."""

    def test_valid_subscription(self) -> None:
        """Valid values are accepted unchanged."""
        sub = SubscriptionConfig("cpu", "/v1/monitor/cpu", interval_ms=1000, timeout_ms=5000)
        assert sub.name == "cpu"
        assert sub.endpoint == "/v1/monitor/cpu"

    def test_empty_name_rejected(self) -> None:
        """Subscription name is required."""
        with pytest.raises(ConfigError, match="name cannot be empty"):
            SubscriptionConfig("", "/v1/monitor/cpu")

    def test_relative_endpoint_rejected(self) -> None:
        """Endpoints must be absolute paths."""
        with pytest.raises(ConfigError, match="must start with '/'"):
            SubscriptionConfig("cpu", "v1/monitor/cpu")

    def test_interval_too_small(self) -> None:
        """Intervals below the minimum are rejected."""
        with pytest.raises(ConfigError, match="Interval must be at least"):
            SubscriptionConfig("cpu", "/v1/monitor/cpu", interval_ms=10)

    def test_timeout_too_small(self) -> None:
        """Timeouts below the minimum are rejected."""
        with pytest.raises(ConfigError, match="Timeout must be at least"):
            SubscriptionConfig("cpu", "/v1/monitor/cpu", timeout_ms=0)


class TestPollingConfig:
    """Tests for PollingConfig validation."""

    def test_defaults(self) -> None:
        """Defaults match the stock dashboard behavior."""
        polling = PollingConfig()
        assert polling.failure_threshold == 3
        assert polling.grace_ms == 3000
        assert polling.bootstrap_ms == 3000
        assert polling.auth_retry_limit == 3

    def test_threshold_must_be_positive(self) -> None:
        """A zero threshold is rejected."""
        with pytest.raises(ConfigError, match="Failure threshold"):
            PollingConfig(failure_threshold=0)

    def test_negative_grace_rejected(self) -> None:
        """Grace period cannot be negative."""
        with pytest.raises(ConfigError, match="Grace period"):
            PollingConfig(grace_ms=-1)

    def test_zero_grace_allowed(self) -> None:
        """A zero grace period disconnects immediately."""
        assert PollingConfig(grace_ms=0).grace_ms == 0


class TestConfig:
    """Tests for the Config container."""

    def test_default_subscriptions(self) -> None:
        """The default config carries every stock feed."""
        config = Config()
        assert [sub.name for sub in config.subscriptions] == [sub.name for sub in DEFAULT_SUBSCRIPTIONS]
        assert config.store == StoreConfig()

    def test_duplicate_names_rejected(self) -> None:
        """Subscription names must be unique."""
        with pytest.raises(ConfigError, match="Duplicate"):
            Config(subscriptions=[SubscriptionConfig("cpu", "/a"), SubscriptionConfig("cpu", "/b")])

    def test_empty_subscriptions_rejected(self) -> None:
        """At least one feed must be configured."""
        with pytest.raises(ConfigError, match="At least one"):
            Config(subscriptions=[])

    def test_subscription_lookup(self) -> None:
        """Subscriptions can be looked up by name."""
        config = Config()
        assert config.subscription("memory").endpoint == "/v1/monitor/memory"
        assert config.subscription("missing") is None


class TestParseConfig:
    """Tests for parse_config."""

    def test_empty_dict_uses_defaults(self) -> None:
        """Missing sections fall back to defaults."""
        config = parse_config({})
        assert len(config.subscriptions) == len(DEFAULT_SUBSCRIPTIONS)
        assert config.polling == PollingConfig()
        assert config.store.path == DEFAULT_STORE_PATH

    def test_custom_subscriptions(self) -> None:
        """Listed subscriptions replace the defaults."""
        config = parse_config(
            {"subscriptions": [{"name": "cpu", "endpoint": "/v1/monitor/cpu", "interval_ms": 500}]}
        )
        assert config.subscriptions == [SubscriptionConfig("cpu", "/v1/monitor/cpu", 500, 5000)]

    def test_missing_endpoint(self) -> None:
        """Entries without an endpoint are rejected."""
        with pytest.raises(ConfigError, match="missing 'endpoint'"):
            parse_config({"subscriptions": [{"name": "cpu"}]})

    def test_non_integer_interval(self) -> None:
        """Timing values must be integers."""
        with pytest.raises(ConfigError, match="non-integer"):
            parse_config({"subscriptions": [{"name": "cpu", "endpoint": "/x", "interval_ms": "fast"}]})

    def test_subscriptions_must_be_list(self) -> None:
        """A mapping in place of the list is rejected."""
        with pytest.raises(ConfigError, match="must be a list"):
            parse_config({"subscriptions": {"cpu": "/v1/monitor/cpu"}})

    def test_polling_must_be_dict(self) -> None:
        """Malformed polling sections are reported."""
        with pytest.raises(ConfigError, match="'polling' section"):
            parse_config({"polling": [1, 2]})

    def test_store_path_expands_user(self) -> None:
        """A leading ~ in the store path is expanded."""
        config = parse_config({"store": {"path": "~/nodes.db"}})
        assert not config.store.path.startswith("~")
        assert config.store.path.endswith("nodes.db")

    def test_non_dict_rejected(self) -> None:
        """Top-level YAML must be a mapping."""
        with pytest.raises(ConfigError, match="YAML dictionary"):
            parse_config(["not", "a", "dict"])


class TestEnvOverrides:
    """Tests for environment variable overrides."""

    def test_store_path_override(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """CANOPY_STORE_PATH replaces the configured path."""
        monkeypatch.setenv("CANOPY_STORE_PATH", str(tmp_path / "env.db"))
        config = parse_config({"store": {"path": "/somewhere/else.db"}})
        assert config.store.path == str(tmp_path / "env.db")

    def test_polling_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Polling values can be set from the environment."""
        monkeypatch.setenv("CANOPY_FAILURE_THRESHOLD", "5")
        monkeypatch.setenv("CANOPY_GRACE_MS", "1000")
        monkeypatch.setenv("CANOPY_BOOTSTRAP_MS", "2000")

        config = default_config()

        assert config.polling.failure_threshold == 5
        assert config.polling.grace_ms == 1000
        assert config.polling.bootstrap_ms == 2000

    def test_invalid_integer_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Non-numeric overrides raise ConfigError."""
        monkeypatch.setenv("CANOPY_GRACE_MS", "soon")
        with pytest.raises(ConfigError, match="CANOPY_GRACE_MS"):
            default_config()


class TestLoadConfig:
    """Tests for load_config."""

    def test_loads_yaml_file(self, tmp_path: Path) -> None:
        """A complete file is parsed into a Config."""
        path = write_config(
            tmp_path,
            """
polling:
  failure_threshold: 4
  grace_ms: 2000
store:
  path: /tmp/canopy-test/nodes.db
subscriptions:
  - name: cpu
    endpoint: /v1/monitor/cpu
    interval_ms: 1000
  - name: ip
    endpoint: /v2/ip
    interval_ms: 900000
    timeout_ms: 15000
""",
        )

        config = load_config(path)

        assert config.polling.failure_threshold == 4
        assert config.polling.grace_ms == 2000
        assert config.store.path == "/tmp/canopy-test/nodes.db"
        assert [sub.name for sub in config.subscriptions] == ["cpu", "ip"]
        assert config.subscription("ip").timeout_ms == 15000

    def test_missing_file(self, tmp_path: Path) -> None:
        """A missing file raises ConfigError."""
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(tmp_path / "absent.yaml"))

    def test_empty_file(self, tmp_path: Path) -> None:
        """An empty file raises ConfigError."""
        with pytest.raises(ConfigError, match="empty"):
            load_config(write_config(tmp_path, ""))

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Unparseable YAML raises ConfigError."""
        with pytest.raises(ConfigError, match="Failed to parse YAML"):
            load_config(write_config(tmp_path, "subscriptions: [unclosed"))
