"""Tests for the key/value store, engine settings and the connection config."""

from unittest.mock import MagicMock, patch

import pytest

from gitlab_pm.config import Config, load_config, save_config
from gitlab_pm.exceptions import InvalidConfigError
from gitlab_pm.settings import (
    EngineConfig,
    HealthConfig,
    HealthThresholds,
    HealthTimeframe,
    HealthWeights,
    SettingsStore,
    VelocityConfig,
    config_from_dict,
    config_to_dict,
)
from gitlab_pm.store import KeyValueStore, category_of, scoped_key, split_scoped_key


class TestScopedKeys:
    """Tests for scoped key addressing."""

    def test_scoped_key_forms(self):
        assert scoped_key("team_config") == "team_config"
        assert scoped_key("team_config", project_id="42") == "team_config_42"
        assert scoped_key("team_config", project_id="42", pod_id="web") == "team_config_pod_web"

    def test_split_scoped_key(self):
        assert split_scoped_key("risks", "risks") == ("global", None)
        assert split_scoped_key("risks_42", "risks") == ("project", "42")
        assert split_scoped_key("risks_pod_web", "risks") == ("pod", "web")
        assert split_scoped_key("riskscore", "risks") is None

    def test_category_prefers_longest_base(self):
        bases = ["capacity", "sprint_capacity", "health", "backlog_health_history"]
        assert category_of("sprint_capacity_42", bases) == "sprint_capacity"
        assert category_of("backlog_health_history", bases) == "backlog_health_history"
        assert category_of("unknown", bases) is None


class TestKeyValueStore:
    """Tests for KeyValueStore."""

    def test_persists_to_toml(self, tmp_path):
        path = tmp_path / "store.toml"
        store = KeyValueStore(path)
        store.set("risks_42", [{"id": "r1"}])
        reopened = KeyValueStore(path)
        assert reopened.get("risks_42") == [{"id": "r1"}]

    def test_corrupt_value_returns_default(self):
        store = KeyValueStore()
        store.set_text("health", "{not json")
        assert store.get("health", {}) == {}

    def test_get_scoped_falls_back(self):
        store = KeyValueStore()
        store.set("team_config", {"members": ["global"]})
        store.set("team_config_42", {"members": ["project"]})
        assert store.get_scoped("team_config", "42", "web") == {"members": ["project"]}
        store.set("team_config_pod_web", {"members": ["pod"]})
        assert store.get_scoped("team_config", "42", "web") == {"members": ["pod"]}
        assert store.get_scoped("team_config", "7") == {"members": ["global"]}

    def test_delete_and_keys(self):
        store = KeyValueStore()
        store.set("a_1", 1)
        store.set("a_2", 2)
        store.set("b", 3)
        assert store.keys("a_") == ["a_1", "a_2"]
        assert store.delete("a_1") is True
        assert store.delete("a_1") is False
        assert "a_1" not in store


class TestHealthConfigValidation:
    """Tests for health settings validation."""

    def test_defaults_are_valid(self):
        assert EngineConfig().validate() == []

    def test_weights_must_sum_to_one(self):
        config = HealthConfig(weights=HealthWeights(completion=0.40, schedule=0.25, blockers=0.25, risk=0.20))
        errors = config.validate()
        assert any("sum to 1.0" in e for e in errors)

    def test_weight_tolerance(self):
        config = HealthConfig(weights=HealthWeights(completion=0.305, schedule=0.25, blockers=0.25, risk=0.20))
        assert config.validate() == []

    def test_threshold_ordering(self):
        config = HealthConfig(thresholds=HealthThresholds(good=70, warning=70))
        assert config.validate()

    def test_timeframe_days_bounds(self):
        assert HealthConfig(timeframe=HealthTimeframe(mode="days", days=3)).validate()
        assert HealthConfig(timeframe=HealthTimeframe(mode="days")).validate() == []

    def test_velocity_validation(self):
        assert VelocityConfig(mode="magic").validate()
        assert VelocityConfig(lookback=0).validate()


class TestSettingsStore:
    """Tests for SettingsStore."""

    def setup_method(self):
        self.store = KeyValueStore()
        self.settings = SettingsStore(self.store)

    def test_load_defaults_when_empty(self):
        assert self.settings.load() == EngineConfig()

    def test_save_rejects_bad_weights_and_writes_nothing(self):
        config = EngineConfig(health=HealthConfig(
            weights=HealthWeights(completion=0.40, schedule=0.25, blockers=0.25, risk=0.20),
        ))
        with pytest.raises(InvalidConfigError) as exc_info:
            self.settings.save(config)
        assert exc_info.value.errors
        assert self.store.keys() == []

    def test_save_and_load_round_trip(self):
        config = EngineConfig(velocity=VelocityConfig(mode="static", metric="issues"))
        self.settings.save(config)
        assert self.settings.load() == config

    def test_listeners_notified_on_save_and_reset(self):
        listener = MagicMock()
        self.settings.subscribe(listener)
        self.settings.save(EngineConfig())
        self.settings.reset()
        assert listener.call_count == 2

    def test_listener_not_notified_on_rejected_save(self):
        listener = MagicMock()
        self.settings.subscribe(listener)
        bad = EngineConfig(health=HealthConfig(thresholds=HealthThresholds(good=50, warning=60)))
        with pytest.raises(InvalidConfigError):
            self.settings.save(bad)
        listener.assert_not_called()

    def test_reset_restores_defaults(self):
        self.settings.save(EngineConfig(velocity=VelocityConfig(lookback=5)))
        assert self.settings.reset() == EngineConfig()
        assert self.settings.load() == EngineConfig()

    def test_invalid_stored_group_falls_back_to_defaults(self):
        self.store.set("health", {"weights": {"completion": 0.9}})
        self.store.set("velocity", {"lookback": 6})
        config = self.settings.load()
        assert config.health == HealthConfig()
        assert config.velocity.lookback == 6

    def test_malformed_stored_group_falls_back_to_defaults(self):
        self.store.set("capacity", {"unknown_field": 1})
        assert self.settings.load().capacity == EngineConfig().capacity

    def test_dict_round_trip(self):
        config = EngineConfig(health=HealthConfig(timeframe=HealthTimeframe(mode="days", days=30)))
        assert config_from_dict(config_to_dict(config)) == config


class TestConnectionConfig:
    """Tests for the connection config file."""

    def test_validate_requires_url_and_token_without_snapshot(self):
        errors = Config(gitlab_url="", token="", project_id="42").validate()
        assert len(errors) == 2

    def test_snapshot_path_replaces_url_and_token(self):
        assert Config(gitlab_url="", token="", project_id="42", snapshot_path="snap.json").validate() == []

    def test_rejects_bad_scheme(self):
        errors = Config(gitlab_url="ftp://gitlab.example.com", token="t", project_id="42").validate()
        assert any("http" in e for e in errors)

    @patch("gitlab_pm.config.get_config_dir")
    def test_save_and_load(self, mock_dir, tmp_path):
        mock_dir.return_value = tmp_path
        config = Config(gitlab_url="https://gitlab.example.com", token="glpat-secret", project_id="42", group_id="7")
        save_config(config)
        assert load_config() == config

    @patch("gitlab_pm.config.get_config_dir")
    def test_load_missing_raises(self, mock_dir, tmp_path):
        mock_dir.return_value = tmp_path / "missing"
        with pytest.raises(FileNotFoundError):
            load_config()

    @patch("gitlab_pm.config.get_config_dir")
    def test_load_invalid_raises(self, mock_dir, tmp_path):
        mock_dir.return_value = tmp_path
        (tmp_path / "config.toml").write_text('[gitlab]\nurl = "https://gitlab.example.com"\n')
        with pytest.raises(ValueError, match="Invalid configuration"):
            load_config()
