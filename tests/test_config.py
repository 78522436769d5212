"""Tests for configuration loading and validation."""

import json

import pytest

from capability_router.lib.config import (
    RouterConfig,
    RiskThresholds,
    ThompsonConfig,
    SuggesterConfig,
    load_configuration,
    parse_configuration,
    CONFIG_ENV_VAR,
    PERMISSIONS_ENV_VAR,
)
from capability_router.lib.errors import ConfigurationError


class TestDefaults:
    def test_default_values(self):
        config = RouterConfig()
        assert config.graph.min_edge_confidence == 0.3
        assert config.graph.max_hops == 3
        assert config.thompson.risk_thresholds.safe == 0.55
        assert config.thompson.risk_thresholds.dangerous == 0.85
        assert config.replay.alpha == 0.6
        assert config.replay.beta == 0.4
        assert config.replay.min_traces == 1
        assert config.suggester.top_k == 5
        assert "delete" in config.suggester.deny_patterns

    def test_deny_patterns_are_lowercased(self):
        config = SuggesterConfig(deny_patterns=["DROP", "Wipe"])
        assert config.deny_patterns == ["drop", "wipe"]


class TestValidation:
    def test_non_monotonic_risk_thresholds_rejected(self):
        with pytest.raises(ValueError):
            RiskThresholds(safe=0.9, moderate=0.5, dangerous=0.8)

    def test_threshold_bounds_must_be_ordered(self):
        with pytest.raises(ValueError):
            ThompsonConfig(threshold_min=0.9, threshold_max=0.5)

    def test_unknown_keys_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_configuration({"graph": {"not_a_setting": 1}})

    def test_invalid_value_raises_configuration_error(self):
        with pytest.raises(ConfigurationError):
            parse_configuration({"replay": {"alpha": -1}})

    def test_partial_mapping_keeps_defaults(self):
        config = parse_configuration({"suggester": {"top_k": 3}})
        assert config.suggester.top_k == 3
        assert config.suggester.hybrid_weight == 0.8


class TestLoadConfiguration:
    def test_load_json(self, tmp_path, monkeypatch):
        monkeypatch.delenv(PERMISSIONS_ENV_VAR, raising=False)
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"graph": {"max_hops": 2}}))
        config = load_configuration(str(path))
        assert config.graph.max_hops == 2

    def test_load_yaml(self, tmp_path, monkeypatch):
        monkeypatch.delenv(PERMISSIONS_ENV_VAR, raising=False)
        path = tmp_path / "config.yaml"
        path.write_text("thompson:\n  decay_factor: 0.9\n")
        config = load_configuration(str(path))
        assert config.thompson.decay_factor == 0.9

    def test_environment_variable_selects_file(self, tmp_path, monkeypatch):
        path = tmp_path / "env.json"
        path.write_text(json.dumps({"suggester": {"top_k": 2}}))
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
        assert load_configuration().suggester.top_k == 2

    def test_permissions_override(self, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        path.write_text("{}")
        monkeypatch.setenv(PERMISSIONS_ENV_VAR, "/etc/router/permissions.yaml")
        assert load_configuration(str(path)).permissions_path == "/etc/router/permissions.yaml"

    def test_missing_explicit_file_raises(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_configuration(str(tmp_path / "missing.json"))

    def test_malformed_file_raises(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            load_configuration(str(path))

    def test_non_mapping_file_raises(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError):
            load_configuration(str(path))
