"""Unit tests for configuration loading and validation."""

import logging

import pytest

from mtu_tuner.config import TunerConfig, load_config
from mtu_tuner.exceptions import ValidationError


class TestTunerConfigDefaults:
    """Default values match the documented behaviour."""

    def test_defaults(self):
        config = TunerConfig()
        assert config.min_mtu == 1280
        assert config.max_mtu == 1500
        assert config.retry_count == 3
        assert config.lock_attempts == 30
        assert config.adaptation_threshold == 3
        assert config.confidence_threshold == 0.7
        assert config.range_delta == 20
        assert config.jobs >= 1

    def test_defaults_are_valid(self):
        assert TunerConfig().validate() is not None


class TestTunerConfigValidation:
    """validate() rejects out-of-domain values."""

    @pytest.mark.parametrize("overrides", [
        {"min_mtu": 1200},
        {"max_mtu": 1600},
        {"min_mtu": 1500, "max_mtu": 1400},
        {"min_mtu": 1400, "max_mtu": 1400},
        {"step": 0},
        {"retry_count": 0},
        {"jobs": 0},
        {"lock_attempts": 0},
        {"confidence_threshold": 1.5},
        {"settle_delay": -1.0},
        {"range_delta": -5},
        {"analysis_window": 0},
    ])
    def test_invalid_values(self, overrides):
        with pytest.raises(ValidationError):
            TunerConfig(**overrides).validate()

    @pytest.mark.parametrize("overrides", [
        {"min_mtu": "1300"},
        {"max_mtu": 1500.0},
        {"step": "10"},
        {"retry_count": True},
        {"settle_delay": "2"},
        {"lock_backoff": None},
        {"evaluation_interval": float("nan")},
        {"confidence_threshold": "high"},
        {"analysis_window": 2.5},
        {"prometheus_port": "9100"},
        {"prometheus_port": 70000},
        {"server": 10},
        {"log_file": 3},
        {"verbose": "yes"},
    ])
    def test_wrongly_typed_values(self, overrides):
        with pytest.raises(ValidationError) as exc_info:
            TunerConfig(**overrides).validate()
        assert next(iter(overrides)) in exc_info.value.message

    def test_with_overrides_ignores_none(self):
        config = TunerConfig().with_overrides(step=5, server=None)
        assert config.step == 5
        assert config.server == TunerConfig().server


class TestLoadConfig:
    """YAML loading merges over the defaults."""

    def test_no_path_returns_defaults(self):
        assert load_config(None) == TunerConfig()

    def test_merges_file_values(self, tmp_path):
        path = tmp_path / "tuner.yaml"
        path.write_text("interface: wg1\nstep: 5\nserver: 10.0.0.1\n")
        config = load_config(str(path))
        assert config.interface == "wg1"
        assert config.step == 5
        assert config.server == "10.0.0.1"
        assert config.max_mtu == 1500

    def test_unknown_keys_ignored(self, tmp_path, caplog):
        path = tmp_path / "tuner.yaml"
        path.write_text("step: 5\nbogus: 1\n")
        with caplog.at_level(logging.WARNING):
            config = load_config(str(path))
        assert config.step == 5
        assert "bogus" in caplog.text

    def test_missing_file_falls_back_to_defaults(self, tmp_path):
        assert load_config(str(tmp_path / "missing.yaml")) == TunerConfig()

    def test_invalid_yaml_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / "tuner.yaml"
        path.write_text("step: [1, 2\n")
        assert load_config(str(path)) == TunerConfig()

    def test_non_mapping_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / "tuner.yaml"
        path.write_text("- a\n- b\n")
        assert load_config(str(path)) == TunerConfig()

    @pytest.mark.parametrize("text,key", [
        ("min_mtu: '1300'\n", "min_mtu"),
        ("confidence_threshold: high\n", "confidence_threshold"),
        ("step: 10.5\n", "step"),
        ("jobs: [1, 2]\n", "jobs"),
    ])
    def test_wrongly_typed_file_values_fail_validation(self, tmp_path, text, key):
        path = tmp_path / "tuner.yaml"
        path.write_text(text)
        config = load_config(str(path))
        with pytest.raises(ValidationError) as exc_info:
            config.validate()
        assert key in exc_info.value.message
