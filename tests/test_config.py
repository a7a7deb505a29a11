"""Tests for configuration loading and validation.

Tests cover:
- Defaults when no config file exists
- Explicit paths and CONVERGE_CONFIG
- Environment overrides for state path and AWS region
- Validation errors per section
- write_default_config
"""

import pytest
import yaml

from converge.config import (
    ConvergeConfig,
    get_converge_home,
    load_config,
    write_default_config,
)
from converge.errors import ConfigError


def write_config(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data))
    return path


# =============================================================================
# LOADING
# =============================================================================


class TestLoadConfig:
    """Tests for load_config()."""

    def test_defaults_without_file(self, tmp_path):
        config = load_config()
        assert config.config_path is None
        assert config.state.path == tmp_path / "home" / "state"
        assert config.lock.ttl_seconds == 900
        assert config.executor.concurrency == 4
        assert config.kube.command_timeout == 300
        assert config.logging.level == "INFO"

    def test_home_config_file(self, tmp_path):
        write_config(tmp_path / "home" / "config.yaml", {"executor": {"concurrency": 8}})
        assert load_config().executor.concurrency == 8

    def test_explicit_path(self, tmp_path):
        path = write_config(tmp_path / "custom.yaml", {"lock": {"ttl_seconds": 60}})
        config = load_config(path)
        assert config.lock.ttl_seconds == 60
        assert config.config_path == path

    def test_explicit_missing_path(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "missing.yaml")

    def test_env_config_path(self, tmp_path, monkeypatch):
        path = write_config(tmp_path / "env.yaml", {"stacks_dir": str(tmp_path / "stacks")})
        monkeypatch.setenv("CONVERGE_CONFIG", str(path))
        assert load_config().stacks_dir == tmp_path / "stacks"

    def test_env_config_path_missing(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CONVERGE_CONFIG", str(tmp_path / "nope.yaml"))
        with pytest.raises(ConfigError):
            load_config()

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("executor: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path)

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(path).executor.max_attempts == 3


# =============================================================================
# ENVIRONMENT
# =============================================================================


class TestEnvironment:
    def test_converge_home(self, tmp_path):
        assert get_converge_home() == tmp_path / "home"

    def test_state_path_env_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CONVERGE_STATE_PATH", str(tmp_path / "shared-state"))
        config = ConvergeConfig({"state": {"path": str(tmp_path / "ignored")}})
        assert config.state.path == tmp_path / "shared-state"

    def test_region_from_environment(self, monkeypatch):
        monkeypatch.setenv("AWS_REGION", "eu-central-1")
        assert ConvergeConfig().aws.region == "eu-central-1"

    def test_configured_region_wins(self, monkeypatch):
        monkeypatch.setenv("AWS_REGION", "eu-central-1")
        assert ConvergeConfig({"aws": {"region": "us-west-2"}}).aws.region == "us-west-2"


# =============================================================================
# VALIDATION
# =============================================================================


class TestValidation:
    """Invalid values raise ConfigError."""

    @pytest.mark.parametrize("raw,message", [
        ({"lock": {"ttl_seconds": 0}}, "ttl_seconds"),
        ({"lock": {"wait_seconds": -1}}, "wait_seconds"),
        ({"executor": {"concurrency": 0}}, "concurrency"),
        ({"executor": {"max_attempts": 0}}, "max_attempts"),
        ({"executor": {"backoff_multiplier": 0.5}}, "backoff"),
        ({"executor": {"kind_timeouts": {"Database": 10}}}, "Unknown resource kind"),
        ({"kube": {"command_timeout": 0}}, "command_timeout"),
        ({"release": {"readiness_timeout": 0}}, "readiness_timeout"),
        ({"logging": {"level": "LOUD"}}, "logging.level"),
        ({"logging": {"format": "xml"}}, "logging.format"),
    ])
    def test_invalid_values(self, raw, message):
        config = ConvergeConfig(raw)
        with pytest.raises(ConfigError, match=message):
            config.validate()

    def test_non_numeric_value(self):
        with pytest.raises(ConfigError, match="Invalid configuration value"):
            ConvergeConfig({"executor": {"concurrency": "many"}})

    def test_section_must_be_mapping(self):
        with pytest.raises(ConfigError, match="'executor' must be a mapping"):
            ConvergeConfig({"executor": [1, 2]})

    def test_config_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="must be a mapping"):
            load_config(path)

    def test_state_path_must_be_directory(self, tmp_path):
        not_a_dir = tmp_path / "file"
        not_a_dir.write_text("x")
        with pytest.raises(ConfigError, match="not a directory"):
            ConvergeConfig({"state": {"path": str(not_a_dir)}}).validate()

    def test_kind_timeouts_parsed(self):
        config = ConvergeConfig({"executor": {"kind_timeouts": {"ComputeCluster": 1800}}})
        config.validate()
        assert config.executor.kind_timeouts == {"ComputeCluster": 1800.0}


# =============================================================================
# DEFAULT CONFIG FILE
# =============================================================================


class TestWriteDefaultConfig:
    def test_written_config_loads(self, tmp_path):
        path = write_default_config(tmp_path / "home" / "config.yaml")
        config = load_config(path)
        assert config.state.path == tmp_path / "home" / "state"
        assert config.executor.kind_timeouts["ComputeCluster"] == 1800
        assert config.aws.region == "us-east-1"
        assert config.kube.context is None

    def test_refuses_to_overwrite(self, tmp_path):
        path = write_config(tmp_path / "config.yaml", {"existing": True})
        with pytest.raises(ConfigError, match="already exists"):
            write_default_config(path)
        assert yaml.safe_load(path.read_text()) == {"existing": True}

    def test_force_overwrites(self, tmp_path):
        path = write_config(tmp_path / "config.yaml", {"existing": True})
        write_default_config(path, force=True)
        assert "executor" in yaml.safe_load(path.read_text())
