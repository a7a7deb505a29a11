"""
Configuration management for converge.

Loads and validates config.yaml. Every key has a default, so a missing
file yields a usable configuration. Environment overrides:
- CONVERGE_CONFIG: path of the config file
- CONVERGE_HOME: directory holding config.yaml and default state (default ~/.converge)
- CONVERGE_STATE_PATH: state store directory
- AWS_REGION / AWS_DEFAULT_REGION: region when aws.region is unset
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from converge.errors import ConfigError
from converge.schemas import ResourceKind


DEFAULT_CONFIG_FILENAME = "config.yaml"

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
VALID_LOG_FORMATS = ("pretty", "structured")


def get_converge_home() -> Path:
    """Get the converge home directory."""
    home = os.environ.get("CONVERGE_HOME")
    if home:
        return Path(home).expanduser()
    return Path.home() / ".converge"


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw.get(name) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return data


class StateConfig:
    """Where observed state, the lock and the audit log live."""

    def __init__(self, data: Dict[str, Any], home: Path):
        env_path = os.environ.get("CONVERGE_STATE_PATH")
        self.path = Path(env_path or data.get("path") or home / "state").expanduser()

    def validate(self) -> None:
        if self.path.exists() and not self.path.is_dir():
            raise ConfigError(f"state.path is not a directory: {self.path}")


class LockConfig:
    """State lock TTL and how long to wait for a held lock."""

    def __init__(self, data: Dict[str, Any]):
        self.ttl_seconds = float(data.get("ttl_seconds", 900))
        self.wait_seconds = float(data.get("wait_seconds", 0))
        self.owner = data.get("owner")

    def validate(self) -> None:
        if self.ttl_seconds <= 0:
            raise ConfigError("lock.ttl_seconds must be positive")
        if self.wait_seconds < 0:
            raise ConfigError("lock.wait_seconds must not be negative")


class ExecutorConfig:
    """Apply concurrency, retry policy and readiness waits."""

    def __init__(self, data: Dict[str, Any]):
        self.concurrency = int(data.get("concurrency", 4))
        self.max_attempts = int(data.get("max_attempts", 3))
        self.backoff_seconds = float(data.get("backoff_seconds", 2.0))
        self.backoff_multiplier = float(data.get("backoff_multiplier", 2.0))
        self.ready_timeout = float(data.get("ready_timeout", 600))
        self.poll_interval = float(data.get("poll_interval", 5))
        # Per-kind readiness waits, e.g. {ComputeCluster: 1800}
        self.kind_timeouts = {
            str(k): float(v) for k, v in (data.get("kind_timeouts") or {}).items()
        }

    def validate(self) -> None:
        if self.concurrency < 1:
            raise ConfigError("executor.concurrency must be at least 1")
        if self.max_attempts < 1:
            raise ConfigError("executor.max_attempts must be at least 1")
        if self.backoff_seconds < 0 or self.backoff_multiplier < 1:
            raise ConfigError("executor backoff must be non-negative with multiplier >= 1")
        if self.ready_timeout <= 0 or self.poll_interval < 0:
            raise ConfigError("executor.ready_timeout must be positive and poll_interval non-negative")
        for kind in self.kind_timeouts:
            try:
                ResourceKind.from_string(kind)
            except ValueError as e:
                raise ConfigError(f"executor.kind_timeouts: {e}")


class AwsConfig:
    """boto3 session parameters."""

    def __init__(self, data: Dict[str, Any]):
        self.region = (
            data.get("region")
            or os.environ.get("AWS_REGION")
            or os.environ.get("AWS_DEFAULT_REGION")
        )
        self.profile = data.get("profile")
        self.endpoint_url = data.get("endpoint_url")


class KubeConfig:
    """helm / kubectl invocation."""

    def __init__(self, data: Dict[str, Any]):
        self.context = data.get("context")
        self.command_timeout = float(data.get("command_timeout", 300))

    def validate(self) -> None:
        if self.command_timeout <= 0:
            raise ConfigError("kube.command_timeout must be positive")


class ReleaseConfig:
    """Release orchestrator settings."""

    def __init__(self, data: Dict[str, Any]):
        self.readiness_timeout = float(data.get("readiness_timeout", 600))
        self.readiness_interval = float(data.get("readiness_interval", 10))
        self.docker_binary = data.get("docker_binary", "docker")
        self.build_args = dict(data.get("build_args") or {})

    def validate(self) -> None:
        if self.readiness_timeout <= 0:
            raise ConfigError("release.readiness_timeout must be positive")


class LoggingConfig:
    def __init__(self, data: Dict[str, Any]):
        self.level = str(data.get("level", "INFO")).upper()
        self.format = data.get("format", "pretty")
        self.console = data.get("console", True)
        self.file = Path(data["file"]).expanduser() if data.get("file") else None

    def validate(self) -> None:
        if self.level not in VALID_LOG_LEVELS:
            raise ConfigError(f"logging.level must be one of {VALID_LOG_LEVELS}")
        if self.format not in VALID_LOG_FORMATS:
            raise ConfigError(f"logging.format must be one of {VALID_LOG_FORMATS}")


class ConvergeConfig:
    """Complete converge configuration."""

    def __init__(self, raw_config: Optional[Dict[str, Any]] = None, config_path: Optional[Path] = None):
        self.config_path = config_path
        self.raw_config = raw_config or {}
        if not isinstance(self.raw_config, dict):
            raise ConfigError("Configuration must be a mapping")
        self.home = get_converge_home()

        self.stacks_dir = Path(self.raw_config.get("stacks_dir", "stacks")).expanduser()
        try:
            self.state = StateConfig(_section(self.raw_config, "state"), self.home)
            self.lock = LockConfig(_section(self.raw_config, "lock"))
            self.executor = ExecutorConfig(_section(self.raw_config, "executor"))
            self.aws = AwsConfig(_section(self.raw_config, "aws"))
            self.kube = KubeConfig(_section(self.raw_config, "kube"))
            self.release = ReleaseConfig(_section(self.raw_config, "release"))
            self.logging = LoggingConfig(_section(self.raw_config, "logging"))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration value: {e}")

    @classmethod
    def from_file(cls, config_path: Path) -> "ConvergeConfig":
        """Load and parse a YAML configuration file."""
        if not config_path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, "r") as f:
                raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML syntax: {e}")
        return cls(raw or {}, config_path=config_path)

    def validate(self) -> None:
        """Validate entire configuration."""
        for name in ("state", "lock", "executor", "kube", "release", "logging"):
            getattr(self, name).validate()

    def __repr__(self) -> str:
        return f"ConvergeConfig(path={self.config_path}, state={self.state.path})"


def default_config_path() -> Path:
    env_path = os.environ.get("CONVERGE_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return get_converge_home() / DEFAULT_CONFIG_FILENAME


def load_config(config_path: Optional[Path] = None) -> ConvergeConfig:
    """
    Load converge configuration.

    Args:
        config_path: Path to config file. Defaults to $CONVERGE_CONFIG, then
                     $CONVERGE_HOME/config.yaml. A missing default file
                     yields the built-in defaults; a missing explicit file
                     is an error.

    Returns:
        Validated ConvergeConfig

    Raises:
        ConfigError: If config is invalid or an explicit path is missing
    """
    explicit = config_path is not None or bool(os.environ.get("CONVERGE_CONFIG"))
    path = Path(config_path) if config_path is not None else default_config_path()

    if path.exists() or explicit:
        config = ConvergeConfig.from_file(path)
    else:
        config = ConvergeConfig()
    config.validate()
    return config


DEFAULT_CONFIG_TEMPLATE = """\
# converge configuration

# Directory searched for stack documents by name
stacks_dir: stacks

state:
  # Observed state, lock and audit log
  path: {state_path}

lock:
  ttl_seconds: 900
  wait_seconds: 0

executor:
  concurrency: 4
  max_attempts: 3
  backoff_seconds: 2
  backoff_multiplier: 2
  ready_timeout: 600
  poll_interval: 5
  kind_timeouts:
    ComputeCluster: 1800
    NodePool: 1800

aws:
  region: {region}

kube:
  context: null
  command_timeout: 300

release:
  readiness_timeout: 600
  readiness_interval: 10

logging:
  level: INFO
  format: pretty
  console: true
"""


def write_default_config(path: Path, force: bool = False) -> Path:
    """
    Write a default config file.

    Raises:
        ConfigError: If the file exists and force is not set
    """
    if path.exists() and not force:
        raise ConfigError(f"Config file already exists: {path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    region = os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION") or "us-east-1"
    path.write_text(DEFAULT_CONFIG_TEMPLATE.format(
        state_path=path.parent / "state",
        region=region,
    ))
    return path
