"""
Configuration management for snapcheck.

Settings come from (lowest to highest precedence) built-in defaults, an
optional YAML file, and environment variables. The YAML file may name an
env_file which is loaded with python-dotenv before the environment is read.
"""

import os
from dataclasses import dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv

from snapcheck.errors import ConfigError
from snapcheck.retry import RetryPolicy

CONFIG_ENV_VAR = "SNAPCHECK_CONFIG"

# Environment variable -> config field
ENV_OVERRIDES = {
    "SNAP_PLUGIN_VERSION": "plugin_version",
    "SNAP_VERSION": "snap_version",
    "TASK": "task_selector",
    "DEMO": "interactive",
    "SNAP_API_URL": "api_url",
}

TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class HarnessConfig:
    """Complete harness configuration."""

    examples_dir: Path = Path("examples")
    daemon_tasks_dir: Optional[str] = None
    build_dir: Path = Path("build/linux/x86_64")
    plugins_dir: Path = Path("/opt/snap/plugins")

    plugin_version: str = "latest"
    plugin_base_url: str = "https://s3-us-west-2.amazonaws.com/snap.ci.snap-telemetry.io"
    platform: str = "linux/x86_64"
    snap_version: Optional[str] = None

    task_selector: Optional[str] = None
    interactive: bool = False

    api_url: str = "http://127.0.0.1:8181"
    snaptel: str = "snaptel"
    snapteld: str = "snapteld"
    command_prefix: List[str] = field(default_factory=list)
    command_timeout_seconds: Optional[float] = None

    timeout_seconds: float = 60.0
    poll_interval_seconds: float = 5.0
    task_start_pause_seconds: float = 3.0

    log_file: str = "logs/snapcheck-{date}.log"
    log_level: str = "INFO"
    log_format: str = "structured"
    console: bool = True

    env_file: Optional[str] = None

    @property
    def tasks_dir(self) -> Path:
        return Path(self.examples_dir) / "tasks"

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(self.timeout_seconds, self.poll_interval_seconds)

    def daemon_task_path(self, task_file: Path) -> str:
        """Path of a task file as the daemon sees it."""
        if self.daemon_tasks_dir:
            return f"{self.daemon_tasks_dir.rstrip('/')}/{Path(task_file).name}"
        return str(task_file)

    def get_log_file_path(self) -> Path:
        """Log file path with date interpolation."""
        return Path(self.log_file.replace("{date}", datetime.now().strftime("%Y-%m-%d")))

    def validate(self) -> None:
        """Validate configuration values."""
        if self.timeout_seconds < 0:
            raise ConfigError(f"timeout_seconds must be >= 0, got {self.timeout_seconds}")
        if self.poll_interval_seconds <= 0:
            raise ConfigError(f"poll_interval_seconds must be > 0, got {self.poll_interval_seconds}")
        if self.task_start_pause_seconds < 0:
            raise ConfigError("task_start_pause_seconds must be >= 0")
        if self.log_format not in ("structured", "pretty"):
            raise ConfigError(f"log_format must be 'structured' or 'pretty', got {self.log_format}")
        if not self.plugin_version:
            raise ConfigError("plugin_version must not be empty")

    def apply_env(self, environ: Mapping[str, str]) -> None:
        """Apply environment variable overrides; empty values are ignored."""
        for var, name in ENV_OVERRIDES.items():
            value = environ.get(var, "")
            if value == "":
                continue
            if name == "interactive":
                self.interactive = value.strip().lower() in TRUE_VALUES
            else:
                setattr(self, name, value)

    def __repr__(self) -> str:
        return (
            f"HarnessConfig(examples_dir={self.examples_dir}, api_url={self.api_url}, "
            f"plugin_version={self.plugin_version})"
        )


def _coerce(data: Dict[str, Any]) -> Dict[str, Any]:
    known = {f.name: f for f in fields(HarnessConfig)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

    values = dict(data)
    for key in ("examples_dir", "build_dir", "plugins_dir"):
        if values.get(key) is not None:
            values[key] = Path(str(values[key])).expanduser()
    prefix = values.get("command_prefix")
    if isinstance(prefix, str):
        values["command_prefix"] = prefix.split()
    elif prefix is not None and not isinstance(prefix, list):
        raise ConfigError("command_prefix must be a list or a string")
    return values


def _load_yaml(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {config_path} must contain a mapping")
    return data


def load_config(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> HarnessConfig:
    """
    Load harness configuration.

    Args:
        config_path: YAML config file (defaults to $SNAPCHECK_CONFIG, else none)
        environ: Environment to read overrides from (defaults to os.environ)

    Returns:
        Validated HarnessConfig

    Raises:
        ConfigError: If the config file is missing or invalid
    """
    if config_path is None:
        env_path = (environ if environ is not None else os.environ).get(CONFIG_ENV_VAR)
        config_path = Path(env_path) if env_path else None

    data = _load_yaml(Path(config_path).expanduser()) if config_path else {}
    try:
        config = HarnessConfig(**_coerce(data))
    except TypeError as e:
        raise ConfigError(f"Invalid configuration: {e}")

    if config.env_file:
        env_file = Path(config.env_file).expanduser()
        if not env_file.exists():
            raise ConfigError(f"env_file not found: {env_file}")
        load_dotenv(env_file, override=False)

    config.apply_env(os.environ if environ is None else environ)
    config.validate()
    return config
