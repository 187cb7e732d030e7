"""
Configuration Management for Plan Autopilot.

WHAT THIS FILE DOES:
-------------------
Reads the autopilot YAML config, falling back to conservative defaults.
Holds the run budgets (AutoExecutionConfig), which step executor to use,
alert preferences and logging settings.

CONFIG FILE LOCATION:
--------------------
Default: ~/.autopilot/config.yaml (then ./autopilot.yaml, ./autopilot.yml)

CONFIG FORMAT:
-------------
```yaml
execution:
  max_steps: 10
  max_total_tokens: 100000
  pause_on_dangerous_actions: true
  error_threshold: 2
  step_timeout: 120000          # milliseconds
  require_confirmation_for: [file_delete, git_push, package_publish]

executor:
  kind: "http"                  # or "dry_run"
  url: "http://localhost:8787/steps"
  api_key_env: "AUTOPILOT_WORKER_KEY"

alerts:
  terminal: true
  macos_notification: false

logging:
  level: "INFO"
  file: "~/.autopilot/autopilot.log"
```
"""

import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from schemas import AutoExecutionConfig


# =============================================================================
# CONFIGURATION DATA CLASSES
# =============================================================================

@dataclass
class ExecutorConfig:
    """Which step executor the CLI wires into the controller."""
    kind: str = "dry_run"  # "http", "dry_run"
    url: Optional[str] = None
    api_key_env: Optional[str] = None
    request_timeout: float = 600.0
    dry_run_delay: float = 0.0

    def to_dict(self) -> dict:
        result = {
            "kind": self.kind,
            "request_timeout": self.request_timeout,
        }
        if self.url:
            result["url"] = self.url
        if self.api_key_env:
            result["api_key_env"] = self.api_key_env
        if self.dry_run_delay:
            result["dry_run_delay"] = self.dry_run_delay
        return result


@dataclass
class AlertConfig:
    """Which alert channels fire when a run pauses."""
    terminal: bool = True
    macos_notification: bool = False


@dataclass
class LoggingConfig:
    """Where log records go and how chatty they are."""
    level: str = "WARNING"
    file: Optional[str] = None

    @property
    def file_path(self) -> Optional[Path]:
        """Get log file path, expanding ~ if present."""
        return Path(self.file).expanduser() if self.file else None


@dataclass
class Config:
    """
    Complete configuration for Plan Autopilot.

    Built from YAML by load_config() or from get_default_config().
    """
    execution: AutoExecutionConfig = field(default_factory=AutoExecutionConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# =============================================================================
# DEFAULT CONFIGURATION
# =============================================================================

def get_default_config() -> Config:
    """
    Defaults used when no config file exists.

    Conservative budgets, dry-run executor, terminal alerts only.
    """
    return Config(
        execution=AutoExecutionConfig(),
        executor=ExecutorConfig(kind="dry_run"),
        alerts=AlertConfig(terminal=True, macos_notification=False),
        logging=LoggingConfig(level="WARNING"),
    )


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================

def _default_paths() -> list[Path]:
    return [
        Path.home() / ".autopilot" / "config.yaml",
        Path("./autopilot.yaml"),
        Path("./autopilot.yml"),
    ]


def _parse_config(data: dict) -> Config:
    """Build a Config from the YAML mapping; absent sections keep defaults."""
    config = get_default_config()

    # Parse execution budgets (validated by pydantic)
    if "execution" in data:
        config.execution = AutoExecutionConfig.model_validate(data["execution"] or {})

    # Parse executor
    if "executor" in data:
        executor_data = data["executor"] or {}
        config.executor = ExecutorConfig(
            kind=executor_data.get("kind", "dry_run"),
            url=executor_data.get("url"),
            api_key_env=executor_data.get("api_key_env"),
            request_timeout=float(executor_data.get("request_timeout", 600.0)),
            dry_run_delay=float(executor_data.get("dry_run_delay", 0.0)),
        )

    # Parse alerts
    if "alerts" in data:
        alerts_data = data["alerts"] or {}
        config.alerts = AlertConfig(
            terminal=alerts_data.get("terminal", True),
            macos_notification=alerts_data.get("macos_notification", False),
        )

    # Parse logging
    if "logging" in data:
        logging_data = data["logging"] or {}
        config.logging = LoggingConfig(
            level=str(logging_data.get("level", "WARNING")).upper(),
            file=logging_data.get("file"),
        )

    return config


def load_config(path: Optional[Path] = None) -> Config:
    """
    Find and read the config.

    Args:
        path: Explicit config file. If None, the first existing of:
              1. ~/.autopilot/config.yaml
              2. ./autopilot.yaml
              3. ./autopilot.yml
              4. Falls back to defaults

    Returns:
        The parsed Config, or defaults when no file exists
    """
    # Try provided path
    if path:
        path = Path(path).expanduser()
        if path.exists():
            return load_config_from_file(path)
        raise FileNotFoundError(f"Config file not found: {path}")

    config_path = get_config_path()
    if config_path:
        return load_config_from_file(config_path)

    # Return defaults
    return get_default_config()


def load_config_from_file(path: Path) -> Config:
    """
    Read one YAML config file.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is invalid
        pydantic.ValidationError: If execution budgets are out of range
    """
    path = Path(path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    return _parse_config(data)


def save_config(config: Config, path: Path) -> None:
    """
    Write a config back out as YAML (parent dirs are created).

    Args:
        config: Config to write
        path: Destination file
    """
    execution = config.execution.model_dump(mode="json")
    execution["require_confirmation_for"] = sorted(execution["require_confirmation_for"])

    data = {
        "execution": execution,
        "executor": config.executor.to_dict(),
        "alerts": {
            "terminal": config.alerts.terminal,
            "macos_notification": config.alerts.macos_notification,
        },
        "logging": {
            "level": config.logging.level,
        },
    }

    if config.logging.file:
        data["logging"]["file"] = config.logging.file

    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def get_config_path() -> Optional[Path]:
    """
    First default location that exists.

    Returns:
        The config path, or None when running on defaults
    """
    for path in _default_paths():
        if path.exists():
            return path

    return None


# =============================================================================
# LOGGING SETUP
# =============================================================================

def configure_logging(logging_config: LoggingConfig, verbose: bool = False) -> None:
    """
    Send log records to stderr (and optionally a file).

    stdout stays free for the rich terminal UI.
    """
    level = logging.DEBUG if verbose else getattr(logging, logging_config.level, logging.WARNING)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if logging_config.file_path:
        logging_config.file_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logging_config.file_path))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )
