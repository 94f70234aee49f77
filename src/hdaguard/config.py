"""
Configuration management for HDA Guard.

Handles loading, validation, and access to daemon configuration.
"""

from __future__ import annotations

import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from hdaguard.policy.models import DEFAULT_DEVICE_PATTERN


def _data_dir() -> Path:
    """Platform directory holding configuration and state."""
    if platform.system() == "Windows":
        return Path(os.environ.get("ProgramData", r"C:\ProgramData")) / "HdaGuard"
    return Path("/etc/hda-guard")


def _state_dir() -> Path:
    if platform.system() == "Windows":
        return _data_dir()
    return Path("/var/lib/hda-guard")


def _log_dir() -> Path:
    if platform.system() == "Windows":
        return _data_dir() / "logs"
    return Path("/var/log")


# Default configuration paths
DEFAULT_CONFIG_PATH = _data_dir() / "hda-guard.yaml"
DEFAULT_DB_PATH = _state_dir() / "history.db"
DEFAULT_LOG_PATH = _log_dir() / "hda-guard.log"
DEFAULT_PID_PATH = _state_dir() / "hda-guard.pid"

VALID_LOG_LEVELS = {"debug", "info", "success", "warning", "error"}


@dataclass(frozen=True)
class DaemonConfig:
    """Daemon general settings."""

    log_level: str = "info"
    log_file: str | None = str(DEFAULT_LOG_PATH)
    log_retention_days: int = 7
    pid_file: str = str(DEFAULT_PID_PATH)


@dataclass(frozen=True)
class PolicyConfig:
    """Ban policy settings."""

    device_pattern: str = DEFAULT_DEVICE_PATTERN
    target_all_statuses: bool = False


@dataclass(frozen=True)
class WatchConfig:
    """Notification registration and polling settings."""

    retry_interval_seconds: int = 300
    max_retries: int = 3
    long_retry_interval_minutes: int = 30
    registration_timeout_seconds: int = 30

    @property
    def long_retry_interval_seconds(self) -> int:
        return self.long_retry_interval_minutes * 60


@dataclass(frozen=True)
class DatabaseConfig:
    """Pass history database settings."""

    path: str = str(DEFAULT_DB_PATH)
    wal_mode: bool = True
    retention_days: int = 30


@dataclass(frozen=True)
class ServiceConfig:
    """Boot-time service registration settings."""

    name: str = "hda-guard"
    restart_count: int = 3
    restart_interval_minutes: int = 1


@dataclass(frozen=True)
class GuardConfig:
    """Main configuration container."""

    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GuardConfig:
        """Create configuration from dictionary."""
        return cls(
            daemon=DaemonConfig(**(data.get("daemon") or {})),
            policy=PolicyConfig(**(data.get("policy") or {})),
            watch=WatchConfig(**(data.get("watch") or {})),
            database=DatabaseConfig(**(data.get("database") or {})),
            service=ServiceConfig(**(data.get("service") or {})),
        )


def find_config_path() -> Path | None:
    """Return the first existing configuration file from the default locations."""
    candidates = [
        DEFAULT_CONFIG_PATH,
        Path("config/hda-guard.yaml"),
        Path("hda-guard.yaml"),
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def load_config(path: str | Path | None = None) -> GuardConfig:
    """
    Load configuration from YAML file.

    Args:
        path: Path to configuration file. If None, uses default paths.

    Returns:
        GuardConfig instance with loaded settings.

    Raises:
        FileNotFoundError: If an explicit config file is missing.
        yaml.YAMLError: If config file is invalid YAML.
    """
    if path is None:
        path = find_config_path()

    if path is None:
        # Return default configuration
        return GuardConfig()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    return GuardConfig.from_dict(data)


def validate_config(config: GuardConfig) -> list[str]:
    """
    Validate configuration and return list of errors.

    Args:
        config: Configuration to validate.

    Returns:
        List of error messages. Empty list if valid.
    """
    errors: list[str] = []

    if config.daemon.log_level not in VALID_LOG_LEVELS:
        errors.append(f"Invalid log_level: {config.daemon.log_level}")

    if config.daemon.log_retention_days < 0:
        errors.append(
            f"Invalid log_retention_days: {config.daemon.log_retention_days}"
        )

    if not config.policy.device_pattern or not config.policy.device_pattern.strip():
        errors.append("device_pattern must not be empty")

    if config.watch.retry_interval_seconds <= 0:
        errors.append(
            f"Invalid retry_interval_seconds: {config.watch.retry_interval_seconds}"
        )

    if config.watch.max_retries < 0:
        errors.append(f"Invalid max_retries: {config.watch.max_retries}")

    if config.watch.long_retry_interval_minutes <= 0:
        errors.append(
            "Invalid long_retry_interval_minutes: "
            f"{config.watch.long_retry_interval_minutes}"
        )

    if config.watch.registration_timeout_seconds <= 0:
        errors.append(
            "Invalid registration_timeout_seconds: "
            f"{config.watch.registration_timeout_seconds}"
        )

    if config.database.retention_days < 0:
        errors.append(f"Invalid retention_days: {config.database.retention_days}")

    if config.service.restart_count < 0:
        errors.append(f"Invalid restart_count: {config.service.restart_count}")

    if config.service.restart_interval_minutes <= 0:
        errors.append(
            "Invalid restart_interval_minutes: "
            f"{config.service.restart_interval_minutes}"
        )

    return errors
