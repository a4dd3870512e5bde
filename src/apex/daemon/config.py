"""Configuration models for the APEX daemon.

Defines Pydantic v2 models for daemon settings: polling cadence, health
checks, the restart watchdog and time-based capacity scheduling.  Settings
live under the ``daemon:`` key of ``<project>/.apex/config.yaml``; every
field has a default so a project without a config file runs as-is.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from apex.core.constants import (
    CONFIG_FILE_NAME,
    DAEMON_DIR_NAME,
    LOG_FILE_NAME,
    MIN_POLL_INTERVAL_MS,
    OUT_LOG_FILE_NAME,
    PID_FILE_NAME,
    PID_LOCK_SUFFIX,
    STATE_FILE_NAME,
    USAGE_FILE_NAME,
)
from apex.core.logging import get_logger

_logger = get_logger("daemon.config")

DEFAULT_DAY_MODE_HOURS: list[int] = list(range(9, 18))
DEFAULT_NIGHT_MODE_HOURS: list[int] = [22, 23, 0, 1, 2, 3, 4, 5, 6]


class HealthCheckConfig(BaseModel):
    """Periodic in-daemon health checks."""

    enabled: bool = Field(
        default=True,
        description="Run health checks and memory sampling on a timer",
    )
    interval_ms: int = Field(
        default=30_000,
        ge=100,
        description="Milliseconds between health/capacity evaluations",
    )
    timeout_ms: int = Field(
        default=5_000,
        ge=10,
        description="Upper bound for a single health check before it counts as failed",
    )
    retries: int = Field(
        default=3,
        ge=1,
        description="Consecutive failed checks that make the watchdog "
        "self-terminate the worker",
    )


class WatchdogConfig(BaseModel):
    """Relaunch policy applied by the external minder process."""

    enabled: bool = Field(
        default=True,
        description="Run the worker under a minder that relaunches it on crashes",
    )
    restart_delay_ms: int = Field(
        default=5_000,
        ge=0,
        description="Delay before relaunching a crashed worker",
    )
    max_restarts: int = Field(
        default=5,
        ge=0,
        description="Maximum relaunches inside restart_window_ms before giving up",
    )
    restart_window_ms: int = Field(
        default=300_000,
        ge=1_000,
        description="Sliding window used to count relaunches",
    )


class TimeBasedUsageConfig(BaseModel):
    """Time-of-day capacity thresholds.

    Hours are local wall-clock hours (0-23).  An hour listed in both
    lists belongs to day mode.
    """

    enabled: bool = Field(
        default=False,
        description="Gate task dispatch on the time-of-day capacity scheduler",
    )
    day_mode_hours: list[int] = Field(
        default_factory=lambda: list(DEFAULT_DAY_MODE_HOURS),
        description="Hours that belong to day mode",
    )
    night_mode_hours: list[int] = Field(
        default_factory=lambda: list(DEFAULT_NIGHT_MODE_HOURS),
        description="Hours that belong to night mode",
    )
    day_mode_capacity_threshold: float = Field(
        default=0.90,
        ge=0.0,
        le=1.0,
        description="Usage fraction at which day mode auto-pauses",
    )
    night_mode_capacity_threshold: float = Field(
        default=0.96,
        ge=0.0,
        le=1.0,
        description="Usage fraction at which night mode auto-pauses",
    )

    @field_validator("day_mode_hours", "night_mode_hours")
    @classmethod
    def _validate_hours(cls, hours: list[int]) -> list[int]:
        bad = [h for h in hours if not 0 <= h <= 23]
        if bad:
            raise ValueError(f"hours must be between 0 and 23, got {bad}")
        return sorted(set(hours))


class DaemonConfig(BaseModel):
    """Top-level daemon configuration."""

    poll_interval_ms: int = Field(
        default=5_000,
        ge=MIN_POLL_INTERVAL_MS,
        description="Milliseconds between task-queue polls",
    )
    log_level: Literal["debug", "info", "warn", "error"] = Field(
        default="info",
        description="Minimum level written to the daemon log",
    )
    service_name: str = Field(
        default="apex-daemon",
        min_length=1,
        description="Name used for the OS service unit",
    )
    start_timeout_ms: int = Field(
        default=10_000,
        ge=100,
        description="How long `start` waits for the daemon to become ready",
    )
    stop_timeout_ms: int = Field(
        default=10_000,
        ge=100,
        description="How long a graceful `stop` waits before reporting a timeout",
    )
    daily_budget: float = Field(
        default=100.0,
        description="Daily spend budget used when the usage ledger has none",
    )
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)
    time_based_usage: TimeBasedUsageConfig = Field(default_factory=TimeBasedUsageConfig)

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            lowered = value.lower()
            return "warn" if lowered == "warning" else lowered
        return value


@dataclass(frozen=True)
class DaemonPaths:
    """Locations of every daemon artifact for one project."""

    project_path: Path

    @classmethod
    def for_project(cls, project_path: Path) -> DaemonPaths:
        return cls(project_path.resolve())

    @property
    def daemon_dir(self) -> Path:
        return self.project_path / DAEMON_DIR_NAME

    @property
    def pid_file(self) -> Path:
        return self.daemon_dir / PID_FILE_NAME

    @property
    def lock_file(self) -> Path:
        return self.daemon_dir / (PID_FILE_NAME + PID_LOCK_SUFFIX)

    @property
    def log_file(self) -> Path:
        return self.daemon_dir / LOG_FILE_NAME

    @property
    def out_log_file(self) -> Path:
        return self.daemon_dir / OUT_LOG_FILE_NAME

    @property
    def state_file(self) -> Path:
        return self.daemon_dir / STATE_FILE_NAME

    @property
    def usage_file(self) -> Path:
        return self.daemon_dir / USAGE_FILE_NAME

    @property
    def config_file(self) -> Path:
        return self.daemon_dir / CONFIG_FILE_NAME


def load_config(project_path: Path, config_file: Path | None = None) -> DaemonConfig:
    """Load DaemonConfig from YAML or return defaults.

    The file may either hold the settings at top level or nest them under
    a ``daemon:`` key.  A missing file yields the defaults.

    Args:
        project_path: Project root; ``.apex/config.yaml`` is read from here.
        config_file: Explicit config file overriding the project default.

    Raises:
        ValueError: If the file is not valid YAML or fails validation.
    """
    path = config_file or DaemonPaths.for_project(project_path).config_file
    if not path.exists():
        return DaemonConfig()

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Expected a mapping in {path}, got {type(data).__name__}")

    section = data.get("daemon", data)
    try:
        config = DaemonConfig.model_validate(section)
    except ValidationError as e:
        raise ValueError(f"Invalid daemon configuration in {path}: {e}") from e

    _logger.debug("config.loaded", path=str(path))
    return config


__all__ = [
    "DEFAULT_DAY_MODE_HOURS",
    "DEFAULT_NIGHT_MODE_HOURS",
    "DaemonConfig",
    "DaemonPaths",
    "HealthCheckConfig",
    "TimeBasedUsageConfig",
    "WatchdogConfig",
    "load_config",
]
