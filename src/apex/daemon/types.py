"""Shared data types for the APEX daemon.

Defines the read-only projections the CLI shows (status, capacity, health),
the records persisted on disk (PID record, daemon state), and the
discriminated results returned by the supervisor.  All models are Pydantic
v2 BaseModel so they serialize straight into the JSON artifacts.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from apex.core.constants import RESTART_HISTORY_DISPLAY_LIMIT
from apex.daemon.exceptions import DaemonErrorCode

CapacityMode = Literal["day", "night", "off-hours"]
RestoreReason = Literal["usage_decreased", "mode_switch", "budget_reset"]


# ─── On-disk records ──────────────────────────────────────────────────


class PidRecord(BaseModel):
    """Contents of the PID file.

    Serialized with camelCase keys (``startedAt``, ``projectPath``) so the
    file stays readable by other tooling that inspects ``.apex/``.
    """

    model_config = ConfigDict(populate_by_name=True)

    pid: int = Field(gt=0, description="PID of the supervised process")
    started_at: datetime = Field(alias="startedAt", description="When the daemon was started")
    project_path: Path | None = Field(
        default=None,
        alias="projectPath",
        description="Project directory the daemon owns",
    )
    version: str | None = Field(default=None, description="APEX version that wrote the record")


# ─── Status projections ───────────────────────────────────────────────


class DaemonStatus(BaseModel):
    """Whether the daemon runs, derived from the PID file on every query.

    A record claiming ``running=True`` without ``pid``, ``started_at`` and
    ``uptime_ms`` is a partial write or a stale file, so it is normalized
    to the stopped state.
    """

    running: bool = False
    pid: int | None = None
    started_at: datetime | None = None
    uptime_ms: int | None = None

    @model_validator(mode="after")
    def _partial_running_means_stopped(self) -> DaemonStatus:
        if self.running and (
            self.pid is None or self.started_at is None or self.uptime_ms is None
        ):
            self.running = False
            self.pid = None
            self.started_at = None
            self.uptime_ms = None
        return self


class CapacityStatusInfo(BaseModel):
    """Result of one capacity-scheduler evaluation.

    ``is_auto_paused`` is true iff ``current_usage_percent >=
    capacity_threshold``.  ``pause_reason`` is ``None`` when not paused; an
    empty string means paused without a stated reason.
    """

    mode: CapacityMode
    capacity_threshold: float = Field(ge=0.0, le=1.0)
    current_usage_percent: float
    is_auto_paused: bool
    pause_reason: str | None = None
    next_mode_switch: datetime
    time_based_usage_enabled: bool


class ExtendedDaemonStatus(DaemonStatus):
    """DaemonStatus plus the capacity section of the state artifact.

    ``capacity`` is ``None`` while the daemon has not yet written its state
    file, which is distinct from not running.
    """

    capacity: CapacityStatusInfo | None = None


class TimeWindow(BaseModel):
    """The capacity mode window containing a given instant."""

    mode: CapacityMode
    is_active: bool
    start_hour: int | None = None
    # Last hour inside the window, so a window may wrap midnight (22 to 6).
    end_hour: int | None = None
    next_transition: datetime


class PauseDecision(BaseModel):
    """Whether the daemon should hold back new tasks right now."""

    should_pause: bool
    reason: str | None = None
    recommendations: list[str] = Field(default_factory=list)
    next_reset_time: datetime


class CapacityRestoredEvent(BaseModel):
    """Emitted when a paused evaluation is followed by an unpaused one."""

    reason: RestoreReason
    timestamp: datetime
    previous: CapacityStatusInfo
    current: CapacityStatusInfo


# ─── Health ───────────────────────────────────────────────────────────


class MemoryUsage(BaseModel):
    """Process memory sample in bytes."""

    heap_used_bytes: int = 0
    heap_total_bytes: int = 0
    rss_bytes: int = 0


class TaskCounts(BaseModel):
    """Task counters accumulated by the daemon since it started."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    active: int = 0


class RestartEvent(BaseModel):
    """One relaunch of the daemon worker, with its attributed cause."""

    timestamp: datetime
    reason: str
    exit_code: int | None = None
    triggered_by_watchdog: bool = False


class HealthReport(BaseModel):
    """Health snapshot written by the daemon into its state artifact."""

    uptime_ms: int = 0
    memory_usage: MemoryUsage = Field(default_factory=MemoryUsage)
    task_counts: TaskCounts = Field(default_factory=TaskCounts)
    last_health_check: datetime | None = None
    health_checks_passed: int = 0
    health_checks_failed: int = 0
    restart_history: list[RestartEvent] = Field(
        default_factory=list,
        description="Newest first",
    )

    @property
    def pass_rate(self) -> float:
        """Fraction of passed checks; 0.0 when no check has run yet."""
        total = self.health_checks_passed + self.health_checks_failed
        if total == 0:
            return 0.0
        return self.health_checks_passed / total

    def recent_restarts(
        self, limit: int = RESTART_HISTORY_DISPLAY_LIMIT,
    ) -> list[RestartEvent]:
        """Most recent restart events, newest first."""
        return self.restart_history[:limit]


class DaemonState(BaseModel):
    """The state artifact (``.apex/daemon-state.json``).

    Written only by the daemon process, always by atomic replace.
    """

    pid: int
    started_at: datetime
    updated_at: datetime
    version: str | None = None
    capacity: CapacityStatusInfo | None = None
    health: HealthReport = Field(default_factory=HealthReport)
    clean_shutdown: bool = False
    exit_reason: str | None = Field(
        default=None,
        description="Why the watchdog stopped this instance, set on its final write",
    )
    exit_code: int | None = None


# ─── Supervisor results ───────────────────────────────────────────────


class StartResult(BaseModel):
    """Outcome of ``DaemonSupervisor.start``."""

    status: Literal["started", "already_running", "error"]
    pid: int | None = None
    message: str | None = None
    error_code: DaemonErrorCode | None = None


class StopResult(BaseModel):
    """Outcome of ``DaemonSupervisor.stop`` / ``kill``.

    ``not_running`` is a normal outcome, never an error.
    """

    status: Literal["stopped", "killed", "not_running", "timeout", "error"]
    pid: int | None = None
    message: str | None = None
    error_code: DaemonErrorCode | None = None


class HealthReportResult(BaseModel):
    """Outcome of ``DaemonSupervisor.get_health_report``."""

    status: Literal["ok", "error"]
    report: HealthReport | None = None
    message: str | None = None
    error_code: DaemonErrorCode | None = None


__all__ = [
    "CapacityMode",
    "CapacityRestoredEvent",
    "CapacityStatusInfo",
    "DaemonState",
    "DaemonStatus",
    "ExtendedDaemonStatus",
    "HealthReport",
    "HealthReportResult",
    "MemoryUsage",
    "PauseDecision",
    "PidRecord",
    "RestartEvent",
    "RestoreReason",
    "StartResult",
    "StopResult",
    "TaskCounts",
    "TimeWindow",
]
