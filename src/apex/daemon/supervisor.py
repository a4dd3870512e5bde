"""Daemon supervisor: the CLI side of the daemon lifecycle.

``DaemonSupervisor`` is bound to one project directory and drives the
state machine ``Stopped -> Starting -> Running -> Stopping -> Stopped``
across process boundaries.  It never shares memory with the daemon; it
reads and writes only:

- the PID file (sole writer at start, sole remover at stop),
- the state artifact written by the daemon (read-only here).

Expected conditions (already running, not running, corrupted PID file,
permission problems) come back as discriminated results.  Only unexpected
OS failures propagate as exceptions.
"""

from __future__ import annotations

import os
import subprocess
import sys
import time
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from apex.core.constants import (
    FORCE_KILL_WAIT_SECONDS,
    MS_PER_SECOND,
    PROCESS_START_TOLERANCE_SECONDS,
    STARTUP_POLL_INTERVAL_SECONDS,
)
from apex.core.logging import get_logger
from apex.daemon.config import DaemonConfig, DaemonPaths, load_config
from apex.daemon.exceptions import (
    DaemonAlreadyRunningError,
    DaemonError,
    DaemonErrorCode,
    DaemonPermissionError,
    PidFileCorruptedError,
    StateUnavailableError,
)
from apex.daemon.pidfile import PidFileStore
from apex.daemon.process import restart_env, worker_command
from apex.daemon.state import DaemonStateStore
from apex.daemon.system_probe import SystemProbe
from apex.daemon.types import (
    DaemonState,
    DaemonStatus,
    ExtendedDaemonStatus,
    HealthReportResult,
    PidRecord,
    StartResult,
    StopResult,
)

_logger = get_logger("daemon.supervisor")

def _utcnow() -> datetime:
    return datetime.now(UTC)


class DaemonSupervisor:
    """Start, stop and inspect the daemon of one project."""

    def __init__(
        self,
        project_path: Path,
        config: DaemonConfig | None = None,
        *,
        popen: Callable[..., Any] = subprocess.Popen,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._paths = DaemonPaths.for_project(project_path)
        self._config = config or load_config(self._paths.project_path)
        self._pid_store = PidFileStore(self._paths.pid_file)
        self._state_store = DaemonStateStore(self._paths.state_file)
        self._popen = popen
        self._clock = clock

    @property
    def paths(self) -> DaemonPaths:
        return self._paths

    @property
    def config(self) -> DaemonConfig:
        return self._config

    # ─── Start ────────────────────────────────────────────────────────

    def start(
        self,
        poll_interval_ms: int | None = None,
        environment: Mapping[str, str] | None = None,
    ) -> StartResult:
        """Spawn a detached daemon and record its PID once it is ready.

        Args:
            poll_interval_ms: Override for the task poll interval.
            environment: Extra environment for the daemon (restart attribution).
        """
        try:
            self._ensure_writable_dir()
            handle = self._pid_store.acquire()
        except DaemonAlreadyRunningError as e:
            return StartResult(
                status="already_running",
                pid=e.pid,
                message=e.message,
                error_code=DaemonErrorCode.ALREADY_RUNNING,
            )
        except DaemonError as e:
            return StartResult(status="error", message=e.message, error_code=e.code)

        try:
            started_at = self._clock()
            process = self._spawn(poll_interval_ms, environment)
            _logger.info("supervisor.spawned", pid=process.pid)

            ready, detail = self._wait_until_ready(process, started_at)
            if not ready:
                return StartResult(
                    status="error",
                    message=detail,
                    error_code=DaemonErrorCode.START_FAILED,
                )

            self._pid_store.write(
                handle,
                process.pid,
                started_at=started_at,
                project_path=self._paths.project_path,
            )
            _logger.info("supervisor.started", pid=process.pid)
            return StartResult(status="started", pid=process.pid)
        except DaemonError as e:
            return StartResult(status="error", message=e.message, error_code=e.code)
        finally:
            self._pid_store.release(handle)

    def _ensure_writable_dir(self) -> None:
        daemon_dir = self._paths.daemon_dir
        try:
            daemon_dir.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise DaemonPermissionError(
                f"Cannot create {daemon_dir}: {e}", cause=e,
            ) from e
        if not os.access(daemon_dir, os.W_OK | os.X_OK):
            raise DaemonPermissionError(f"{daemon_dir} is not writable")

    def _spawn(
        self,
        poll_interval_ms: int | None,
        environment: Mapping[str, str] | None,
    ) -> Any:
        command = worker_command(self._paths.project_path, poll_interval_ms)
        env = {**os.environ, **(environment or {})}
        kwargs: dict[str, Any] = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = (
                subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
            )
        else:
            kwargs["start_new_session"] = True

        with open(self._paths.out_log_file, "ab") as out:
            return self._popen(
                command,
                cwd=str(self._paths.project_path),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=subprocess.STDOUT,
                close_fds=True,
                **kwargs,
            )

    def _wait_until_ready(self, process: Any, started_at: datetime) -> tuple[bool, str]:
        """Wait for the daemon's first state write, bounded by start_timeout_ms."""
        deadline = time.monotonic() + self._config.start_timeout_ms / MS_PER_SECOND
        while time.monotonic() < deadline:
            returncode = process.poll()
            if returncode is not None:
                return False, (
                    f"Daemon exited during startup with code {returncode}. "
                    f"See {self._paths.log_file}"
                )
            state = self._read_state_quietly()
            if state is not None and self._state_belongs_to(state, started_at):
                return True, ""
            time.sleep(STARTUP_POLL_INTERVAL_SECONDS)

        _logger.error("supervisor.start_timeout", pid=process.pid)
        SystemProbe.kill_tree(process.pid)
        return False, (
            f"Daemon did not become ready within {self._config.start_timeout_ms} ms"
        )

    # ─── Stop / kill ──────────────────────────────────────────────────

    def stop(self, force: bool = False, timeout_ms: int | None = None) -> StopResult:
        """Stop the daemon.

        Graceful by default: sends a termination signal and waits up to the
        stop timeout.  ``force`` kills unconditionally and also clears a
        corrupted PID file.  Stopping a daemon that is not running returns
        ``not_running``; it is never an error.
        """
        try:
            record = self._pid_store.read_with_retry()
        except PidFileCorruptedError as e:
            if not force:
                return StopResult(status="error", message=e.message, error_code=e.code)
            _logger.warning("supervisor.corrupted_pid_file_cleared", path=str(self._paths.pid_file))
            self._pid_store.remove()
            return StopResult(status="not_running", message="Cleared corrupted PID file")
        except DaemonError as e:
            return StopResult(status="error", message=e.message, error_code=e.code)

        if record is None:
            return StopResult(status="not_running")
        if not SystemProbe.pid_alive(record.pid):
            _logger.info("supervisor.stale_pid_removed", pid=record.pid)
            self._pid_store.remove()
            return StopResult(status="not_running", pid=record.pid)
        if not SystemProbe.started_near(
            record.pid, record.started_at, PROCESS_START_TOLERANCE_SECONDS,
        ):
            # Never signal a process that merely inherited the PID.
            _logger.warning("supervisor.pid_reused", pid=record.pid)
            self._pid_store.remove()
            return StopResult(status="not_running", pid=record.pid)

        if force:
            return self._kill(record.pid)

        timeout = (timeout_ms or self._config.stop_timeout_ms) / MS_PER_SECOND
        if SystemProbe.terminate(record.pid):
            _logger.info("supervisor.sigterm_sent", pid=record.pid, timeout_s=timeout)
            if not SystemProbe.wait_for_exit(record.pid, timeout):
                return StopResult(
                    status="timeout",
                    pid=record.pid,
                    message=f"Daemon did not stop within {timeout:g}s",
                    error_code=DaemonErrorCode.STOP_FAILED,
                )
        self._pid_store.remove()
        return StopResult(status="stopped", pid=record.pid)

    def kill(self) -> StopResult:
        """Unconditionally kill the daemon (``stop --force``)."""
        return self.stop(force=True)

    def _kill(self, pid: int) -> StopResult:
        SystemProbe.kill_tree(pid)
        if not SystemProbe.wait_for_exit(pid, FORCE_KILL_WAIT_SECONDS):
            return StopResult(
                status="error",
                pid=pid,
                message=f"Process {pid} survived SIGKILL",
                error_code=DaemonErrorCode.STOP_FAILED,
            )
        self._pid_store.remove()
        _logger.info("supervisor.killed", pid=pid)
        return StopResult(status="killed", pid=pid)

    def restart(self, poll_interval_ms: int | None = None) -> tuple[StopResult, StartResult]:
        """Stop (forcing if graceful times out) and start with reason ``manual``."""
        stopped = self.stop()
        if stopped.status == "timeout":
            stopped = self.kill()
        if stopped.status == "error":
            return stopped, StartResult(
                status="error",
                message="Restart aborted because stop failed",
                error_code=stopped.error_code,
            )
        started = self.start(
            poll_interval_ms=poll_interval_ms,
            environment=restart_env("manual", None, watchdog=False),
        )
        return stopped, started

    # ─── Queries ──────────────────────────────────────────────────────

    def get_status(self) -> DaemonStatus:
        """Project the PID file into a DaemonStatus; never mutates anything."""
        record = self._live_record()
        if record is None:
            return DaemonStatus(running=False)
        uptime = max(int((self._clock() - record.started_at).total_seconds() * MS_PER_SECOND), 0)
        return DaemonStatus(
            running=True,
            pid=record.pid,
            started_at=record.started_at,
            uptime_ms=uptime,
        )

    def get_extended_status(self) -> ExtendedDaemonStatus:
        """DaemonStatus plus capacity once the daemon has published it."""
        status = self.get_status()
        extended = ExtendedDaemonStatus(**status.model_dump())
        if not status.running or status.started_at is None:
            return extended
        state = self._read_state_quietly()
        if state is not None and self._state_belongs_to(state, status.started_at):
            extended.capacity = state.capacity
        return extended

    def get_health_report(self) -> HealthReportResult:
        """Read the daemon's health report from its state artifact."""
        try:
            record = self._pid_store.read_with_retry()
        except DaemonError as e:
            return HealthReportResult(status="error", message=e.message, error_code=e.code)
        if record is None or not SystemProbe.pid_alive(record.pid):
            return HealthReportResult(
                status="error",
                message="Daemon is not running",
                error_code=DaemonErrorCode.NOT_RUNNING,
            )
        try:
            state = self._state_store.read_with_retry()
        except StateUnavailableError as e:
            return HealthReportResult(status="error", message=e.message, error_code=e.code)

        if state is None or not self._state_belongs_to(state, record.started_at):
            return HealthReportResult(
                status="error",
                message="Daemon has not published a health report yet",
                error_code=DaemonErrorCode.STATE_UNAVAILABLE,
            )

        report = state.health.model_copy()
        report.uptime_ms = max(
            int((self._clock() - state.started_at).total_seconds() * MS_PER_SECOND),
            report.uptime_ms,
        )
        return HealthReportResult(status="ok", report=report)

    # ─── Helpers ──────────────────────────────────────────────────────

    def _live_record(self) -> PidRecord | None:
        try:
            record = self._pid_store.read_with_retry()
        except DaemonError as e:
            _logger.warning("supervisor.pid_file_unreadable", error=e.message, code=str(e.code))
            return None
        if record is None or not SystemProbe.pid_alive(record.pid):
            return None
        return record

    def _read_state_quietly(self) -> DaemonState | None:
        try:
            return self._state_store.read()
        except StateUnavailableError:
            return None

    @staticmethod
    def _state_belongs_to(state: DaemonState, started_at: datetime) -> bool:
        """True if the state was written by a daemon spawned at or after ``started_at``.

        A daemon stamps its own start time after it was spawned, so the final
        write of a previous instance never qualifies however recent it is.
        """
        return state.started_at >= started_at


__all__ = ["DaemonSupervisor"]
