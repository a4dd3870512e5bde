"""Tests for apex.daemon.supervisor.DaemonSupervisor."""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import MagicMock, patch

import psutil
import pytest

from apex.core.constants import ENV_RESTART_REASON
from apex.daemon.config import DaemonConfig
from apex.daemon.exceptions import DaemonErrorCode
from apex.daemon.state import DaemonStateStore
from apex.daemon.supervisor import DaemonSupervisor
from apex.daemon.types import (
    CapacityStatusInfo,
    DaemonState,
    HealthReport,
    StartResult,
    StopResult,
    TaskCounts,
)

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)
DEAD_PID = 999_999


class FakeProcess:
    def __init__(self, pid: int, returncode: int | None = None) -> None:
        self.pid = pid
        self._returncode = returncode

    def poll(self) -> int | None:
        return self._returncode


class FakePopen:
    """Records spawns; optionally publishes state the way a ready daemon does."""

    def __init__(self, paths, *, publish_state: bool = True, returncode: int | None = None):
        self._paths = paths
        self._publish = publish_state
        self._returncode = returncode
        self.calls: list[tuple[list[str], dict]] = []

    def __call__(self, command, **kwargs):
        self.calls.append((list(command), kwargs))
        if self._publish:
            DaemonStateStore(self._paths.state_file).write(
                DaemonState(pid=4321, started_at=NOW, updated_at=NOW),
            )
        return FakeProcess(4321, self._returncode)


def _write_pid(paths, pid: int, started_at: datetime = NOW) -> None:
    paths.pid_file.write_text(json.dumps({"pid": pid, "startedAt": started_at.isoformat()}))


def _supervisor(project: Path, popen=None, **config) -> DaemonSupervisor:
    cfg = DaemonConfig.model_validate({"start_timeout_ms": 500, "stop_timeout_ms": 500, **config})
    return DaemonSupervisor(project, cfg, popen=popen or MagicMock(), clock=lambda: NOW)


# ─── Start ────────────────────────────────────────────────────────────


class TestStart:
    def test_spawns_and_records_pid(self, project, paths):
        popen = FakePopen(paths)
        supervisor = _supervisor(project, popen)
        result = supervisor.start(poll_interval_ms=2000)

        assert result == StartResult(status="started", pid=4321)
        record = json.loads(paths.pid_file.read_text())
        assert record["pid"] == 4321
        assert not paths.lock_file.exists()

        command, kwargs = popen.calls[0]
        assert command[-2:] == ["--poll-interval", "2000"]
        assert kwargs["cwd"] == str(paths.project_path)

    def test_already_running_does_not_spawn(self, project, paths):
        _write_pid(paths, os.getpid())
        popen = FakePopen(paths)
        result = _supervisor(project, popen).start()

        assert result.status == "already_running"
        assert result.pid == os.getpid()
        assert result.error_code is DaemonErrorCode.ALREADY_RUNNING
        assert popen.calls == []
        assert json.loads(paths.pid_file.read_text())["pid"] == os.getpid()

    def test_corrupted_pid_file_reported(self, project, paths):
        paths.pid_file.write_text("garbage")
        result = _supervisor(project, FakePopen(paths)).start()
        assert result.status == "error"
        assert result.error_code is DaemonErrorCode.PID_FILE_CORRUPTED

    def test_early_exit_is_start_failure(self, project, paths):
        popen = FakePopen(paths, publish_state=False, returncode=2)
        result = _supervisor(project, popen).start()
        assert result.status == "error"
        assert result.error_code is DaemonErrorCode.START_FAILED
        assert "code 2" in result.message
        assert not paths.pid_file.exists()
        assert not paths.lock_file.exists()

    def test_not_ready_in_time_is_killed(self, project, paths):
        popen = FakePopen(paths, publish_state=False)
        supervisor = _supervisor(project, popen, start_timeout_ms=100)
        with patch("apex.daemon.supervisor.SystemProbe") as system:
            result = supervisor.start()
        assert result.status == "error"
        assert result.error_code is DaemonErrorCode.START_FAILED
        system.kill_tree.assert_called_once_with(4321)
        assert not paths.pid_file.exists()

    def test_stale_state_is_not_readiness(self, project, paths):
        DaemonStateStore(paths.state_file).write(
            DaemonState(pid=1, started_at=NOW - timedelta(hours=2), updated_at=NOW - timedelta(hours=1)),
        )
        popen = FakePopen(paths, publish_state=False)
        with patch("apex.daemon.supervisor.SystemProbe"):
            result = _supervisor(project, popen, start_timeout_ms=100).start()
        assert result.status == "error"

    def test_previous_instance_final_write_is_not_readiness(self, project, paths):
        # A restart: the old daemon wrote its clean-shutdown state moments ago.
        DaemonStateStore(paths.state_file).write(DaemonState(
            pid=1111,
            started_at=NOW - timedelta(hours=3),
            updated_at=NOW - timedelta(milliseconds=300),
            clean_shutdown=True,
        ))
        popen = FakePopen(paths, publish_state=False)
        with patch("apex.daemon.supervisor.SystemProbe"):
            result = _supervisor(project, popen, start_timeout_ms=100).start()
        assert result.status == "error"
        assert result.error_code is DaemonErrorCode.START_FAILED
        assert not paths.pid_file.exists()


# ─── Stop ─────────────────────────────────────────────────────────────


class TestStop:
    def test_not_running_is_idempotent(self, project):
        supervisor = _supervisor(project)
        assert supervisor.stop().status == "not_running"
        assert supervisor.stop().status == "not_running"

    def test_stale_pid_cleared(self, project, paths):
        _write_pid(paths, DEAD_PID)
        with patch("apex.daemon.supervisor.SystemProbe.pid_alive", return_value=False):
            result = _supervisor(project).stop()
        assert result.status == "not_running"
        assert not paths.pid_file.exists()

    def test_corrupted_without_force_is_error(self, project, paths):
        paths.pid_file.write_text("{")
        result = _supervisor(project).stop()
        assert result.status == "error"
        assert result.error_code is DaemonErrorCode.PID_FILE_CORRUPTED
        assert paths.pid_file.exists()

    def test_corrupted_with_force_is_cleared(self, project, paths):
        paths.pid_file.write_text("{")
        result = _supervisor(project).stop(force=True)
        assert result.status == "not_running"
        assert not paths.pid_file.exists()

    def test_graceful_stop(self, project, paths):
        _write_pid(paths, 4321)
        with patch("apex.daemon.supervisor.SystemProbe") as system:
            system.pid_alive.return_value = True
            system.terminate.return_value = True
            system.wait_for_exit.return_value = True
            result = _supervisor(project).stop()
        assert result == StopResult(status="stopped", pid=4321)
        system.terminate.assert_called_once_with(4321)
        system.wait_for_exit.assert_called_once_with(4321, 0.5)
        assert not paths.pid_file.exists()

    def test_explicit_timeout(self, project, paths):
        _write_pid(paths, 4321)
        with patch("apex.daemon.supervisor.SystemProbe") as system:
            system.pid_alive.return_value = True
            system.terminate.return_value = True
            system.wait_for_exit.return_value = False
            result = _supervisor(project).stop(timeout_ms=2000)
        assert result.status == "timeout"
        assert result.error_code is DaemonErrorCode.STOP_FAILED
        system.wait_for_exit.assert_called_once_with(4321, 2.0)
        assert paths.pid_file.exists()

    def test_force_kills_tree(self, project, paths):
        _write_pid(paths, 4321)
        with patch("apex.daemon.supervisor.SystemProbe") as system:
            system.pid_alive.return_value = True
            system.wait_for_exit.return_value = True
            result = _supervisor(project).kill()
        assert result == StopResult(status="killed", pid=4321)
        system.kill_tree.assert_called_once_with(4321)
        system.terminate.assert_not_called()
        assert not paths.pid_file.exists()

    def test_survivor_of_kill_is_error(self, project, paths):
        _write_pid(paths, 4321)
        with patch("apex.daemon.supervisor.SystemProbe") as system:
            system.pid_alive.return_value = True
            system.wait_for_exit.return_value = False
            result = _supervisor(project).stop(force=True)
        assert result.status == "error"
        assert paths.pid_file.exists()

    @pytest.mark.parametrize("force", [False, True])
    def test_reused_pid_is_never_signalled(self, project, paths, force):
        # The live test process holds the PID, but it started long after the record.
        _write_pid(paths, os.getpid(), started_at=NOW)
        with (
            patch("apex.daemon.supervisor.SystemProbe.terminate") as terminate,
            patch("apex.daemon.supervisor.SystemProbe.kill_tree") as kill_tree,
        ):
            result = _supervisor(project).stop(force=force)
        assert result == StopResult(status="not_running", pid=os.getpid())
        terminate.assert_not_called()
        kill_tree.assert_not_called()
        assert not paths.pid_file.exists()

    def test_matching_start_time_is_signalled(self, project, paths):
        created = datetime.fromtimestamp(psutil.Process().create_time(), UTC)
        _write_pid(paths, os.getpid(), started_at=created + timedelta(milliseconds=300))
        with (
            patch("apex.daemon.supervisor.SystemProbe.terminate", return_value=True) as terminate,
            patch("apex.daemon.supervisor.SystemProbe.wait_for_exit", return_value=True),
        ):
            result = _supervisor(project).stop()
        assert result == StopResult(status="stopped", pid=os.getpid())
        terminate.assert_called_once_with(os.getpid())


class TestRestart:
    def test_timeout_escalates_to_kill_and_marks_manual(self, project):
        supervisor = _supervisor(project)
        with (
            patch.object(supervisor, "stop", return_value=StopResult(status="timeout", pid=1)),
            patch.object(supervisor, "kill", return_value=StopResult(status="killed", pid=1)),
            patch.object(supervisor, "start", return_value=StartResult(status="started", pid=2)) as start,
        ):
            stopped, started = supervisor.restart(poll_interval_ms=1500)
        assert stopped.status == "killed"
        assert started.pid == 2
        kwargs = start.call_args.kwargs
        assert kwargs["poll_interval_ms"] == 1500
        assert kwargs["environment"][ENV_RESTART_REASON] == "manual"

    def test_stop_error_aborts(self, project):
        supervisor = _supervisor(project)
        failure = StopResult(status="error", error_code=DaemonErrorCode.PID_FILE_CORRUPTED)
        with (
            patch.object(supervisor, "stop", return_value=failure),
            patch.object(supervisor, "start") as start,
        ):
            _stopped, started = supervisor.restart()
        assert started.status == "error"
        assert started.error_code is DaemonErrorCode.PID_FILE_CORRUPTED
        start.assert_not_called()


# ─── Queries ──────────────────────────────────────────────────────────


def _running_state(paths, **health) -> None:
    DaemonStateStore(paths.state_file).write(DaemonState(
        pid=os.getpid(),
        started_at=NOW - timedelta(hours=1),
        updated_at=NOW,
        capacity=CapacityStatusInfo(
            mode="day",
            capacity_threshold=0.8,
            current_usage_percent=0.45,
            is_auto_paused=False,
            next_mode_switch=NOW + timedelta(hours=6),
            time_based_usage_enabled=True,
        ),
        health=HealthReport(**health),
    ))


class TestStatus:
    def test_stopped(self, project):
        status = _supervisor(project).get_status()
        assert status.running is False
        assert status.pid is None

    def test_running(self, project, paths):
        _write_pid(paths, os.getpid(), started_at=NOW - timedelta(hours=1))
        status = _supervisor(project).get_status()
        assert status.running is True
        assert status.pid == os.getpid()
        assert status.uptime_ms == 3_600_000

    def test_corrupted_pid_file_reads_as_stopped(self, project, paths):
        paths.pid_file.write_text("nope")
        assert _supervisor(project).get_status().running is False
        assert paths.pid_file.exists()

    def test_extended_status_includes_capacity(self, project, paths):
        _write_pid(paths, os.getpid(), started_at=NOW - timedelta(hours=1))
        _running_state(paths)
        status = _supervisor(project).get_extended_status()
        assert status.capacity is not None
        assert status.capacity.current_usage_percent == 0.45

    def test_extended_status_before_first_publish(self, project, paths):
        _write_pid(paths, os.getpid())
        status = _supervisor(project).get_extended_status()
        assert status.running is True
        assert status.capacity is None

    def test_extended_status_ignores_previous_instance_state(self, project, paths):
        _write_pid(paths, os.getpid(), started_at=NOW)
        _running_state(paths)
        status = _supervisor(project).get_extended_status()
        assert status.running is True
        assert status.capacity is None

    def test_health_report_ignores_previous_instance_state(self, project, paths):
        _write_pid(paths, os.getpid(), started_at=NOW)
        _running_state(paths)
        result = _supervisor(project).get_health_report()
        assert result.status == "error"
        assert result.error_code is DaemonErrorCode.STATE_UNAVAILABLE


class TestHealthReport:
    def test_not_running(self, project):
        result = _supervisor(project).get_health_report()
        assert result.status == "error"
        assert result.error_code is DaemonErrorCode.NOT_RUNNING

    def test_corrupted_pid_file(self, project, paths):
        paths.pid_file.write_text("nope")
        result = _supervisor(project).get_health_report()
        assert result.error_code is DaemonErrorCode.PID_FILE_CORRUPTED

    def test_not_published_yet(self, project, paths):
        _write_pid(paths, os.getpid())
        result = _supervisor(project).get_health_report()
        assert result.error_code is DaemonErrorCode.STATE_UNAVAILABLE

    def test_malformed_state(self, project, paths):
        _write_pid(paths, os.getpid())
        paths.state_file.write_text("{")
        result = _supervisor(project).get_health_report()
        assert result.error_code is DaemonErrorCode.STATE_UNAVAILABLE

    def test_report(self, project, paths):
        _write_pid(paths, os.getpid(), started_at=NOW - timedelta(hours=1))
        _running_state(paths, uptime_ms=1000, task_counts=TaskCounts(processed=4, succeeded=4))
        result = _supervisor(project).get_health_report()
        assert result.status == "ok"
        assert result.report is not None
        assert result.report.task_counts.processed == 4
        assert result.report.uptime_ms == 3_600_000


@pytest.mark.parametrize("force", [False, True])
def test_stop_never_touches_state_file(project, paths, force):
    _running_state(paths)
    _supervisor(project).stop(force=force)
    assert paths.state_file.exists()
