"""Tests for apex.daemon.types projections."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from apex.daemon.types import (
    DaemonState,
    DaemonStatus,
    ExtendedDaemonStatus,
    HealthReport,
    PidRecord,
    RestartEvent,
)

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


class TestDaemonStatus:
    def test_complete_running_record(self):
        status = DaemonStatus(running=True, pid=42, started_at=NOW, uptime_ms=1000)
        assert status.running is True
        assert status.pid == 42

    @pytest.mark.parametrize(
        "missing",
        [
            {"pid": None, "started_at": NOW, "uptime_ms": 1},
            {"pid": 42, "started_at": None, "uptime_ms": 1},
            {"pid": 42, "started_at": NOW, "uptime_ms": None},
        ],
    )
    def test_partial_running_record_is_stopped(self, missing):
        status = DaemonStatus(running=True, **missing)
        assert status.running is False
        assert status.pid is None
        assert status.started_at is None
        assert status.uptime_ms is None

    def test_extended_status_without_capacity(self):
        status = ExtendedDaemonStatus(running=True, pid=1, started_at=NOW, uptime_ms=0)
        assert status.capacity is None


class TestHealthReport:
    def test_pass_rate_zero_when_no_checks(self):
        assert HealthReport().pass_rate == 0.0

    @pytest.mark.parametrize(
        ("passed", "failed", "expected"),
        [(1, 0, 1.0), (0, 1, 0.0), (1, 1, 0.5), (2, 1, 2 / 3)],
    )
    def test_pass_rate(self, passed, failed, expected):
        report = HealthReport(health_checks_passed=passed, health_checks_failed=failed)
        assert report.pass_rate == pytest.approx(expected)

    def test_recent_restarts_caps_at_five_newest_first(self):
        history = [
            RestartEvent(timestamp=NOW.replace(hour=h), reason=f"r{h}")
            for h in range(11, 3, -1)
        ]
        recent = HealthReport(restart_history=history).recent_restarts()
        assert [e.reason for e in recent] == ["r11", "r10", "r9", "r8", "r7"]


class TestPidRecord:
    def test_camel_case_round_trip(self):
        record = PidRecord(pid=42, started_at=NOW, version="1.0")
        dumped = record.model_dump_json(by_alias=True, exclude_none=True)
        assert '"startedAt"' in dumped
        assert '"projectPath"' not in dumped
        assert PidRecord.model_validate_json(dumped) == record

    def test_pid_must_be_positive(self):
        with pytest.raises(ValueError):
            PidRecord(pid=0, started_at=NOW)


class TestDaemonState:
    def test_defaults_to_unclean(self):
        state = DaemonState(pid=1, started_at=NOW, updated_at=NOW)
        assert state.clean_shutdown is False
        assert state.health.restart_history == []
