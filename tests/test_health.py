"""Tests for apex.daemon.health.HealthMonitor."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from apex.core.constants import EXIT_CODE_WATCHDOG
from apex.daemon.config import HealthCheckConfig
from apex.daemon.health import HealthMonitor, storage_check
from apex.daemon.types import MemoryUsage, RestartEvent

START = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


async def passing() -> bool:
    return True


async def failing() -> bool:
    return False


async def raising() -> bool:
    raise RuntimeError("disk gone")


async def hanging() -> bool:
    await asyncio.sleep(10)
    return True


def _monitor(*checks, retries: int = 3, timeout_ms: int = 50, **kwargs) -> HealthMonitor:
    config = HealthCheckConfig(retries=retries, timeout_ms=timeout_ms)
    return HealthMonitor(config, checks, started_at=START, clock=lambda: START, **kwargs)


def _event(minutes: int, reason: str = "crash") -> RestartEvent:
    return RestartEvent(timestamp=START + timedelta(minutes=minutes), reason=reason)


class TestHealthChecks:
    @pytest.mark.asyncio
    async def test_passing_checks_counted(self):
        monitor = _monitor(passing, passing)
        assert await monitor.run_checks() is True
        report = monitor.report()
        assert report.health_checks_passed == 1
        assert report.health_checks_failed == 0
        assert report.last_health_check == START

    @pytest.mark.asyncio
    async def test_one_failing_check_fails_the_run(self):
        monitor = _monitor(passing, failing)
        assert await monitor.run_checks() is False
        assert monitor.report().health_checks_failed == 1

    @pytest.mark.asyncio
    async def test_exception_counts_as_failure(self):
        monitor = _monitor(raising)
        assert await monitor.run_checks() is False
        assert monitor.tripped is False

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self):
        monitor = _monitor(hanging, timeout_ms=20)
        assert await monitor.run_checks() is False
        assert monitor.report().health_checks_failed == 1

    @pytest.mark.asyncio
    async def test_trips_after_consecutive_failures(self):
        monitor = _monitor(failing, retries=2)
        await monitor.run_checks()
        assert monitor.tripped is False
        await monitor.run_checks()
        assert monitor.tripped is True
        assert monitor.trip_reason == "health_check_failed"
        assert monitor.exit_code == EXIT_CODE_WATCHDOG

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self):
        results = iter([False, True, False])

        async def flaky() -> bool:
            return next(results)

        monitor = _monitor(flaky, retries=2)
        for _ in range(3):
            await monitor.run_checks()
        assert monitor.tripped is False
        report = monitor.report()
        assert (report.health_checks_passed, report.health_checks_failed) == (1, 2)
        assert report.pass_rate == pytest.approx(1 / 3)

    @pytest.mark.asyncio
    async def test_memory_error_trips_as_oom(self):
        async def exhausted() -> bool:
            raise MemoryError

        monitor = _monitor(exhausted)
        await monitor.run_checks()
        assert monitor.trip_reason == "oom"

    def test_first_trip_reason_wins(self):
        monitor = _monitor()
        monitor.trip("oom")
        monitor.trip("health_check_failed")
        assert monitor.trip_reason == "oom"

    @pytest.mark.asyncio
    async def test_tick_skips_checks_when_disabled(self):
        config = HealthCheckConfig(enabled=False)
        monitor = HealthMonitor(config, [failing], started_at=START, clock=lambda: START)
        report = await monitor.tick()
        assert report.health_checks_failed == 0
        assert report.last_health_check is None

    @pytest.mark.asyncio
    async def test_storage_check(self, tmp_path: Path):
        assert await storage_check(tmp_path)() is True
        assert await storage_check(tmp_path / "missing")() is False


class TestMemorySampling:
    def test_sample_updates_report(self):
        sample = MemoryUsage(heap_used_bytes=10, heap_total_bytes=20, rss_bytes=30)
        monitor = _monitor()
        with patch("apex.daemon.health.SystemProbe.get_memory_usage", return_value=sample):
            assert monitor.sample_memory() == sample
        assert monitor.report().memory_usage == sample

    def test_failed_sample_keeps_previous(self):
        sample = MemoryUsage(heap_used_bytes=10, heap_total_bytes=20, rss_bytes=30)
        monitor = _monitor()
        with patch("apex.daemon.health.SystemProbe.get_memory_usage", return_value=sample):
            monitor.sample_memory()
        with patch(
            "apex.daemon.health.SystemProbe.get_memory_usage", side_effect=OSError("denied"),
        ):
            assert monitor.sample_memory() is None
        assert monitor.report().memory_usage == sample


class TestCountersAndUptime:
    def test_record_tasks(self):
        monitor = _monitor()
        monitor.record_tasks(succeeded=3, failed=1, active=2)
        monitor.record_tasks(succeeded=1)
        counts = monitor.report().task_counts
        assert (counts.processed, counts.succeeded, counts.failed, counts.active) == (5, 4, 1, 2)

    def test_uptime_from_start(self):
        monitor = _monitor()
        assert monitor.report(now=START + timedelta(hours=1, minutes=30)).uptime_ms == 5_400_000

    def test_uptime_never_negative(self):
        monitor = _monitor()
        assert monitor.report(now=START - timedelta(seconds=5)).uptime_ms == 0


class TestRestartHistory:
    def test_newest_first(self):
        monitor = _monitor()
        monitor.record_restart(_event(1, "first"))
        monitor.record_restart(_event(2, "second"))
        assert [e.reason for e in monitor.restart_history] == ["second", "first"]

    def test_capped_at_limit(self):
        monitor = _monitor(history_limit=3)
        for minute in range(5):
            monitor.record_restart(_event(minute, f"r{minute}"))
        assert [e.reason for e in monitor.restart_history] == ["r4", "r3", "r2"]

    def test_merge_orders_and_deduplicates(self):
        monitor = _monitor(history_limit=4)
        monitor.record_restart(_event(10, "current"))
        monitor.merge_history([_event(5, "old"), _event(7, "older-but-newer"), _event(5, "old")])
        assert [e.reason for e in monitor.restart_history] == ["current", "older-but-newer", "old"]

    def test_merge_respects_limit(self):
        monitor = _monitor(history_limit=2)
        monitor.merge_history([_event(m) for m in range(6)])
        assert [e.timestamp for e in monitor.restart_history] == [
            START + timedelta(minutes=5),
            START + timedelta(minutes=4),
        ]

    def test_report_includes_history(self):
        monitor = _monitor()
        monitor.record_restart(_event(1, "oom"))
        assert monitor.report().recent_restarts()[0].reason == "oom"
