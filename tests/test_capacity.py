"""Tests for apex.daemon.capacity time-of-day scheduling."""

from __future__ import annotations

import json
from datetime import UTC, date, datetime
from pathlib import Path

import pytest

from apex.daemon.capacity import (
    OUTSIDE_WINDOW_REASON,
    CapacityScheduler,
    FileUsageProvider,
    StaticUsageProvider,
    UsageSnapshot,
    decide,
    evaluate,
    get_time_window,
    mode_for_hour,
    next_mode_switch,
)
from apex.daemon.config import TimeBasedUsageConfig
from apex.daemon.types import CapacityRestoredEvent


def at(hour: int, minute: int = 0, day: int = 1) -> datetime:
    return datetime(2024, 3, day, hour, minute, tzinfo=UTC)


def usage(fraction: float) -> UsageSnapshot:
    return UsageSnapshot(daily_cost=fraction * 100, daily_budget=100.0)


@pytest.fixture
def enabled() -> TimeBasedUsageConfig:
    return TimeBasedUsageConfig(enabled=True)


class MutableUsage:
    """Usage provider whose snapshot the test changes between checks."""

    def __init__(self, fraction: float = 0.0) -> None:
        self.current = usage(fraction)

    def set(self, fraction: float) -> None:
        self.current = usage(fraction)

    def snapshot(self) -> UsageSnapshot:
        return self.current


# ─── Modes ────────────────────────────────────────────────────────────


class TestModeForHour:
    @pytest.mark.parametrize(
        ("hour", "mode"),
        [(9, "day"), (17, "day"), (18, "off-hours"), (21, "off-hours"),
         (22, "night"), (0, "night"), (6, "night"), (7, "off-hours"), (8, "off-hours")],
    )
    def test_default_hours(self, enabled, hour, mode):
        assert mode_for_hour(hour, enabled) == mode

    def test_day_wins_on_overlap(self):
        config = TimeBasedUsageConfig(enabled=True, day_mode_hours=[10], night_mode_hours=[10])
        assert mode_for_hour(10, config) == "day"


# ─── Evaluation ───────────────────────────────────────────────────────


class TestEvaluate:
    def test_below_threshold_not_paused(self):
        config = TimeBasedUsageConfig(enabled=True, day_mode_capacity_threshold=0.80)
        status = evaluate(at(10), config, usage(0.45))
        assert status.mode == "day"
        assert status.capacity_threshold == 0.80
        assert status.current_usage_percent == pytest.approx(0.45)
        assert status.is_auto_paused is False
        assert status.pause_reason is None

    def test_threshold_comparison_is_inclusive(self, enabled):
        status = evaluate(at(10), enabled, usage(0.90))
        assert status.is_auto_paused is True
        assert status.pause_reason == "Capacity threshold exceeded (90.0% >= 90.0%)"

    def test_night_threshold(self, enabled):
        status = evaluate(at(23), enabled, usage(0.95))
        assert status.mode == "night"
        assert status.capacity_threshold == 0.96
        assert status.is_auto_paused is False

    def test_off_hours_uses_day_threshold(self, enabled):
        status = evaluate(at(19), enabled, usage(0.5))
        assert status.mode == "off-hours"
        assert status.capacity_threshold == 0.90

    def test_no_budget_means_zero_usage(self, enabled):
        status = evaluate(at(10), enabled, UsageSnapshot(daily_cost=5.0, daily_budget=0.0))
        assert status.current_usage_percent == 0.0
        assert status.is_auto_paused is False

    def test_overspend_is_not_clamped(self, enabled):
        status = evaluate(at(10), enabled, usage(1.25))
        assert status.current_usage_percent == pytest.approx(1.25)
        assert status.is_auto_paused is True

    def test_disabled_is_off_hours(self):
        status = evaluate(at(10), TimeBasedUsageConfig(), usage(0.1))
        assert status.mode == "off-hours"
        assert status.time_based_usage_enabled is False
        assert status.next_mode_switch == at(0, day=2)

    def test_deterministic(self, enabled):
        assert evaluate(at(12), enabled, usage(0.3)) == evaluate(at(12), enabled, usage(0.3))


class TestNextModeSwitch:
    @pytest.mark.parametrize(
        ("now", "expected"),
        [
            (at(10, 30), at(18)),
            (at(19, 15), at(22)),
            (at(23, 30), at(7, day=2)),
            (at(7, 59), at(9)),
        ],
    )
    def test_next_boundary(self, enabled, now, expected):
        assert next_mode_switch(now, enabled) == expected

    def test_uniform_schedule_switches_at_midnight(self):
        config = TimeBasedUsageConfig(enabled=True, day_mode_hours=list(range(24)))
        assert next_mode_switch(at(10), config) == at(0, day=2)


class TestTimeWindow:
    def test_day_window(self, enabled):
        window = get_time_window(at(10), enabled)
        assert window.mode == "day"
        assert window.is_active is True
        assert (window.start_hour, window.end_hour) == (9, 17)

    def test_night_window_wraps_midnight(self, enabled):
        window = get_time_window(at(1), enabled)
        assert window.mode == "night"
        assert (window.start_hour, window.end_hour) == (22, 6)

    @pytest.mark.parametrize("hour", [9, 13, 17])
    def test_day_window_same_from_any_hour(self, enabled, hour):
        window = get_time_window(at(hour, 59), enabled)
        assert (window.start_hour, window.end_hour) == (9, 17)

    def test_custom_day_hours(self):
        config = TimeBasedUsageConfig(enabled=True, day_mode_hours=[8, 9, 10, 11, 12])
        window = get_time_window(at(10), config)
        assert (window.start_hour, window.end_hour) == (8, 12)

    def test_whole_day_window(self):
        config = TimeBasedUsageConfig(
            enabled=True, day_mode_hours=list(range(24)), night_mode_hours=[],
        )
        window = get_time_window(at(10), config)
        assert (window.start_hour, window.end_hour) == (0, 23)

    def test_off_hours_inactive(self, enabled):
        assert get_time_window(at(20), enabled).is_active is False

    def test_disabled(self):
        window = get_time_window(at(10), TimeBasedUsageConfig())
        assert window.mode == "off-hours"
        assert window.start_hour is None


# ─── Pause decisions ──────────────────────────────────────────────────


class TestDecide:
    def test_disabled_never_pauses(self):
        decision = decide(at(19), TimeBasedUsageConfig(), usage(2.0))
        assert decision.should_pause is False
        assert decision.recommendations == []
        assert decision.next_reset_time == at(0, day=2)

    def test_off_hours_pauses_with_next_window_hint(self, enabled):
        decision = decide(at(19), enabled, usage(0.1))
        assert decision.should_pause is True
        assert decision.reason == OUTSIDE_WINDOW_REASON
        assert decision.recommendations == [
            "Consider enabling time-based usage or waiting until 22:00",
        ]

    def test_paused_in_day_mentions_night_limits(self, enabled):
        decision = decide(at(15), enabled, usage(0.95))
        assert decision.should_pause is True
        assert decision.reason.startswith("Capacity threshold exceeded")
        assert decision.recommendations == [
            "Consider increasing daily budget",
            "Tasks will resume with higher limits during night mode",
        ]

    def test_night_hint_when_close(self, enabled):
        decision = decide(at(15), enabled, usage(0.6))
        assert decision.should_pause is False
        assert decision.recommendations == ["Night mode starts in 7h"]

    def test_no_night_hint_when_far(self, enabled):
        decision = decide(at(10), enabled, usage(0.85))
        assert decision.should_pause is False
        assert decision.recommendations == ["Consider increasing daily budget"]

    def test_low_usage_has_no_recommendations(self, enabled):
        assert decide(at(10), enabled, usage(0.1)).recommendations == []


# ─── Scheduler ────────────────────────────────────────────────────────


class TestCapacityScheduler:
    def _scheduler(self, config, provider):
        events: list[CapacityRestoredEvent] = []
        scheduler = CapacityScheduler(config, provider, clock=lambda: at(10))
        scheduler.on_capacity_restored(events.append)
        return scheduler, events

    def test_uses_clock_by_default(self, enabled):
        scheduler = CapacityScheduler(enabled, StaticUsageProvider(usage(0.2)), clock=lambda: at(23))
        assert scheduler.evaluate().mode == "night"

    def test_usage_decreased(self, enabled):
        provider = MutableUsage(0.95)
        scheduler, events = self._scheduler(enabled, provider)
        scheduler.check(at(10))
        provider.set(0.5)
        scheduler.check(at(10, 5))
        assert len(events) == 1
        assert events[0].reason == "usage_decreased"
        assert events[0].previous.is_auto_paused is True
        assert events[0].current.is_auto_paused is False

    def test_mode_switch(self, enabled):
        provider = MutableUsage(0.93)
        scheduler, events = self._scheduler(enabled, provider)
        scheduler.check(at(17, 30))
        scheduler.check(at(22))
        assert [e.reason for e in events] == ["mode_switch"]

    def test_budget_reset(self, enabled):
        provider = MutableUsage(0.97)
        scheduler, events = self._scheduler(enabled, provider)
        scheduler.check(at(23, 30))
        provider.set(0.0)
        scheduler.check(at(0, 5, day=2))
        assert [e.reason for e in events] == ["budget_reset"]

    def test_no_event_while_still_paused_or_never_paused(self, enabled):
        provider = MutableUsage(0.95)
        scheduler, events = self._scheduler(enabled, provider)
        scheduler.check(at(10))
        scheduler.check(at(11))
        provider.set(0.1)
        scheduler.check(at(12))
        scheduler.check(at(13))
        assert len(events) == 1

    def test_failing_callback_does_not_block_others(self, enabled):
        provider = MutableUsage(0.95)
        received: list[CapacityRestoredEvent] = []

        def broken(event):
            raise RuntimeError("boom")

        scheduler = CapacityScheduler(enabled, provider)
        scheduler.on_capacity_restored(broken)
        scheduler.on_capacity_restored(received.append)
        scheduler.check(at(10))
        provider.set(0.1)
        scheduler.check(at(11))
        assert len(received) == 1

    def test_unsubscribe(self, enabled):
        provider = MutableUsage(0.95)
        received: list[CapacityRestoredEvent] = []
        scheduler = CapacityScheduler(enabled, provider)
        unsubscribe = scheduler.on_capacity_restored(received.append)
        unsubscribe()
        unsubscribe()
        scheduler.check(at(10))
        provider.set(0.1)
        scheduler.check(at(11))
        assert received == []

    def test_time_until_mode_switch_and_reset(self, enabled):
        scheduler = CapacityScheduler(enabled, StaticUsageProvider())
        assert scheduler.time_until_mode_switch(at(10, 30)) == 27_000_000
        assert scheduler.time_until_budget_reset(at(23)) == 3_600_000


# ─── Usage ledger ─────────────────────────────────────────────────────


class TestFileUsageProvider:
    TODAY = date(2024, 3, 1)

    def _provider(self, path: Path) -> FileUsageProvider:
        return FileUsageProvider(path, default_budget=50.0, today=lambda: self.TODAY)

    def test_missing_ledger(self, tmp_path: Path):
        snapshot = self._provider(tmp_path / "usage.json").snapshot()
        assert snapshot == UsageSnapshot(daily_cost=0.0, daily_budget=50.0)

    def test_todays_ledger(self, tmp_path: Path):
        path = tmp_path / "usage.json"
        path.write_text(json.dumps({
            "date": "2024-03-01", "dailyCost": 40.0, "dailyBudget": 80.0, "activeTasks": 3,
        }))
        snapshot = self._provider(path).snapshot()
        assert snapshot.daily_cost == 40.0
        assert snapshot.daily_budget == 80.0
        assert snapshot.active_tasks == 3
        assert snapshot.usage_fraction == 0.5

    def test_budget_falls_back_to_default(self, tmp_path: Path):
        path = tmp_path / "usage.json"
        path.write_text(json.dumps({"date": "2024-03-01", "dailyCost": 10.0}))
        assert self._provider(path).snapshot().daily_budget == 50.0

    def test_previous_day_ledger_reports_zero_spend(self, tmp_path: Path):
        path = tmp_path / "usage.json"
        path.write_text(json.dumps({"date": "2024-02-29", "dailyCost": 45.0, "activeTasks": 1}))
        snapshot = self._provider(path).snapshot()
        assert snapshot.daily_cost == 0.0
        assert snapshot.active_tasks == 1

    @pytest.mark.parametrize("content", ["{", '{"dailyCost": 1}', '{"date": "nope"}'])
    def test_unreadable_ledger_reports_zero_spend(self, tmp_path: Path, content: str):
        path = tmp_path / "usage.json"
        path.write_text(content)
        assert self._provider(path).snapshot().daily_cost == 0.0
