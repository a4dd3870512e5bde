"""Time-of-day capacity scheduling.

The scheduler maps a wall-clock instant onto a capacity mode and compares
the day's usage against that mode's threshold:

- ``day``: hours listed in ``day_mode_hours`` (default 09:00-18:00)
- ``night``: hours listed in ``night_mode_hours`` (default 22:00-07:00)
- ``off-hours``: everything else, and every hour when time-based usage
  is disabled

``evaluate`` and ``decide`` are pure functions of ``now``, the config and a
usage snapshot.  ``CapacityScheduler`` binds them to a usage provider and a
clock and additionally tracks transitions from paused to unpaused so the
daemon can announce that capacity was restored.

Usage numbers come from the task engine through ``UsageProvider``; the
bundled ``FileUsageProvider`` reads the ledger the engine keeps in
``.apex/usage.json``.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from apex.core.constants import MS_PER_SECOND
from apex.core.logging import get_logger
from apex.daemon.config import TimeBasedUsageConfig
from apex.daemon.types import (
    CapacityMode,
    CapacityRestoredEvent,
    CapacityStatusInfo,
    PauseDecision,
    RestoreReason,
    TimeWindow,
)

_logger = get_logger("daemon.capacity")

# Usage fraction from which the budget recommendation is shown.
BUDGET_WARNING_USAGE = 0.80
# Usage fraction from which the upcoming night window is advertised in day mode.
NIGHT_HINT_USAGE = 0.50
NIGHT_HINT_MAX_HOURS = 8

OUTSIDE_WINDOW_REASON = "Outside active time window"


# ─── Usage accounting ─────────────────────────────────────────────────


@dataclass(frozen=True)
class UsageSnapshot:
    """The day's spend against its budget."""

    daily_cost: float = 0.0
    daily_budget: float = 0.0
    active_tasks: int = 0

    @property
    def usage_fraction(self) -> float:
        """``daily_cost / daily_budget``; 0.0 when there is no budget.

        Not clamped: overspend yields values above 1.0.
        """
        if self.daily_budget <= 0:
            return 0.0
        return self.daily_cost / self.daily_budget


class UsageProvider(Protocol):
    """Source of usage numbers (the task engine's budget tracker)."""

    def snapshot(self) -> UsageSnapshot: ...


class StaticUsageProvider:
    """Usage provider returning a fixed snapshot."""

    def __init__(self, snapshot: UsageSnapshot | None = None) -> None:
        self._snapshot = snapshot or UsageSnapshot()

    def snapshot(self) -> UsageSnapshot:
        return self._snapshot


class UsageLedger(BaseModel):
    """On-disk usage ledger written by the task engine."""

    model_config = ConfigDict(populate_by_name=True)

    ledger_date: date = Field(alias="date")
    daily_cost: float = Field(default=0.0, alias="dailyCost")
    daily_budget: float | None = Field(default=None, alias="dailyBudget")
    active_tasks: int = Field(default=0, ge=0, alias="activeTasks")


class FileUsageProvider:
    """Reads ``.apex/usage.json``.

    A ledger dated before today belongs to a budget period that has been
    reset, so it reports zero spend.  A missing or unreadable ledger also
    reports zero spend.
    """

    def __init__(
        self,
        usage_file: Path,
        default_budget: float,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._path = usage_file
        self._default_budget = default_budget
        self._today = today

    def snapshot(self) -> UsageSnapshot:
        try:
            ledger = UsageLedger.model_validate(
                json.loads(self._path.read_text(encoding="utf-8")),
            )
        except FileNotFoundError:
            return UsageSnapshot(daily_budget=self._default_budget)
        except (OSError, json.JSONDecodeError, ValidationError):
            _logger.warning("capacity.usage_ledger_unreadable", path=str(self._path))
            return UsageSnapshot(daily_budget=self._default_budget)

        budget = (
            ledger.daily_budget if ledger.daily_budget is not None else self._default_budget
        )
        if ledger.ledger_date != self._today():
            return UsageSnapshot(daily_budget=budget, active_tasks=ledger.active_tasks)
        return UsageSnapshot(
            daily_cost=ledger.daily_cost,
            daily_budget=budget,
            active_tasks=ledger.active_tasks,
        )


# ─── Pure evaluation ──────────────────────────────────────────────────


def local_now() -> datetime:
    """Current local time as an aware datetime."""
    return datetime.now().astimezone()


def mode_for_hour(hour: int, config: TimeBasedUsageConfig) -> CapacityMode:
    """Capacity mode of an hour; day wins when an hour is in both lists."""
    if hour in config.day_mode_hours:
        return "day"
    if hour in config.night_mode_hours:
        return "night"
    return "off-hours"


def next_midnight(now: datetime) -> datetime:
    """Start of the next local day (the daily budget reset)."""
    return (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)


def next_mode_switch(now: datetime, config: TimeBasedUsageConfig) -> datetime:
    """Nearest future hour boundary at which the capacity mode changes.

    With time-based usage disabled, or when every hour has the same mode,
    the next switch is the next midnight.
    """
    if not config.enabled:
        return next_midnight(now)
    current = mode_for_hour(now.hour, config)
    hour_start = now.replace(minute=0, second=0, microsecond=0)
    for offset in range(1, 25):
        candidate = hour_start + timedelta(hours=offset)
        if mode_for_hour(candidate.hour, config) != current:
            return candidate
    return next_midnight(now)


def get_time_window(now: datetime, config: TimeBasedUsageConfig) -> TimeWindow:
    """Describe the mode window containing ``now``.

    ``start_hour`` and ``end_hour`` are both inside the window: the default
    day window is 9-17 and the default night window wraps midnight as 22-6.
    A mode covering the whole day reports 0-23.  Off-hours windows are never
    active.
    """
    transition = next_mode_switch(now, config)
    if not config.enabled:
        return TimeWindow(mode="off-hours", is_active=False, next_transition=transition)

    mode = mode_for_hour(now.hour, config)
    if all(mode_for_hour(hour, config) == mode for hour in range(24)):
        start_hour, end_hour = 0, 23
    else:
        start_hour = end_hour = now.hour
        while mode_for_hour((start_hour - 1) % 24, config) == mode:
            start_hour = (start_hour - 1) % 24
        while mode_for_hour((end_hour + 1) % 24, config) == mode:
            end_hour = (end_hour + 1) % 24
    return TimeWindow(
        mode=mode,
        is_active=mode != "off-hours",
        start_hour=start_hour,
        end_hour=end_hour,
        next_transition=transition,
    )


def threshold_for_mode(mode: CapacityMode, config: TimeBasedUsageConfig) -> float:
    """Auto-pause threshold of a mode; off-hours uses the day threshold."""
    if mode == "night":
        return config.night_mode_capacity_threshold
    return config.day_mode_capacity_threshold


def evaluate(
    now: datetime,
    config: TimeBasedUsageConfig,
    usage: UsageSnapshot,
) -> CapacityStatusInfo:
    """Evaluate capacity at ``now``.

    Deterministic given its arguments.  The threshold comparison is
    inclusive: usage exactly at the threshold is paused.
    """
    mode: CapacityMode = mode_for_hour(now.hour, config) if config.enabled else "off-hours"
    threshold = threshold_for_mode(mode, config)
    current = usage.usage_fraction
    paused = current >= threshold
    reason = (
        f"Capacity threshold exceeded ({current * 100:.1f}% >= {threshold * 100:.1f}%)"
        if paused
        else None
    )
    return CapacityStatusInfo(
        mode=mode,
        capacity_threshold=threshold,
        current_usage_percent=current,
        is_auto_paused=paused,
        pause_reason=reason,
        next_mode_switch=next_mode_switch(now, config),
        time_based_usage_enabled=config.enabled,
    )


def _hours_until(now: datetime, target: datetime) -> int:
    seconds = (target - now).total_seconds()
    return max(int(-(-seconds // 3600)), 0)


def _next_start_of(
    mode: CapacityMode, now: datetime, config: TimeBasedUsageConfig,
) -> datetime | None:
    hour_start = now.replace(minute=0, second=0, microsecond=0)
    for offset in range(1, 25):
        candidate = hour_start + timedelta(hours=offset)
        if mode_for_hour(candidate.hour, config) == mode:
            return candidate
    return None


def decide(
    now: datetime,
    config: TimeBasedUsageConfig,
    usage: UsageSnapshot,
) -> PauseDecision:
    """Decide whether new tasks should be held back at ``now``.

    With time-based usage disabled the decision never pauses.
    """
    status = evaluate(now, config, usage)
    reset = next_midnight(now)
    recommendations: list[str] = []

    if not config.enabled:
        return PauseDecision(should_pause=False, next_reset_time=reset)

    if usage.usage_fraction >= BUDGET_WARNING_USAGE:
        recommendations.append("Consider increasing daily budget")

    if status.mode == "off-hours":
        upcoming = _next_start_of("day", now, config)
        night = _next_start_of("night", now, config)
        if night is not None and (upcoming is None or night < upcoming):
            upcoming = night
        if upcoming is not None:
            recommendations.append(
                "Consider enabling time-based usage or waiting until "
                f"{upcoming:%H:%M}",
            )
        return PauseDecision(
            should_pause=True,
            reason=OUTSIDE_WINDOW_REASON,
            recommendations=recommendations,
            next_reset_time=reset,
        )

    night_start = _next_start_of("night", now, config) if status.mode == "day" else None
    if status.is_auto_paused:
        if (
            night_start is not None
            and config.night_mode_capacity_threshold > config.day_mode_capacity_threshold
        ):
            recommendations.append("Tasks will resume with higher limits during night mode")
        return PauseDecision(
            should_pause=True,
            reason=status.pause_reason,
            recommendations=recommendations,
            next_reset_time=reset,
        )

    if night_start is not None and usage.usage_fraction >= NIGHT_HINT_USAGE:
        hours = _hours_until(now, night_start)
        if hours <= NIGHT_HINT_MAX_HOURS:
            recommendations.append(f"Night mode starts in {hours}h")

    return PauseDecision(
        should_pause=False,
        recommendations=recommendations,
        next_reset_time=reset,
    )


# ─── Stateful scheduler ───────────────────────────────────────────────


CapacityRestoredCallback = Callable[[CapacityRestoredEvent], None]


class CapacityScheduler:
    """Capacity evaluation bound to a usage provider and a clock.

    ``check`` is called once per daemon health tick; when a paused tick is
    followed by an unpaused one, every registered restored-callback runs.
    A failing callback is logged and does not prevent the others.
    """

    def __init__(
        self,
        config: TimeBasedUsageConfig,
        usage_provider: UsageProvider,
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        self._config = config
        self._usage = usage_provider
        self._clock = clock
        self._callbacks: list[CapacityRestoredCallback] = []
        self._last: tuple[datetime, CapacityStatusInfo, bool] | None = None

    @property
    def config(self) -> TimeBasedUsageConfig:
        return self._config

    def evaluate(self, now: datetime | None = None) -> CapacityStatusInfo:
        return evaluate(now or self._clock(), self._config, self._usage.snapshot())

    def should_pause_tasks(self, now: datetime | None = None) -> PauseDecision:
        return decide(now or self._clock(), self._config, self._usage.snapshot())

    def get_time_window(self, now: datetime | None = None) -> TimeWindow:
        return get_time_window(now or self._clock(), self._config)

    def time_until_mode_switch(self, now: datetime | None = None) -> int:
        """Milliseconds until the next capacity mode change."""
        now = now or self._clock()
        delta = next_mode_switch(now, self._config) - now
        return max(int(delta.total_seconds() * MS_PER_SECOND), 0)

    def time_until_budget_reset(self, now: datetime | None = None) -> int:
        """Milliseconds until the daily budget resets at local midnight."""
        now = now or self._clock()
        return max(int((next_midnight(now) - now).total_seconds() * MS_PER_SECOND), 0)

    def on_capacity_restored(
        self, callback: CapacityRestoredCallback,
    ) -> Callable[[], None]:
        """Register a restored-callback.

        Returns:
            A function that unregisters the callback.
        """
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    def check(
        self, now: datetime | None = None,
    ) -> tuple[CapacityStatusInfo, PauseDecision]:
        """Evaluate, decide, and fire restored-callbacks on unpause."""
        now = now or self._clock()
        usage = self._usage.snapshot()
        status = evaluate(now, self._config, usage)
        decision = decide(now, self._config, usage)

        previous = self._last
        self._last = (now, status, decision.should_pause)
        if previous is not None:
            prev_time, prev_status, prev_paused = previous
            if prev_paused and not decision.should_pause:
                event = CapacityRestoredEvent(
                    reason=self._restore_reason(prev_time, prev_status, now, status),
                    timestamp=now,
                    previous=prev_status,
                    current=status,
                )
                self._emit(event)
        return status, decision

    @staticmethod
    def _restore_reason(
        prev_time: datetime,
        prev_status: CapacityStatusInfo,
        now: datetime,
        status: CapacityStatusInfo,
    ) -> RestoreReason:
        if prev_time.date() != now.date():
            return "budget_reset"
        if prev_status.mode != status.mode:
            return "mode_switch"
        return "usage_decreased"

    def _emit(self, event: CapacityRestoredEvent) -> None:
        _logger.info(
            "capacity.restored",
            reason=event.reason,
            mode=event.current.mode,
            usage=round(event.current.current_usage_percent, 4),
        )
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                _logger.exception("capacity.restored_callback_failed")


__all__ = [
    "CapacityScheduler",
    "FileUsageProvider",
    "OUTSIDE_WINDOW_REASON",
    "StaticUsageProvider",
    "UsageLedger",
    "UsageProvider",
    "UsageSnapshot",
    "decide",
    "evaluate",
    "get_time_window",
    "local_now",
    "mode_for_hour",
    "next_midnight",
    "next_mode_switch",
    "threshold_for_mode",
]
