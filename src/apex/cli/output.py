"""Rich output formatting for the APEX CLI.

Renderers here are pure: they take the pydantic projections from
``apex.daemon.types`` / ``apex.service.manager`` and return plain text
lines.  Commands print those lines through the shared ``console``, which
keeps the exact text independent of terminal styling and easy to test.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from rich.console import Console

from apex.core.constants import (
    MS_PER_SECOND,
    RESTART_HISTORY_DISPLAY_LIMIT,
    SECONDS_PER_HOUR,
    SECONDS_PER_MINUTE,
)

if TYPE_CHECKING:
    from apex.daemon.types import (
        CapacityStatusInfo,
        ExtendedDaemonStatus,
        HealthReport,
        RestartEvent,
    )
    from apex.service.manager import Platform, ServiceStatus

# =============================================================================
# Shared console instance
# =============================================================================

console = Console(highlight=False)

_RULE = "─" * 50
_BAR_WIDTH = 20
_BYTE_UNITS = ("B", "KB", "MB", "GB", "TB")

PLATFORM_NAMES: dict[str, str] = {
    "linux": "Linux (systemd)",
    "darwin": "macOS (launchd)",
    "unsupported": "unsupported",
}


# =============================================================================
# Formatters
# =============================================================================


def format_bytes(size: int | float) -> str:
    """Human-readable binary size: ``0 B``, ``512.0 B``, ``50.0 MB``."""
    if size <= 0:
        return "0 B"
    value = float(size)
    for unit in _BYTE_UNITS[:-1]:
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} {_BYTE_UNITS[-1]}"


def format_uptime(uptime_ms: int | None) -> str:
    """Hours and minutes, e.g. ``1h 30m``; sub-minute uptimes read ``0h 0m``."""
    total_seconds = max(int((uptime_ms or 0) / MS_PER_SECOND), 0)
    hours = total_seconds // SECONDS_PER_HOUR
    minutes = (total_seconds % SECONDS_PER_HOUR) // SECONDS_PER_MINUTE
    return f"{hours}h {minutes}m"


def format_percent(fraction: float) -> str:
    """Fraction as a percentage with one decimal (``0.45`` -> ``45.0%``)."""
    return f"{fraction * 100:.1f}%"


def format_timestamp(moment: datetime | None) -> str:
    """UTC ISO-8601 with millisecond precision, or ``never``."""
    if moment is None:
        return "never"
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_bar(fraction: float, width: int = _BAR_WIDTH) -> str:
    """Fixed-width usage bar, clamped to ``[0, 1]``."""
    clamped = min(max(fraction, 0.0), 1.0)
    filled = round(clamped * width)
    return "[" + "█" * filled + "░" * (width - filled) + "]"


def _field(label: str, value: object) -> str:
    return f"  {label + ':':<21}{value}"


# =============================================================================
# Health report
# =============================================================================


def format_restart_event(index: int, event: RestartEvent) -> list[str]:
    """Two lines per restart: ordinal with timestamp, then reason and markers."""
    detail = event.reason
    if event.triggered_by_watchdog:
        detail += " (watchdog)"
    if event.exit_code is not None:
        detail += f" [exit: {event.exit_code}]"
    return [f"  {index}. {format_timestamp(event.timestamp)}", f"     {detail}"]


def render_health_report(report: HealthReport) -> list[str]:
    """Text of ``apex daemon health``."""
    memory = report.memory_usage
    heap_fraction = (
        memory.heap_used_bytes / memory.heap_total_bytes if memory.heap_total_bytes > 0 else 0.0
    )
    tasks = report.task_counts

    lines = [
        "\nDaemon Health Report",
        _RULE,
        _field("Uptime", format_uptime(report.uptime_ms)),
        "",
        "Memory Usage",
        _field(
            "Heap Used",
            f"{format_bytes(memory.heap_used_bytes)} / {format_bytes(memory.heap_total_bytes)} "
            f"({format_percent(heap_fraction)})",
        ),
        _field("Heap", format_bar(heap_fraction)),
        _field("RSS", format_bytes(memory.rss_bytes)),
        "",
        "Task Statistics",
        _field("Processed", tasks.processed),
        _field("Succeeded", tasks.succeeded),
        _field("Failed", tasks.failed),
        _field("Active", tasks.active),
        "",
        "Health Check Statistics",
        _field("Passed", report.health_checks_passed),
        _field("Failed", report.health_checks_failed),
        _field("Pass Rate", format_percent(report.pass_rate)),
        _field("Last Check", format_timestamp(report.last_health_check)),
        "",
    ]

    recent = report.recent_restarts()
    lines.append(f"Recent Restart Events (Last {RESTART_HISTORY_DISPLAY_LIMIT})")
    if not recent:
        lines.append("  No restart events recorded")
    for index, event in enumerate(recent, start=1):
        lines.extend(format_restart_event(index, event))
    return lines


# =============================================================================
# Daemon status
# =============================================================================


def render_capacity(capacity: CapacityStatusInfo | None, running: bool) -> list[str]:
    """Capacity section of ``apex daemon status``."""
    if not running:
        return []
    if capacity is None:
        return ["Capacity", _field("State", "initializing")]
    if not capacity.time_based_usage_enabled:
        return [
            "Capacity",
            _field("Time-based usage", "disabled"),
            _field("Usage", format_percent(capacity.current_usage_percent)),
        ]
    lines = [
        "Capacity",
        _field("Mode", capacity.mode),
        _field("Threshold", format_percent(capacity.capacity_threshold)),
        _field("Usage", format_percent(capacity.current_usage_percent)),
        _field("Auto-paused", "yes" if capacity.is_auto_paused else "no"),
    ]
    if capacity.is_auto_paused and capacity.pause_reason:
        lines.append(_field("Reason", capacity.pause_reason))
    lines.append(_field("Next Mode Switch", format_timestamp(capacity.next_mode_switch)))
    return lines


def render_status(status: ExtendedDaemonStatus) -> list[str]:
    """Text of ``apex daemon status``."""
    if not status.running:
        return ["Daemon Status", _RULE, _field("Running", "no")]
    lines = [
        "Daemon Status",
        _RULE,
        _field("Running", "yes"),
        _field("PID", status.pid),
        _field("Started", format_timestamp(status.started_at)),
        _field("Uptime", format_uptime(status.uptime_ms)),
        "",
    ]
    lines.extend(render_capacity(status.capacity, status.running))
    return lines


# =============================================================================
# Service status
# =============================================================================


def platform_name(platform: Platform | str) -> str:
    return PLATFORM_NAMES.get(platform, platform)


def render_service_status(status: ServiceStatus) -> list[str]:
    """Text of ``apex service status``."""
    yes_no = {True: "yes", False: "no"}
    lines = [
        "Service Status",
        _RULE,
        f"  Platform:   {platform_name(status.platform)}",
        f"  Installed:  {yes_no[status.installed]}",
    ]
    if not status.installed:
        return lines
    lines += [
        f"  Enabled:    {yes_no[status.enabled]}",
        f"  Running:    {yes_no[status.running]}",
    ]
    if status.pid is not None:
        lines.append(f"  PID:        {status.pid}")
    if status.uptime is not None:
        lines.append(f"  Uptime:     {format_uptime(int(status.uptime * MS_PER_SECOND))}")
    if status.service_path is not None:
        lines.append(f"  File:       {status.service_path}")
    return lines


def print_lines(lines: list[str]) -> None:
    """Print pre-rendered lines without Rich markup interpretation."""
    for line in lines:
        console.print(line, markup=False, soft_wrap=True)


__all__ = [
    "PLATFORM_NAMES",
    "console",
    "format_bar",
    "format_bytes",
    "format_percent",
    "format_restart_event",
    "format_timestamp",
    "format_uptime",
    "platform_name",
    "print_lines",
    "render_capacity",
    "render_health_report",
    "render_service_status",
    "render_status",
]
