"""Daemon commands: ``apex daemon start/stop/restart/status/health/logs``.

Thin Typer wrappers over ``apex.daemon.supervisor.DaemonSupervisor`` and
``apex.daemon.logtail``.  Every command ends with a message and an exit
code; expected conditions come back from the supervisor as result models
and are mapped onto text by ``apex.cli.helpers``.
"""

from __future__ import annotations

import signal
from pathlib import Path
from typing import Any

import typer

from apex.core.constants import MIN_POLL_INTERVAL_MS
from apex.daemon.exceptions import DaemonError
from apex.daemon.logtail import LogLevel, LogTailer, read_tail
from apex.daemon.supervisor import DaemonSupervisor
from apex.daemon.types import StartResult, StopResult

from ..helpers import describe_daemon_error, describe_failure, resolve_project
from ..output import console, print_lines, render_health_report, render_status

daemon_app = typer.Typer(
    name="daemon",
    help="Manage the background task daemon",
    no_args_is_help=True,
)

_PROJECT_HELP = "Project directory (defaults to the current directory)"


def _supervisor(project: Path | None, action: str) -> DaemonSupervisor:
    try:
        return DaemonSupervisor(resolve_project(project))
    except Exception as e:
        console.print(f"[red]{describe_failure(action, e)}[/red]")
        raise typer.Exit(1) from None


def _report_start(result: StartResult) -> None:
    if result.status == "started":
        console.print(f"[green]Daemon started (PID {result.pid})[/green]")
        return
    if result.status == "already_running":
        console.print(f"[yellow]Daemon is already running (PID {result.pid})[/yellow]")
        raise typer.Exit(1)
    console.print(f"[red]{describe_daemon_error(result.error_code, result.message)}[/red]")
    raise typer.Exit(1)


def _report_stop(result: StopResult) -> None:
    if result.status == "stopped":
        console.print(f"[green]Daemon stopped (PID {result.pid})[/green]")
    elif result.status == "killed":
        console.print(f"[green]Daemon killed (PID {result.pid})[/green]")
    elif result.status == "not_running":
        console.print(result.message or "Daemon is not running.")
    elif result.status == "timeout":
        console.print(f"[yellow]{result.message}[/yellow]")
        console.print("Use 'apex daemon stop --force' to kill it.")
        raise typer.Exit(1)
    else:
        console.print(f"[red]{describe_daemon_error(result.error_code, result.message)}[/red]")
        raise typer.Exit(1)


def start(
    poll_interval: int | None = typer.Option(
        None, "--poll-interval", "-i", min=MIN_POLL_INTERVAL_MS,
        help="Task poll interval in milliseconds",
    ),
    project: Path | None = typer.Option(None, "--project", "-p", help=_PROJECT_HELP),
) -> None:
    """Start the daemon in the background."""
    supervisor = _supervisor(project, "start daemon")
    try:
        result = supervisor.start(poll_interval_ms=poll_interval)
    except Exception as e:
        console.print(f"[red]{describe_failure('start daemon', e)}[/red]")
        raise typer.Exit(1) from None
    _report_start(result)


def stop(
    force: bool = typer.Option(False, "--force", "-f", help="Kill the daemon immediately"),
    project: Path | None = typer.Option(None, "--project", "-p", help=_PROJECT_HELP),
) -> None:
    """Stop the daemon (gracefully unless --force)."""
    supervisor = _supervisor(project, "stop daemon")
    try:
        result = supervisor.stop(force=force)
    except Exception as e:
        console.print(f"[red]{describe_failure('stop daemon', e)}[/red]")
        raise typer.Exit(1) from None
    _report_stop(result)


def restart(
    poll_interval: int | None = typer.Option(
        None, "--poll-interval", "-i", min=MIN_POLL_INTERVAL_MS,
        help="Task poll interval in milliseconds",
    ),
    project: Path | None = typer.Option(None, "--project", "-p", help=_PROJECT_HELP),
) -> None:
    """Restart the daemon (stop, then start)."""
    supervisor = _supervisor(project, "restart daemon")
    try:
        stopped, started = supervisor.restart(poll_interval_ms=poll_interval)
    except Exception as e:
        console.print(f"[red]{describe_failure('restart daemon', e)}[/red]")
        raise typer.Exit(1) from None

    if stopped.status in ("stopped", "killed"):
        console.print(f"Daemon stopped (PID {stopped.pid})")
    _report_start(started)


def status(
    project: Path | None = typer.Option(None, "--project", "-p", help=_PROJECT_HELP),
) -> None:
    """Show whether the daemon is running and its capacity state."""
    supervisor = _supervisor(project, "get daemon status")
    try:
        extended = supervisor.get_extended_status()
    except Exception as e:
        console.print(f"[red]{describe_failure('get daemon status', e)}[/red]")
        raise typer.Exit(1) from None
    print_lines(render_status(extended))


def health(
    project: Path | None = typer.Option(None, "--project", "-p", help=_PROJECT_HELP),
) -> None:
    """Show the daemon health report."""
    supervisor = _supervisor(project, "get health report")
    try:
        result = supervisor.get_health_report()
    except Exception as e:
        console.print(f"[red]{describe_failure('get health report', e)}[/red]")
        raise typer.Exit(1) from None

    if result.status == "error" or result.report is None:
        console.print(describe_daemon_error(result.error_code, result.message))
        raise typer.Exit(1)
    print_lines(render_health_report(result.report))


def logs(
    lines: int = typer.Option(20, "--lines", "-n", min=1, help="Number of lines to show"),
    level: LogLevel = typer.Option(
        LogLevel.DEBUG, "--level", "-l", case_sensitive=False, help="Minimum log level",
    ),
    follow: bool = typer.Option(False, "--follow", "-f", help="Stream new log lines"),
    project: Path | None = typer.Option(None, "--project", "-p", help=_PROJECT_HELP),
) -> None:
    """Show daemon log lines, optionally following new output."""
    supervisor = _supervisor(project, "read daemon logs")
    log_path = supervisor.paths.log_file

    def emit(line: str) -> None:
        console.print(line, markup=False, highlight=False, soft_wrap=True)

    if not follow:
        result = read_tail(log_path, lines, level)
        if not result.found:
            console.print("No daemon logs found")
            return
        if not result.lines:
            console.print("No matching log entries")
            return
        for line in result.lines:
            emit(line)
        return

    if not log_path.exists():
        console.print("No daemon logs found")
        return

    tailer = LogTailer(log_path, emit, level)
    history = tailer.show_history(lines)
    if not history.lines:
        console.print("No matching log entries")
    console.print(f"[dim]Following daemon logs ({log_path})[/dim]")

    previous = _install_stop_handlers(tailer)
    try:
        code = tailer.follow()
    finally:
        _restore_handlers(previous)
    if tailer.error is not None:
        console.print(f"[yellow]Log watcher stopped: {tailer.error}[/yellow]")
    raise typer.Exit(code)


def _install_stop_handlers(tailer: LogTailer) -> dict[int, Any]:
    previous: dict[int, Any] = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, lambda *_: tailer.stop())
        except ValueError:
            # Not on the main thread
            break
    return previous


def _restore_handlers(previous: dict[int, Any]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def run(
    project: Path | None = typer.Option(None, "--project", "-p", help=_PROJECT_HELP),
    worker: bool = typer.Option(False, "--worker", help="Run as the supervised worker"),
    foreground: bool = typer.Option(
        False, "--foreground", help="Run attached, owning the PID file (OS services)",
    ),
    poll_interval: int | None = typer.Option(
        None, "--poll-interval", "-i", min=MIN_POLL_INTERVAL_MS,
        help="Task poll interval in milliseconds",
    ),
) -> None:
    """Run the daemon in this process (used by start and by OS services)."""
    from apex.daemon.process import run_daemon

    try:
        code = run_daemon(
            resolve_project(project),
            poll_interval_ms=poll_interval,
            worker=worker,
            foreground=foreground,
        )
    except DaemonError as e:
        console.print(f"[red]{describe_daemon_error(e.code, e.message)}[/red]")
        raise typer.Exit(1) from None
    except ValueError as e:
        console.print(f"[red]{describe_failure('run daemon', e)}[/red]")
        raise typer.Exit(1) from None
    raise typer.Exit(code)


daemon_app.command()(start)
daemon_app.command()(stop)
daemon_app.command()(restart)
daemon_app.command()(status)
daemon_app.command()(health)
daemon_app.command()(logs)
daemon_app.command(hidden=True)(run)


__all__ = ["daemon_app", "health", "logs", "restart", "run", "start", "status", "stop"]
