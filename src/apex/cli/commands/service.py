"""Service commands: ``apex service install/uninstall/status``.

Installs the daemon as an OS user service through the platform's
``ServiceManager`` (systemd on Linux, launchd on macOS).
"""

from __future__ import annotations

from pathlib import Path

import typer

from apex.daemon.exceptions import ServiceError, ServiceErrorCode
from apex.service.manager import (
    DEFAULT_SERVICE_NAME,
    ServiceManager,
    ServiceManagerOptions,
    create_service_manager,
)

from ..helpers import describe_failure, resolve_project, service_error_hints
from ..output import console, platform_name, print_lines, render_service_status

service_app = typer.Typer(
    name="service",
    help="Install the daemon as an OS service",
    no_args_is_help=True,
)

_PROJECT_HELP = "Project directory (defaults to the current directory)"


def _manager(name: str, project: Path | None) -> ServiceManager:
    options = ServiceManagerOptions(project_path=resolve_project(project), service_name=name)
    return create_service_manager(options)


def _report_unsupported(manager: ServiceManager) -> None:
    console.print("[red]Platform not supported[/red]")
    console.print("Service installation supports Linux (systemd) and macOS (launchd).")
    console.print(f"Current platform: {manager.get_platform()}")


def _report_service_error(action: str, error: ServiceError) -> None:
    console.print(f"[red]Failed to {action} service: {error.message}[/red]")
    for hint in service_error_hints(error.code):
        console.print(f"  {hint}")


def install(
    enable: bool = typer.Option(True, "--enable/--no-enable", help="Enable start at login"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing service file"),
    name: str = typer.Option(DEFAULT_SERVICE_NAME, "--name", help="Service name"),
    project: Path | None = typer.Option(None, "--project", "-p", help=_PROJECT_HELP),
) -> None:
    """Install the daemon as a user service."""
    manager = _manager(name, project)
    if not manager.is_supported():
        _report_unsupported(manager)
        raise typer.Exit(1)

    console.print(f"Installing APEX daemon as {platform_name(manager.get_platform())} service...")
    try:
        result = manager.install(enable=enable, force=force)
    except ServiceError as e:
        if e.code is ServiceErrorCode.PLATFORM_UNSUPPORTED:
            _report_unsupported(manager)
        else:
            _report_service_error("install", e)
        raise typer.Exit(1) from None
    except Exception as e:
        console.print(f"[red]{describe_failure('install service', e)}[/red]")
        raise typer.Exit(1) from None

    console.print("[green]Service installed successfully[/green]")
    console.print(f"  Service file: {result.service_path}")
    console.print(f"  Enabled:      {'yes' if result.enabled else 'no'}")
    if result.warnings:
        console.print("[yellow]Warnings:[/yellow]")
        for warning in result.warnings:
            console.print(f"  - {warning}")


def uninstall(
    force: bool = typer.Option(False, "--force", help="Remove even if the service fails to stop"),
    timeout: int = typer.Option(
        10000, "--timeout", min=1, help="Milliseconds to wait for the service to stop",
    ),
    name: str = typer.Option(DEFAULT_SERVICE_NAME, "--name", help="Service name"),
    project: Path | None = typer.Option(None, "--project", "-p", help=_PROJECT_HELP),
) -> None:
    """Stop, disable and remove the user service."""
    manager = _manager(name, project)
    if not manager.is_supported():
        _report_unsupported(manager)
        raise typer.Exit(1)

    console.print("Uninstalling APEX daemon service...")
    try:
        result = manager.uninstall(force=force, timeout_ms=timeout)
    except ServiceError as e:
        if e.code is ServiceErrorCode.SERVICE_NOT_FOUND:
            console.print(f"[yellow]No service file found for '{name}'; it may not be installed.[/yellow]")
        else:
            _report_service_error("uninstall", e)
        raise typer.Exit(1) from None
    except Exception as e:
        console.print(f"[red]{describe_failure('uninstall service', e)}[/red]")
        raise typer.Exit(1) from None

    console.print("[green]Service uninstalled successfully[/green]")
    console.print(f"  Removed:     {result.service_path}")
    console.print(f"  Was running: {'yes' if result.was_running else 'no'}")
    if result.warnings:
        console.print("[yellow]Warnings:[/yellow]")
        for warning in result.warnings:
            console.print(f"  - {warning}")


def status(
    name: str = typer.Option(DEFAULT_SERVICE_NAME, "--name", help="Service name"),
    project: Path | None = typer.Option(None, "--project", "-p", help=_PROJECT_HELP),
) -> None:
    """Show whether the service is installed, enabled and running."""
    manager = _manager(name, project)
    if not manager.is_supported():
        _report_unsupported(manager)
        raise typer.Exit(1)
    try:
        service_status = manager.get_status()
    except Exception as e:
        console.print(f"[red]{describe_failure('get service status', e)}[/red]")
        raise typer.Exit(1) from None
    print_lines(render_service_status(service_status))


service_app.command()(install)
service_app.command()(uninstall)
service_app.command()(status)


__all__ = ["install", "service_app", "status", "uninstall"]
