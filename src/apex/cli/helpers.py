"""Shared utilities for APEX CLI commands.

This module contains helpers used across the command modules:
- Logger setup and configuration for the CLI process
- Project path resolution
- Mapping of typed daemon/service error codes onto user-facing messages
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import typer
from rich.console import Console

from apex.core.logging import configure_logging
from apex.daemon.exceptions import DaemonErrorCode, ServiceErrorCode

# =============================================================================
# Error message constants
# =============================================================================


class ErrorMessages:
    """User-facing messages for typed daemon errors.

    Codes without an entry fall back to the error's own message.
    """

    NOT_RUNNING = "Daemon is not running."
    PERMISSION_DENIED = "Permission denied. Check .apex directory permissions."
    PID_FILE_CORRUPTED = "PID file is corrupted. Try 'apex daemon stop --force'."
    LOCK_FAILED = "Another daemon start is in progress. Retry in a moment."


_DAEMON_ERROR_MESSAGES: dict[DaemonErrorCode, str] = {
    DaemonErrorCode.NOT_RUNNING: ErrorMessages.NOT_RUNNING,
    DaemonErrorCode.PERMISSION_DENIED: ErrorMessages.PERMISSION_DENIED,
    DaemonErrorCode.PID_FILE_CORRUPTED: ErrorMessages.PID_FILE_CORRUPTED,
    DaemonErrorCode.LOCK_FAILED: ErrorMessages.LOCK_FAILED,
}


def describe_daemon_error(code: DaemonErrorCode | None, message: str | None) -> str:
    """User-facing text for a daemon error result.

    Args:
        code: The typed error code, if any.
        message: The underlying error message.

    Returns:
        The fixed message for known codes, otherwise the raw message.
    """
    if code is not None and code in _DAEMON_ERROR_MESSAGES:
        return _DAEMON_ERROR_MESSAGES[code]
    return message or "Unknown daemon error"


def describe_failure(action: str, error: BaseException) -> str:
    """Message for an unexpected exception while performing ``action``."""
    return f"Failed to {action}: {error}"


def service_error_hints(code: ServiceErrorCode) -> list[str]:
    """Follow-up hints printed after a service error."""
    if code is ServiceErrorCode.SERVICE_EXISTS:
        return [
            "A service file already exists for this name.",
            "Use --force to overwrite it.",
        ]
    if code is ServiceErrorCode.PERMISSION_DENIED:
        return ["Check permissions on the service directory, or run with elevated privileges."]
    if code is ServiceErrorCode.SERVICE_NOT_FOUND:
        return ["The service may not be installed. Check the name with --name."]
    return []


# =============================================================================
# Logging configuration
# =============================================================================


@dataclass
class CliLoggingConfig:
    """CLI logging state shared by the global option callbacks."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"
    file: Path | None = None
    format: Literal["json", "console"] = "console"
    configured: bool = False


_log_config = CliLoggingConfig()


def apply_logging_options(
    level: str | None = None,
    file: Path | None = None,
    fmt: str | None = None,
) -> CliLoggingConfig:
    """Record the global ``--log-*`` options; unset options keep their defaults.

    Values are validated later by ``configure_global_logging``.
    """
    if level:
        _log_config.level = level.upper()  # type: ignore[assignment]
    if file:
        _log_config.file = file
    if fmt:
        _log_config.format = fmt.lower()  # type: ignore[assignment]
    return _log_config


def configure_global_logging(console: Console) -> None:
    """Configure logging based on global CLI options.

    Only configures once per session.

    Raises:
        typer.Exit: If logging configuration fails.
    """
    if _log_config.configured:
        return

    try:
        configure_logging(
            level=_log_config.level,
            format=_log_config.format,
            file_path=_log_config.file,
        )
        _log_config.configured = True
    except ValueError as e:
        console.print(f"[red]Logging configuration error:[/red] {e}")
        raise typer.Exit(1) from None


def reset_logging_state() -> None:
    """Reset logging state (primarily for testing)."""
    _log_config.level = "WARNING"
    _log_config.file = None
    _log_config.format = "console"
    _log_config.configured = False


# =============================================================================
# Project resolution
# =============================================================================


def resolve_project(project: Path | None) -> Path:
    """Project directory a command operates on (defaults to the cwd)."""
    path = (project or Path.cwd()).expanduser()
    try:
        return path.resolve()
    except OSError:
        return path.absolute()


__all__ = [
    "CliLoggingConfig",
    "ErrorMessages",
    "apply_logging_options",
    "configure_global_logging",
    "describe_daemon_error",
    "describe_failure",
    "reset_logging_state",
    "resolve_project",
    "service_error_hints",
]
