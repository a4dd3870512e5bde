"""OS service integration for the APEX daemon.

A ``ServiceManager`` installs the daemon as a user service so the operating
system starts it at login and restarts it on failure.  The capability is a
single interface with one implementation per platform, chosen once by
``create_service_manager``:

- ``SystemdServiceManager``: Linux, a systemd unit driven via ``systemctl``
- ``LaunchdServiceManager``: macOS, a LaunchAgent plist driven via ``launchctl``
- ``UnsupportedServiceManager``: everything else; every change fails with
  ``PLATFORM_UNSUPPORTED``

The service runs ``apex daemon run --foreground`` so the OS service manager,
not the APEX minder, is responsible for relaunching the worker.
"""

from __future__ import annotations

import os
import plistlib
import shlex
import subprocess
import sys
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Literal, Protocol

from pydantic import BaseModel, Field

from apex.core.constants import DAEMON_DIR_NAME, OUT_LOG_FILE_NAME
from apex.core.logging import get_logger
from apex.daemon.exceptions import ServiceError, ServiceErrorCode
from apex.daemon.system_probe import SystemProbe

_logger = get_logger("service")

Platform = Literal["linux", "darwin", "unsupported"]
RestartPolicy = Literal["always", "on-failure", "never"]
CommandRunner = Callable[[Sequence[str], float], subprocess.CompletedProcess[str]]

DEFAULT_SERVICE_NAME = "apex-daemon"
_COMMAND_TIMEOUT_SECONDS = 30.0


# ─── Contracts ────────────────────────────────────────────────────────


class ServiceManagerOptions(BaseModel):
    """What to install and how the service should behave."""

    project_path: Path
    service_name: str = Field(default=DEFAULT_SERVICE_NAME, min_length=1)
    description: str = "APEX task daemon"
    user: str | None = None
    working_directory: Path | None = None
    environment: dict[str, str] = Field(default_factory=dict)
    restart_policy: RestartPolicy = "on-failure"
    restart_delay_seconds: int = Field(default=5, ge=0)


class InstallResult(BaseModel):
    success: bool
    service_path: Path
    platform: Platform
    enabled: bool
    warnings: list[str] = Field(default_factory=list)


class UninstallResult(BaseModel):
    success: bool
    service_path: Path
    was_running: bool
    warnings: list[str] = Field(default_factory=list)


class ServiceStatus(BaseModel):
    installed: bool
    enabled: bool = False
    running: bool = False
    pid: int | None = None
    uptime: float | None = Field(default=None, description="Seconds since the service process started")
    platform: Platform
    service_path: Path | None = None


class ServiceManager(Protocol):
    """Platform service capability."""

    def install(self, enable: bool = True, force: bool = False) -> InstallResult: ...

    def uninstall(self, force: bool = False, timeout_ms: int = 10_000) -> UninstallResult: ...

    def get_status(self) -> ServiceStatus: ...

    def is_supported(self) -> bool: ...

    def get_platform(self) -> Platform: ...


# ─── Helpers ──────────────────────────────────────────────────────────


def detect_platform(system: str | None = None) -> Platform:
    """Map ``sys.platform`` onto a supported service platform."""
    system = system or sys.platform
    if system.startswith("linux"):
        return "linux"
    if system == "darwin":
        return "darwin"
    return "unsupported"


def run_command(args: Sequence[str], timeout: float) -> subprocess.CompletedProcess[str]:
    """Run a service-manager CLI command, capturing output."""
    _logger.debug("service.command", args=list(args))
    return subprocess.run(
        list(args),
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )


def daemon_command(options: ServiceManagerOptions) -> list[str]:
    """The command the service runs."""
    return [
        sys.executable, "-m", "apex", "daemon", "run",
        "--project", str(options.project_path),
        "--foreground",
    ]


def _out_log(options: ServiceManagerOptions) -> Path:
    return options.project_path / DAEMON_DIR_NAME / OUT_LOG_FILE_NAME


def _write_service_file(path: Path, content: bytes) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    except PermissionError as e:
        raise ServiceError(
            f"Permission denied writing {path}", ServiceErrorCode.PERMISSION_DENIED, e,
        ) from e
    except OSError as e:
        raise ServiceError(
            f"Failed to write {path}: {e}", ServiceErrorCode.INSTALL_FAILED, e,
        ) from e


def _remove_service_file(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except PermissionError as e:
        raise ServiceError(
            f"Permission denied removing {path}", ServiceErrorCode.PERMISSION_DENIED, e,
        ) from e
    except OSError as e:
        raise ServiceError(
            f"Failed to remove {path}: {e}", ServiceErrorCode.UNINSTALL_FAILED, e,
        ) from e


def _describe_failure(result: subprocess.CompletedProcess[str]) -> str:
    detail = (result.stderr or result.stdout or "").strip()
    return detail or f"exit code {result.returncode}"


# ─── systemd ──────────────────────────────────────────────────────────


class SystemdServiceManager:
    """systemd user unit (system unit when running as root)."""

    def __init__(
        self,
        options: ServiceManagerOptions,
        *,
        runner: CommandRunner = run_command,
        home: Path | None = None,
        is_root: bool | None = None,
    ) -> None:
        self._options = options
        self._runner = runner
        self._home = home or Path.home()
        self._is_root = (
            is_root if is_root is not None else hasattr(os, "geteuid") and os.geteuid() == 0
        )

    @property
    def unit_name(self) -> str:
        return f"{self._options.service_name}.service"

    @property
    def service_path(self) -> Path:
        if self._is_root:
            return Path("/etc/systemd/system") / self.unit_name
        return self._home / ".config" / "systemd" / "user" / self.unit_name

    def is_supported(self) -> bool:
        return True

    def get_platform(self) -> Platform:
        return "linux"

    def render_unit(self) -> str:
        """Text of the unit file."""
        opts = self._options
        restart = {"always": "always", "on-failure": "on-failure", "never": "no"}[opts.restart_policy]
        working_dir = opts.working_directory or opts.project_path
        out_log = _out_log(opts)
        lines = [
            "[Unit]",
            f"Description={opts.description}",
            "After=network.target",
            "",
            "[Service]",
            "Type=simple",
            f"WorkingDirectory={working_dir}",
            f"ExecStart={shlex.join(daemon_command(opts))}",
            f"Restart={restart}",
            f"RestartSec={opts.restart_delay_seconds}",
            f"StandardOutput=append:{out_log}",
            f"StandardError=append:{out_log}",
        ]
        if opts.user and self._is_root:
            lines.append(f"User={opts.user}")
        for key, value in sorted(opts.environment.items()):
            lines.append(f'Environment="{key}={value}"')
        lines += [
            "",
            "[Install]",
            f"WantedBy={'multi-user.target' if self._is_root else 'default.target'}",
            "",
        ]
        return "\n".join(lines)

    def _systemctl(self, *args: str, timeout: float = _COMMAND_TIMEOUT_SECONDS) -> subprocess.CompletedProcess[str]:
        base = ["systemctl"] if self._is_root else ["systemctl", "--user"]
        return self._runner([*base, *args], timeout)

    def install(self, enable: bool = True, force: bool = False) -> InstallResult:
        path = self.service_path
        if path.exists() and not force:
            raise ServiceError(
                f"Service file already exists at {path}", ServiceErrorCode.SERVICE_EXISTS,
            )

        _write_service_file(path, self.render_unit().encode("utf-8"))
        _logger.info("service.unit_written", path=str(path))

        warnings: list[str] = []
        reload = self._systemctl("daemon-reload")
        if reload.returncode != 0:
            warnings.append(f"systemctl daemon-reload failed: {_describe_failure(reload)}")

        enabled = False
        if enable:
            result = self._systemctl("enable", self.unit_name)
            if result.returncode == 0:
                enabled = True
            else:
                warnings.append(f"Could not enable service: {_describe_failure(result)}")

        return InstallResult(
            success=True,
            service_path=path,
            platform="linux",
            enabled=enabled,
            warnings=warnings,
        )

    def uninstall(self, force: bool = False, timeout_ms: int = 10_000) -> UninstallResult:
        path = self.service_path
        if not path.exists():
            raise ServiceError(
                f"No service file found at {path}", ServiceErrorCode.SERVICE_NOT_FOUND,
            )

        warnings: list[str] = []
        was_running = self.get_status().running
        if was_running:
            try:
                stop = self._systemctl("stop", self.unit_name, timeout=timeout_ms / 1000)
                if stop.returncode != 0:
                    message = f"Could not stop service: {_describe_failure(stop)}"
                    if not force:
                        raise ServiceError(message, ServiceErrorCode.UNINSTALL_FAILED)
                    warnings.append(message)
            except subprocess.TimeoutExpired as e:
                message = f"Service did not stop within {timeout_ms} ms"
                if not force:
                    raise ServiceError(message, ServiceErrorCode.UNINSTALL_FAILED, e) from e
                warnings.append(message)

        disable = self._systemctl("disable", self.unit_name)
        if disable.returncode != 0:
            warnings.append(f"Could not disable service: {_describe_failure(disable)}")

        _remove_service_file(path)
        reload = self._systemctl("daemon-reload")
        if reload.returncode != 0:
            warnings.append(f"systemctl daemon-reload failed: {_describe_failure(reload)}")

        return UninstallResult(
            success=True,
            service_path=path,
            was_running=was_running,
            warnings=warnings,
        )

    def get_status(self) -> ServiceStatus:
        path = self.service_path
        if not path.exists():
            return ServiceStatus(installed=False, platform="linux", service_path=path)

        result = self._systemctl(
            "show", self.unit_name,
            "--property=ActiveState,SubState,MainPID,UnitFileState",
        )
        props: dict[str, str] = {}
        for line in result.stdout.splitlines():
            key, sep, value = line.partition("=")
            if sep:
                props[key.strip()] = value.strip()

        running = props.get("ActiveState") == "active"
        try:
            main_pid = int(props.get("MainPID", "0"))
        except ValueError:
            main_pid = 0
        pid = main_pid if running and main_pid > 0 else None
        return ServiceStatus(
            installed=True,
            enabled=props.get("UnitFileState") == "enabled",
            running=running,
            pid=pid,
            uptime=SystemProbe.process_age_seconds(pid) if pid else None,
            platform="linux",
            service_path=path,
        )


# ─── launchd ──────────────────────────────────────────────────────────


class LaunchdServiceManager:
    """launchd LaunchAgent in ``~/Library/LaunchAgents``."""

    def __init__(
        self,
        options: ServiceManagerOptions,
        *,
        runner: CommandRunner = run_command,
        home: Path | None = None,
    ) -> None:
        self._options = options
        self._runner = runner
        self._home = home or Path.home()

    @property
    def label(self) -> str:
        name = self._options.service_name.removeprefix("apex-")
        return f"com.apex.{name}"

    @property
    def service_path(self) -> Path:
        return self._home / "Library" / "LaunchAgents" / f"{self.label}.plist"

    def is_supported(self) -> bool:
        return True

    def get_platform(self) -> Platform:
        return "darwin"

    def render_plist(self, enable: bool = True) -> bytes:
        """Serialized LaunchAgent plist."""
        opts = self._options
        keep_alive: bool | dict[str, bool] = {
            "always": True,
            "on-failure": {"SuccessfulExit": False},
            "never": False,
        }[opts.restart_policy]
        out_log = str(_out_log(opts))
        document: dict[str, object] = {
            "Label": self.label,
            "ProgramArguments": daemon_command(opts),
            "WorkingDirectory": str(opts.working_directory or opts.project_path),
            "RunAtLoad": enable,
            "KeepAlive": keep_alive,
            "ThrottleInterval": opts.restart_delay_seconds,
            "StandardOutPath": out_log,
            "StandardErrorPath": out_log,
        }
        if opts.environment:
            document["EnvironmentVariables"] = dict(opts.environment)
        if opts.user:
            document["UserName"] = opts.user
        return plistlib.dumps(document)

    def install(self, enable: bool = True, force: bool = False) -> InstallResult:
        path = self.service_path
        if path.exists() and not force:
            raise ServiceError(
                f"Service file already exists at {path}", ServiceErrorCode.SERVICE_EXISTS,
            )
        if path.exists():
            self._runner(["launchctl", "unload", str(path)], _COMMAND_TIMEOUT_SECONDS)

        _write_service_file(path, self.render_plist(enable))
        _logger.info("service.plist_written", path=str(path))

        warnings: list[str] = []
        enabled = False
        if enable:
            result = self._runner(["launchctl", "load", "-w", str(path)], _COMMAND_TIMEOUT_SECONDS)
            if result.returncode == 0:
                enabled = True
            else:
                warnings.append(f"Could not load service: {_describe_failure(result)}")

        return InstallResult(
            success=True,
            service_path=path,
            platform="darwin",
            enabled=enabled,
            warnings=warnings,
        )

    def uninstall(self, force: bool = False, timeout_ms: int = 10_000) -> UninstallResult:
        path = self.service_path
        if not path.exists():
            raise ServiceError(
                f"No service file found at {path}", ServiceErrorCode.SERVICE_NOT_FOUND,
            )

        warnings: list[str] = []
        status = self.get_status()
        if status.enabled:
            try:
                result = self._runner(["launchctl", "unload", "-w", str(path)], timeout_ms / 1000)
                if result.returncode != 0:
                    message = f"Could not unload service: {_describe_failure(result)}"
                    if not force:
                        raise ServiceError(message, ServiceErrorCode.UNINSTALL_FAILED)
                    warnings.append(message)
            except subprocess.TimeoutExpired as e:
                message = f"Service did not unload within {timeout_ms} ms"
                if not force:
                    raise ServiceError(message, ServiceErrorCode.UNINSTALL_FAILED, e) from e
                warnings.append(message)

        _remove_service_file(path)
        return UninstallResult(
            success=True,
            service_path=path,
            was_running=status.running,
            warnings=warnings,
        )

    def get_status(self) -> ServiceStatus:
        path = self.service_path
        if not path.exists():
            return ServiceStatus(installed=False, platform="darwin", service_path=path)

        result = self._runner(["launchctl", "list", self.label], _COMMAND_TIMEOUT_SECONDS)
        loaded = result.returncode == 0
        pid: int | None = None
        if loaded:
            for line in result.stdout.splitlines():
                stripped = line.strip().rstrip(";")
                if stripped.startswith('"PID"'):
                    _, _, value = stripped.partition("=")
                    try:
                        pid = int(value.strip())
                    except ValueError:
                        pid = None
        return ServiceStatus(
            installed=True,
            enabled=loaded,
            running=pid is not None,
            pid=pid,
            uptime=SystemProbe.process_age_seconds(pid) if pid else None,
            platform="darwin",
            service_path=path,
        )


# ─── Unsupported ──────────────────────────────────────────────────────


class UnsupportedServiceManager:
    """Stand-in for platforms without a supported service manager."""

    def __init__(self, system: str | None = None) -> None:
        self._system = system or sys.platform

    def _fail(self) -> ServiceError:
        return ServiceError(
            f"Service management is not supported on {self._system}",
            ServiceErrorCode.PLATFORM_UNSUPPORTED,
        )

    def install(self, enable: bool = True, force: bool = False) -> InstallResult:
        raise self._fail()

    def uninstall(self, force: bool = False, timeout_ms: int = 10_000) -> UninstallResult:
        raise self._fail()

    def get_status(self) -> ServiceStatus:
        return ServiceStatus(installed=False, platform="unsupported")

    def is_supported(self) -> bool:
        return False

    def get_platform(self) -> Platform:
        return "unsupported"


def create_service_manager(
    options: ServiceManagerOptions,
    platform: Platform | None = None,
    *,
    runner: CommandRunner = run_command,
) -> ServiceManager:
    """Pick the ServiceManager variant for the current (or given) platform."""
    platform = platform or detect_platform()
    if platform == "linux":
        return SystemdServiceManager(options, runner=runner)
    if platform == "darwin":
        return LaunchdServiceManager(options, runner=runner)
    return UnsupportedServiceManager()


__all__ = [
    "DEFAULT_SERVICE_NAME",
    "InstallResult",
    "LaunchdServiceManager",
    "Platform",
    "ServiceManager",
    "ServiceManagerOptions",
    "ServiceStatus",
    "SystemdServiceManager",
    "UninstallResult",
    "UnsupportedServiceManager",
    "create_service_manager",
    "daemon_command",
    "detect_platform",
    "run_command",
]
