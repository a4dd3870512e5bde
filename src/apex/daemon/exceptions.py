"""Exception hierarchy for the APEX daemon.

All daemon-specific exceptions inherit from DaemonError and carry a typed
``code`` so that callers can map them onto user-facing messages without
string matching.  Service-manager failures use the parallel ServiceError
hierarchy because they come from a different collaborator (systemd/launchd).
"""

from __future__ import annotations

from enum import Enum


class DaemonErrorCode(str, Enum):
    """Expected failure kinds of the daemon lifecycle."""

    ALREADY_RUNNING = "ALREADY_RUNNING"
    NOT_RUNNING = "NOT_RUNNING"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    PID_FILE_CORRUPTED = "PID_FILE_CORRUPTED"
    LOCK_FAILED = "LOCK_FAILED"
    START_FAILED = "START_FAILED"
    STOP_FAILED = "STOP_FAILED"
    STATE_UNAVAILABLE = "STATE_UNAVAILABLE"


class ServiceErrorCode(str, Enum):
    """Failure kinds reported by the OS service manager capability."""

    PLATFORM_UNSUPPORTED = "PLATFORM_UNSUPPORTED"
    SERVICE_EXISTS = "SERVICE_EXISTS"
    SERVICE_NOT_FOUND = "SERVICE_NOT_FOUND"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    INSTALL_FAILED = "INSTALL_FAILED"
    UNINSTALL_FAILED = "UNINSTALL_FAILED"


class DaemonError(Exception):
    """Base exception for all daemon-related errors."""

    default_code: DaemonErrorCode | None = None

    def __init__(
        self,
        message: str,
        code: DaemonErrorCode | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.cause = cause


class DaemonNotRunningError(DaemonError):
    """Raised when an operation needs a live daemon and none is running.

    Typically detected via a missing PID file or a dead PID.
    """

    default_code = DaemonErrorCode.NOT_RUNNING


class DaemonAlreadyRunningError(DaemonError):
    """Raised when starting a daemon while another instance is already running.

    Detected via PID file check and process liveness check.
    """

    default_code = DaemonErrorCode.ALREADY_RUNNING

    def __init__(self, pid: int, message: str | None = None) -> None:
        super().__init__(message or f"Daemon is already running (PID {pid})")
        self.pid = pid


class PidFileCorruptedError(DaemonError):
    """Raised when the PID file exists but cannot be parsed.

    Never cleared automatically: only a forced stop removes it.
    """

    default_code = DaemonErrorCode.PID_FILE_CORRUPTED


class LockFailedError(DaemonError):
    """Raised when another starter holds the create-exclusive start lock."""

    default_code = DaemonErrorCode.LOCK_FAILED


class DaemonPermissionError(DaemonError):
    """Raised when the project's daemon directory is not writable."""

    default_code = DaemonErrorCode.PERMISSION_DENIED


class StateUnavailableError(DaemonError):
    """Raised when the daemon state artifact cannot be read."""

    default_code = DaemonErrorCode.STATE_UNAVAILABLE


class ServiceError(Exception):
    """Error raised by a ServiceManager implementation."""

    def __init__(
        self,
        message: str,
        code: ServiceErrorCode,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.cause = cause


__all__ = [
    "DaemonAlreadyRunningError",
    "DaemonError",
    "DaemonErrorCode",
    "DaemonNotRunningError",
    "DaemonPermissionError",
    "LockFailedError",
    "PidFileCorruptedError",
    "ServiceError",
    "ServiceErrorCode",
    "StateUnavailableError",
]
