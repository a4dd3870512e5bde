"""APEX daemon: supervised background task worker."""

from apex.daemon.capacity import CapacityScheduler, FileUsageProvider, UsageSnapshot
from apex.daemon.config import DaemonConfig, DaemonPaths, load_config
from apex.daemon.exceptions import DaemonError, DaemonErrorCode, ServiceError, ServiceErrorCode
from apex.daemon.health import HealthMonitor
from apex.daemon.logtail import LogLevel, LogTailer, read_tail
from apex.daemon.minder import Minder
from apex.daemon.pidfile import PidFileStore
from apex.daemon.process import DaemonProcess, TaskExecutor, run_daemon
from apex.daemon.state import DaemonStateStore
from apex.daemon.supervisor import DaemonSupervisor
from apex.daemon.types import (
    CapacityStatusInfo,
    DaemonStatus,
    ExtendedDaemonStatus,
    HealthReport,
    RestartEvent,
)

__all__ = [
    "CapacityScheduler",
    "CapacityStatusInfo",
    "DaemonConfig",
    "DaemonError",
    "DaemonErrorCode",
    "DaemonPaths",
    "DaemonProcess",
    "DaemonStateStore",
    "DaemonStatus",
    "DaemonSupervisor",
    "ExtendedDaemonStatus",
    "FileUsageProvider",
    "HealthMonitor",
    "HealthReport",
    "LogLevel",
    "LogTailer",
    "Minder",
    "PidFileStore",
    "RestartEvent",
    "ServiceError",
    "ServiceErrorCode",
    "TaskExecutor",
    "UsageSnapshot",
    "load_config",
    "read_tail",
    "run_daemon",
]
