"""OS service installation (systemd on Linux, launchd on macOS)."""

from apex.service.manager import (
    InstallResult,
    ServiceManager,
    ServiceManagerOptions,
    ServiceStatus,
    UninstallResult,
    create_service_manager,
    detect_platform,
)

__all__ = [
    "InstallResult",
    "ServiceManager",
    "ServiceManagerOptions",
    "ServiceStatus",
    "UninstallResult",
    "create_service_manager",
    "detect_platform",
]
