"""Consolidated system probes for the APEX daemon.

Provides a single ``SystemProbe`` class wrapping the psutil calls used on
both sides of the process boundary:

- Liveness of a PID (supervisor, PID file store)
- Whether a live PID still belongs to the recorded process (supervisor)
- Process memory sampling (health monitor)
- Terminating a process tree and waiting for it to exit (supervisor)

All methods are static; callers import the class and call methods directly,
which also makes them easy to patch in tests.
"""

from __future__ import annotations

import os
import time
from datetime import datetime

import psutil

from apex.core.logging import get_logger
from apex.daemon.types import MemoryUsage

_logger = get_logger("daemon.system_probe")


class SystemProbe:
    """System process probes backed by psutil."""

    @staticmethod
    def pid_alive(pid: int) -> bool:
        """Check whether a process with the given PID is alive.

        Zombies count as dead: they hold a PID but will never do work.
        A process we may not inspect still counts as alive.
        """
        if pid <= 0:
            return False
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True

    @staticmethod
    def started_near(pid: int, started_at: datetime, tolerance_s: float) -> bool:
        """Check that the process behind ``pid`` was created around ``started_at``.

        A PID record outlives its process when the daemon dies hard, and the
        OS may hand the same PID to an unrelated program later.  A creation
        time further than ``tolerance_s`` from the recorded start means the
        PID was reused.  A process we may not inspect is given the benefit
        of the doubt.
        """
        try:
            created = psutil.Process(pid).create_time()
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True
        return abs(created - started_at.timestamp()) <= tolerance_s

    @staticmethod
    def get_memory_usage(pid: int | None = None) -> MemoryUsage | None:
        """Sample memory of a process (defaults to the current one).

        ``heap_used_bytes`` is the private (non-shared) resident memory,
        ``heap_total_bytes`` is the full resident set.

        Returns:
            The sample, or ``None`` when sampling fails.
        """
        try:
            info = psutil.Process(pid or os.getpid()).memory_info()
        except (psutil.Error, OSError):
            _logger.debug("system_probe.memory_failed", exc_info=True)
            return None
        rss = int(info.rss)
        shared = int(getattr(info, "shared", 0))
        return MemoryUsage(
            heap_used_bytes=max(rss - shared, 0),
            heap_total_bytes=rss,
            rss_bytes=rss,
        )

    @staticmethod
    def process_age_seconds(pid: int) -> float | None:
        """Seconds since the process was created, or None if unknown."""
        try:
            created = psutil.Process(pid).create_time()
        except (psutil.Error, OSError):
            return None
        return max(time.time() - created, 0.0)

    @staticmethod
    def terminate(pid: int) -> bool:
        """Send a graceful termination request (SIGTERM on POSIX).

        Returns:
            False if the process was already gone.
        """
        try:
            psutil.Process(pid).terminate()
        except psutil.NoSuchProcess:
            return False
        return True

    @staticmethod
    def kill_tree(pid: int) -> list[int]:
        """Kill a process and all of its descendants unconditionally.

        Children are collected first so a killed minder cannot leave an
        orphaned worker behind.

        Returns:
            PIDs that were signalled.
        """
        try:
            root = psutil.Process(pid)
        except psutil.NoSuchProcess:
            return []
        try:
            victims = [*root.children(recursive=True), root]
        except psutil.NoSuchProcess:
            victims = [root]
        killed: list[int] = []
        for proc in victims:
            try:
                proc.kill()
                killed.append(proc.pid)
            except psutil.NoSuchProcess:
                continue
        return killed

    @staticmethod
    def wait_for_exit(pid: int, timeout: float) -> bool:
        """Block until the process exits or ``timeout`` seconds elapse.

        Returns:
            True if the process is gone, False on timeout.
        """
        try:
            psutil.Process(pid).wait(timeout=timeout)
        except psutil.NoSuchProcess:
            return True
        except psutil.TimeoutExpired:
            return not SystemProbe.pid_alive(pid)
        return True


__all__ = ["SystemProbe"]
