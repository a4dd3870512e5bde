"""Health monitoring (watchdog) inside the daemon process.

``HealthMonitor`` is ticked by the daemon's health timer.  Each tick:

1. samples process memory (a failed sample is logged and skipped),
2. runs the registered health checks, each bounded by a timeout,
3. counts passed/failed checks and trips the watchdog once the number of
   consecutive failures reaches the configured threshold.

A tripped monitor does not exit the process itself: the daemon reads
``tripped``/``exit_code``, flushes its state and exits with the watchdog
exit code so the external minder (or the OS service manager) relaunches
it.  The relaunched worker records the cause in its restart history.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path

from apex.core.constants import EXIT_CODE_WATCHDOG, RESTART_HISTORY_LIMIT
from apex.core.logging import get_logger
from apex.daemon.config import HealthCheckConfig
from apex.daemon.system_probe import SystemProbe
from apex.daemon.types import HealthReport, MemoryUsage, RestartEvent, TaskCounts

_logger = get_logger("daemon.health")

HealthCheck = Callable[[], Awaitable[bool]]
"""A named async self-test returning True when healthy (raising counts as failed)."""


def storage_check(daemon_dir: Path) -> HealthCheck:
    """Build a check that the daemon's storage directory is reachable."""

    async def _check() -> bool:
        return daemon_dir.is_dir() and os.access(daemon_dir, os.W_OK)

    _check.__name__ = "storage"
    return _check


class HealthMonitor:
    """Tracks memory, task counters, health checks and restart history.

    Parameters
    ----------
    config:
        Health check settings (timeout and consecutive-failure threshold).
    checks:
        Async self-tests run on every tick.
    history_limit:
        Restart events retained internally (newest first).
    """

    def __init__(
        self,
        config: HealthCheckConfig,
        checks: Iterable[HealthCheck] = (),
        *,
        started_at: datetime | None = None,
        history_limit: int = RESTART_HISTORY_LIMIT,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._config = config
        self._checks = list(checks)
        self._clock = clock
        self._started_at = started_at or clock()
        self._history_limit = history_limit

        self._memory = MemoryUsage()
        self._counts = TaskCounts()
        self._passed = 0
        self._failed = 0
        self._consecutive_failures = 0
        self._last_check: datetime | None = None
        self._history: list[RestartEvent] = []
        self._trip_reason: str | None = None

    # ─── Restart history ──────────────────────────────────────────────

    def record_restart(self, event: RestartEvent) -> None:
        """Record a restart as the newest history entry."""
        self._history.insert(0, event)
        del self._history[self._history_limit:]
        _logger.info(
            "health.restart_recorded",
            reason=event.reason,
            exit_code=event.exit_code,
            triggered_by_watchdog=event.triggered_by_watchdog,
        )

    def merge_history(self, events: Iterable[RestartEvent]) -> None:
        """Merge events persisted by a previous instance.

        The result is ordered newest first and deduplicated, then capped.
        """
        merged = {
            (e.timestamp, e.reason, e.exit_code, e.triggered_by_watchdog): e
            for e in [*self._history, *events]
        }
        self._history = sorted(merged.values(), key=lambda e: e.timestamp, reverse=True)
        del self._history[self._history_limit:]

    @property
    def restart_history(self) -> list[RestartEvent]:
        return list(self._history)

    # ─── Task counters ────────────────────────────────────────────────

    def record_tasks(self, succeeded: int = 0, failed: int = 0, active: int | None = None) -> None:
        """Fold one poll's task outcomes into the counters."""
        self._counts.succeeded += succeeded
        self._counts.failed += failed
        self._counts.processed += succeeded + failed
        if active is not None:
            self._counts.active = active

    # ─── Watchdog ─────────────────────────────────────────────────────

    @property
    def tripped(self) -> bool:
        return self._trip_reason is not None

    @property
    def trip_reason(self) -> str | None:
        return self._trip_reason

    @property
    def exit_code(self) -> int:
        return EXIT_CODE_WATCHDOG

    def trip(self, reason: str) -> None:
        """Mark the process as unrecoverable; the daemon exits on next check."""
        if self._trip_reason is None:
            self._trip_reason = reason
            _logger.error(
                "health.watchdog_tripped",
                reason=reason,
                consecutive_failures=self._consecutive_failures,
            )

    # ─── Periodic work ────────────────────────────────────────────────

    def sample_memory(self) -> MemoryUsage | None:
        """Refresh ``memory_usage``; a failed sample keeps the previous one."""
        try:
            sample = SystemProbe.get_memory_usage()
        except Exception:
            _logger.warning("health.memory_sample_failed", exc_info=True)
            return None
        if sample is None:
            _logger.warning("health.memory_sample_failed")
            return None
        self._memory = sample
        return sample

    async def run_checks(self) -> bool:
        """Run every check once and update the counters.

        Returns:
            True if all checks passed.
        """
        timeout = self._config.timeout_ms / 1000
        healthy = True
        for check in self._checks:
            name = getattr(check, "__name__", "check")
            try:
                ok = bool(await asyncio.wait_for(check(), timeout=timeout))
            except TimeoutError:
                _logger.warning("health.check_timeout", check=name, timeout_ms=self._config.timeout_ms)
                ok = False
            except MemoryError:
                self.trip("oom")
                ok = False
            except Exception as e:
                _logger.warning("health.check_error", check=name, error=str(e))
                ok = False
            if not ok:
                healthy = False

        self._last_check = self._clock()
        if healthy:
            self._passed += 1
            if self._consecutive_failures:
                _logger.info("health.recovered", after_failures=self._consecutive_failures)
            self._consecutive_failures = 0
        else:
            self._failed += 1
            self._consecutive_failures += 1
            _logger.warning(
                "health.check_failed",
                consecutive_failures=self._consecutive_failures,
                threshold=self._config.retries,
            )
            if self._consecutive_failures >= self._config.retries:
                self.trip("health_check_failed")
        return healthy

    async def tick(self) -> HealthReport:
        """One watchdog cycle: sample memory, run checks, return the report."""
        self.sample_memory()
        if self._config.enabled:
            await self.run_checks()
        return self.report()

    def report(self, now: datetime | None = None) -> HealthReport:
        """Snapshot of everything the monitor tracks."""
        now = now or self._clock()
        uptime = max(int((now - self._started_at).total_seconds() * 1000), 0)
        return HealthReport(
            uptime_ms=uptime,
            memory_usage=self._memory.model_copy(),
            task_counts=self._counts.model_copy(),
            last_health_check=self._last_check,
            health_checks_passed=self._passed,
            health_checks_failed=self._failed,
            restart_history=list(self._history),
        )


__all__ = ["HealthCheck", "HealthMonitor", "storage_check"]
