"""APEX daemon process.

Long-running worker that polls the task engine for work and, on a second
independent timer, evaluates capacity and health and publishes both in the
state artifact.  The CLI never talks to this process directly: everything
it needs is read from ``.apex/daemon-state.json`` and ``.apex/daemon.log``.

The entry point is the hidden ``apex daemon run`` command, spawned by
``DaemonSupervisor.start`` (or by an OS service unit with ``--foreground``).
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from apex import __version__
from apex.core.constants import (
    ENV_RESTART_EXIT_CODE,
    ENV_RESTART_REASON,
    ENV_RESTART_WATCHDOG,
    EXIT_CODE_WATCHDOG,
)
from apex.core.logging import configure_logging, get_logger
from apex.daemon.capacity import CapacityScheduler, FileUsageProvider, UsageProvider
from apex.daemon.config import DaemonConfig, DaemonPaths, load_config
from apex.daemon.exceptions import StateUnavailableError
from apex.daemon.health import HealthCheck, HealthMonitor, storage_check
from apex.daemon.state import DaemonStateStore
from apex.daemon.system_probe import SystemProbe
from apex.daemon.types import CapacityStatusInfo, DaemonState, PauseDecision, RestartEvent

_logger = get_logger("daemon")


# ─── Task engine boundary ─────────────────────────────────────────────


@dataclass
class TaskPollResult:
    """Outcome of one poll of the task engine."""

    succeeded: int = 0
    failed: int = 0
    active: int = 0


class TaskExecutor(Protocol):
    """The task-execution engine the daemon drives."""

    async def poll(self) -> TaskPollResult: ...


class IdleTaskExecutor:
    """Executor used when no task engine is plugged in; never finds work."""

    async def poll(self) -> TaskPollResult:
        return TaskPollResult()


# ─── Restart attribution ──────────────────────────────────────────────


def restart_env(reason: str, exit_code: int | None, watchdog: bool) -> dict[str, str]:
    """Environment variables telling a relaunched worker why it was relaunched."""
    env = {
        ENV_RESTART_REASON: reason,
        ENV_RESTART_WATCHDOG: "1" if watchdog else "0",
    }
    if exit_code is not None:
        env[ENV_RESTART_EXIT_CODE] = str(exit_code)
    return env


def restart_event_from_env(
    environ: Mapping[str, str],
    now: datetime | None = None,
) -> RestartEvent | None:
    """Rebuild the RestartEvent a minder or ``apex daemon restart`` passed in."""
    reason = environ.get(ENV_RESTART_REASON)
    if not reason:
        return None
    raw_code = environ.get(ENV_RESTART_EXIT_CODE)
    try:
        exit_code = int(raw_code) if raw_code else None
    except ValueError:
        exit_code = None
    return RestartEvent(
        timestamp=now or datetime.now(UTC),
        reason=reason,
        exit_code=exit_code,
        triggered_by_watchdog=environ.get(ENV_RESTART_WATCHDOG, "0").lower() in {"1", "true"},
    )


# ─── Core Functions (used by cli/commands/daemon.py) ──────────────────


def worker_command(
    project_path: Path,
    poll_interval_ms: int | None = None,
    *,
    worker: bool = False,
) -> list[str]:
    """Command line that runs the daemon for a project in a new process."""
    command = [
        sys.executable, "-m", "apex", "daemon", "run",
        "--project", str(project_path),
    ]
    if worker:
        command.append("--worker")
    if poll_interval_ms is not None:
        command.extend(["--poll-interval", str(poll_interval_ms)])
    return command


def run_daemon(
    project_path: Path,
    *,
    poll_interval_ms: int | None = None,
    worker: bool = False,
    foreground: bool = False,
) -> int:
    """Run the daemon for a project until it is told to stop.

    Without ``worker`` and with the watchdog enabled, this process becomes
    the minder and runs the worker as its child.  ``foreground`` is used by
    OS service units: the process records its own PID and relies on the
    service manager for relaunches.

    Returns:
        The process exit code.
    """
    paths = DaemonPaths.for_project(project_path)
    config = load_config(paths.project_path)
    if poll_interval_ms is not None:
        config = DaemonConfig.model_validate(
            {**config.model_dump(), "poll_interval_ms": poll_interval_ms},
        )

    configure_logging(level=config.log_level, format="daemon", file_path=paths.log_file)

    if foreground:
        return _run_foreground(config, paths)

    if config.watchdog.enabled and not worker:
        from apex.daemon.minder import Minder

        command = worker_command(paths.project_path, poll_interval_ms, worker=True)
        return Minder(command, config.watchdog).run()

    daemon = DaemonProcess(config, paths, restart_event=restart_event_from_env(os.environ))
    return asyncio.run(daemon.run())


def _run_foreground(config: DaemonConfig, paths: DaemonPaths) -> int:
    """Run the worker in this process and own the PID file while it runs."""
    from apex.daemon.pidfile import PidFileStore

    store = PidFileStore(paths.pid_file)
    handle = store.acquire()
    try:
        store.write(handle, os.getpid(), project_path=paths.project_path)
    finally:
        store.release(handle)

    _logger.info("daemon.starting", pid=os.getpid(), foreground=True)
    try:
        daemon = DaemonProcess(config, paths, restart_event=restart_event_from_env(os.environ))
        return asyncio.run(daemon.run())
    finally:
        record = store.read()
        if record is not None and record.pid == os.getpid():
            store.remove()


# ─── DaemonProcess ────────────────────────────────────────────────────


class DaemonProcess:
    """Long-running APEX worker.

    Composes the task executor, the capacity scheduler and the health
    monitor into one asyncio lifecycle with two independent timers:

    - the poll loop dispatches work every ``poll_interval_ms`` unless
      capacity is auto-paused;
    - the health loop evaluates capacity, ticks the watchdog and writes the
      state artifact every ``health_check.interval_ms``.

    Neither loop awaits the other, so a slow health check cannot delay task
    dispatch and a slow poll cannot delay health reporting.
    """

    _CIRCUIT_BREAKER_THRESHOLD = 5
    _MAX_BACKOFF_SECONDS = 300.0

    def __init__(
        self,
        config: DaemonConfig,
        paths: DaemonPaths,
        *,
        executor: TaskExecutor | None = None,
        usage_provider: UsageProvider | None = None,
        restart_event: RestartEvent | None = None,
        health_checks: Iterable[HealthCheck] = (),
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._config = config
        self._paths = paths
        self._executor = executor or IdleTaskExecutor()
        self._restart_event = restart_event
        self._clock = clock
        self._started_at = clock()

        self._state_store = DaemonStateStore(paths.state_file)
        self._scheduler = CapacityScheduler(
            config.time_based_usage,
            usage_provider or FileUsageProvider(paths.usage_file, config.daily_budget),
        )
        self._monitor = HealthMonitor(
            config.health_check,
            [storage_check(paths.daemon_dir), *health_checks],
            started_at=self._started_at,
            clock=clock,
        )

        self._stop = asyncio.Event()
        self._paused = False
        self._capacity: CapacityStatusInfo | None = None
        self._exit_code = 0
        self._evaluation_failures = 0
        self._signals_installed: list[signal.Signals] = []

    # ─── Public API ───────────────────────────────────────────────────

    @property
    def monitor(self) -> HealthMonitor:
        return self._monitor

    @property
    def scheduler(self) -> CapacityScheduler:
        return self._scheduler

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def capacity(self) -> CapacityStatusInfo | None:
        return self._capacity

    def request_shutdown(self, reason: str = "request") -> None:
        """Ask both loops to finish; ``run`` then flushes state and returns."""
        if self._stop.is_set():
            _logger.info("daemon.shutdown_already_requested", reason=reason)
            return
        _logger.info("daemon.shutdown_requested", reason=reason)
        self._stop.set()

    async def run(self) -> int:
        """Main daemon lifecycle: boot, serve, shutdown.

        Returns:
            0 after a requested shutdown, the watchdog exit code when the
            health monitor tripped.
        """
        self._restore_restart_history()

        # The state file doubles as the readiness signal for `start`.
        self._paths.daemon_dir.mkdir(parents=True, exist_ok=True)
        self._capacity, decision = self._scheduler.check()
        self._apply_decision(decision)
        self._monitor.sample_memory()
        self._write_state()

        loop = asyncio.get_running_loop()
        self._install_signal_handlers(loop)

        _logger.info(
            "daemon.started",
            pid=os.getpid(),
            version=__version__,
            poll_interval_ms=self._config.poll_interval_ms,
            health_interval_ms=self._config.health_check.interval_ms,
        )

        tasks = [
            asyncio.create_task(self._poll_loop(), name="daemon-poll"),
            asyncio.create_task(self._health_loop(), name="daemon-health"),
        ]
        for task in tasks:
            task.add_done_callback(self._on_loop_done)

        try:
            await self._stop.wait()
        finally:
            await self._drain(tasks)
            self._remove_signal_handlers(loop)
            self._write_final_state()
            _logger.info("daemon.stopped", exit_code=self._exit_code)
        return self._exit_code

    async def evaluate_once(self) -> None:
        """One health/capacity evaluation, then publish the state artifact."""
        self._capacity, decision = self._scheduler.check()
        self._apply_decision(decision)
        await self._monitor.tick()
        self._write_state()
        if self._monitor.tripped:
            self._exit_code = self._monitor.exit_code
            self.request_shutdown(reason=f"watchdog:{self._monitor.trip_reason}")

    # ─── Loops ────────────────────────────────────────────────────────

    async def _poll_loop(self) -> None:
        """Dispatch work on the poll interval until shutdown."""
        interval = self._config.poll_interval_ms / 1000
        while not self._stop.is_set():
            if self._paused:
                _logger.debug("daemon.poll_skipped_paused")
            else:
                try:
                    result = await self._executor.poll()
                    self._monitor.record_tasks(
                        succeeded=result.succeeded,
                        failed=result.failed,
                        active=result.active,
                    )
                except MemoryError:
                    self._monitor.trip("oom")
                    self._exit_code = EXIT_CODE_WATCHDOG
                    self.request_shutdown(reason="watchdog:oom")
                    return
                except Exception:
                    _logger.exception("daemon.poll_failed")
            if await self._wait_for_stop(interval):
                return

    async def _health_loop(self) -> None:
        """Periodic evaluation loop with circuit breaker and backoff."""
        interval = self._config.health_check.interval_ms / 1000
        delay = interval
        while not self._stop.is_set():
            if await self._wait_for_stop(delay):
                return
            try:
                await self.evaluate_once()
            except Exception:
                self._evaluation_failures += 1
                _logger.exception(
                    "daemon.evaluation_failed",
                    consecutive_failures=self._evaluation_failures,
                )
                # Exponential backoff once the breaker opens to avoid log spam
                if self._evaluation_failures >= self._CIRCUIT_BREAKER_THRESHOLD:
                    exponent = self._evaluation_failures - self._CIRCUIT_BREAKER_THRESHOLD
                    delay = min(interval * (2 ** exponent), self._MAX_BACKOFF_SECONDS)
                continue
            if self._evaluation_failures:
                _logger.info("daemon.evaluation_recovered", after_failures=self._evaluation_failures)
                self._evaluation_failures = 0
            delay = interval

    async def _wait_for_stop(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True if shutdown was requested."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    async def _drain(self, tasks: list[asyncio.Task[None]]) -> None:
        """Let in-flight work finish within the stop timeout, then cancel."""
        grace = self._config.stop_timeout_ms / 1000 / 2
        _done, pending = await asyncio.wait(tasks, timeout=grace)
        for task in pending:
            _logger.warning("daemon.task_cancelled_on_shutdown", task_name=task.get_name())
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _on_loop_done(self, task: asyncio.Task[None]) -> None:
        """A loop dying outside shutdown stops the daemon with an error code."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        _logger.error(
            "daemon.loop_died_unexpectedly",
            error=f"{type(exc).__name__}: {exc}",
            task_name=task.get_name(),
        )
        if not self._stop.is_set():
            self._exit_code = 1
            self.request_shutdown(reason=f"loop_failed:{task.get_name()}")

    # ─── Helpers ──────────────────────────────────────────────────────

    def _apply_decision(self, decision: PauseDecision) -> None:
        """Gate dispatch on the decision, only when time-based usage is on."""
        paused = self._config.time_based_usage.enabled and decision.should_pause
        if paused and not self._paused:
            _logger.warning(
                "capacity.auto_paused",
                reason=decision.reason,
                recommendations=decision.recommendations,
            )
        elif self._paused and not paused:
            _logger.info("capacity.auto_resumed")
        self._paused = paused

    def _restore_restart_history(self) -> None:
        """Merge the previous instance's history and record why we started."""
        try:
            previous = self._state_store.read()
        except StateUnavailableError as e:
            _logger.warning("daemon.previous_state_unreadable", error=str(e))
            previous = None

        if previous is not None:
            self._monitor.merge_history(previous.health.restart_history)

        if self._restart_event is not None:
            self._monitor.record_restart(self._restart_event)
        elif previous is not None and previous.exit_reason is not None:
            # Relaunched by a service manager after a watchdog exit.
            self._monitor.record_restart(RestartEvent(
                timestamp=self._clock(),
                reason=previous.exit_reason,
                exit_code=previous.exit_code,
                triggered_by_watchdog=True,
            ))
        elif (
            previous is not None
            and not previous.clean_shutdown
            and previous.pid != os.getpid()
            and not SystemProbe.pid_alive(previous.pid)
        ):
            self._monitor.record_restart(
                RestartEvent(timestamp=self._clock(), reason="unclean_shutdown"),
            )

    def _write_state(self, clean_shutdown: bool = False, **exit_info: Any) -> None:
        state = DaemonState(
            pid=os.getpid(),
            started_at=self._started_at,
            updated_at=self._clock(),
            version=__version__,
            capacity=self._capacity,
            health=self._monitor.report(),
            clean_shutdown=clean_shutdown,
            **exit_info,
        )
        self._state_store.write(state)

    def _write_final_state(self) -> None:
        """Last write before exit; a watchdog exit records its cause for the successor."""
        if self._monitor.tripped:
            self._write_state(
                exit_reason=self._monitor.trip_reason,
                exit_code=self._exit_code or EXIT_CODE_WATCHDOG,
            )
        else:
            self._write_state(clean_shutdown=True)

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        def _make_signal_callback(s: signal.Signals) -> Callable[[], None]:
            """Create a signal callback that captures ``s`` by value."""
            def _cb() -> None:
                self.request_shutdown(reason=s.name)
            return _cb

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, _make_signal_callback(sig))
            except (NotImplementedError, RuntimeError):
                # No loop signal support (Windows, non-main thread).
                _logger.debug("daemon.signal_handler_unavailable", signal=sig.name)
                continue
            self._signals_installed.append(sig)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in self._signals_installed:
            loop.remove_signal_handler(sig)
        self._signals_installed.clear()


__all__ = [
    "DaemonProcess",
    "IdleTaskExecutor",
    "TaskExecutor",
    "TaskPollResult",
    "restart_env",
    "restart_event_from_env",
    "run_daemon",
    "worker_command",
]
