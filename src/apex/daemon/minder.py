"""External minder that relaunches a crashed daemon worker.

The minder is a thin parent process: it runs the worker as a child, waits
for it, and relaunches it after ``restart_delay_ms`` when it exits with a
non-zero status.  At most ``max_restarts`` relaunches are allowed inside
``restart_window_ms``; beyond that the minder gives up and exits.

Each relaunch passes the attributed cause to the new worker through the
environment (see ``apex.daemon.process.restart_env``) so the worker can
record it in its restart history.  SIGTERM/SIGINT received by the minder
are forwarded to the worker and end the minder once the worker exits.
"""

from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from types import FrameType
from typing import Any

from apex.core.constants import EXIT_CODE_SIGKILL, EXIT_CODE_WATCHDOG
from apex.core.logging import get_logger
from apex.daemon.config import WatchdogConfig
from apex.daemon.process import restart_env

_logger = get_logger("daemon.minder")


def describe_exit(returncode: int) -> tuple[str, int]:
    """Attribute a worker exit status to a restart reason.

    Negative return codes (killed by a signal) are reported shell-style as
    ``128 + signal``.

    Returns:
        ``(reason, exit_code)``.
    """
    if returncode < 0:
        signum = -returncode
        exit_code = 128 + signum
        if exit_code == EXIT_CODE_SIGKILL:
            return "oom", exit_code
        try:
            name = signal.Signals(signum).name.lower()
        except ValueError:
            name = str(signum)
        return f"signal_{name}", exit_code
    if returncode == EXIT_CODE_WATCHDOG:
        return "health_check_failed", returncode
    if returncode == EXIT_CODE_SIGKILL:
        return "oom", returncode
    return "crash", returncode


class Minder:
    """Runs a worker command and relaunches it on crashes."""

    def __init__(
        self,
        command: Sequence[str],
        config: WatchdogConfig,
        *,
        env: Mapping[str, str] | None = None,
        popen: Callable[..., Any] = subprocess.Popen,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._command = list(command)
        self._config = config
        self._env = dict(env if env is not None else os.environ)
        self._popen = popen
        self._clock = clock
        self._stop = threading.Event()
        self._child: Any = None
        self._restarts: deque[float] = deque()

    @property
    def restart_count(self) -> int:
        return len(self._restarts)

    def request_stop(self, signum: int | None = None, frame: FrameType | None = None) -> None:
        """Stop relaunching and forward termination to the running worker."""
        self._stop.set()
        child = self._child
        if child is not None and child.poll() is None:
            _logger.info("minder.forwarding_stop", worker_pid=child.pid, signal=signum)
            child.terminate()

    def run(self) -> int:
        """Supervise the worker until it exits cleanly or restarts run out.

        Returns:
            0 after a clean worker exit or a requested stop, otherwise the
            last worker exit code.
        """
        previous = self._install_signal_handlers()
        extra_env: dict[str, str] = {}
        try:
            while True:
                self._child = self._popen(self._command, env={**self._env, **extra_env})
                _logger.info("minder.worker_started", worker_pid=self._child.pid, minder_pid=os.getpid())
                returncode = self._child.wait()
                self._child = None

                if self._stop.is_set() or returncode == 0:
                    _logger.info("minder.worker_finished", returncode=returncode)
                    return 0

                reason, exit_code = describe_exit(returncode)
                if not self._allow_restart():
                    _logger.error(
                        "minder.restart_limit_reached",
                        reason=reason,
                        exit_code=exit_code,
                        max_restarts=self._config.max_restarts,
                        window_ms=self._config.restart_window_ms,
                    )
                    return exit_code or 1

                extra_env = restart_env(reason, exit_code, watchdog=True)
                _logger.warning(
                    "minder.worker_exited",
                    reason=reason,
                    exit_code=exit_code,
                    restart_in_ms=self._config.restart_delay_ms,
                    restarts_in_window=len(self._restarts),
                )
                if self._stop.wait(self._config.restart_delay_ms / 1000):
                    return 0
        finally:
            self._restore_signal_handlers(previous)

    def _allow_restart(self) -> bool:
        """Record a relaunch if the sliding window still has room."""
        now = self._clock()
        window = self._config.restart_window_ms / 1000
        while self._restarts and now - self._restarts[0] > window:
            self._restarts.popleft()
        if len(self._restarts) >= self._config.max_restarts:
            return False
        self._restarts.append(now)
        return True

    def _install_signal_handlers(self) -> dict[int, Any]:
        if threading.current_thread() is not threading.main_thread():
            return {}
        previous: dict[int, Any] = {}
        for sig in (signal.SIGTERM, signal.SIGINT):
            previous[sig] = signal.signal(sig, self.request_stop)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: dict[int, Any]) -> None:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


__all__ = ["Minder", "describe_exit"]
