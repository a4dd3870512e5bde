"""Cross-platform daemon log tailing.

Two modes, both independent of any ``tail`` binary:

- **Bounded read**: split the whole file into lines (LF or CRLF), drop
  blank lines, filter by minimum level, keep the last N, oldest first.
- **Follow**: after the bounded read, watch the log's directory with
  watchfiles and, on every modification of the log file, read exactly the
  byte range ``[last_size, current_size)`` and emit the new matching lines.
  A file that did not grow (or shrank, i.e. was truncated or rotated)
  produces no output; the shrunken size becomes the new baseline.

Levels are read from the ``[<timestamp>] <LEVEL>`` prefix of daemon log
lines.  Lines without a recognizable level only pass the ``debug`` filter.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import watchfiles
from watchfiles import Change

from apex.core.constants import DEFAULT_LOG_LINES
from apex.core.logging import get_logger

_logger = get_logger("daemon.logtail")

_LINE_SPLIT = re.compile(r"\r?\n")
_LEVEL_PREFIX = re.compile(r"^\[[^\]]*\]\s+(DEBUG|INFO|WARN(?:ING)?|ERROR)\b")


class LogLevel(str, Enum):
    """Minimum level accepted by the tailer (``debug < info < warn < error``)."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]


_LEVEL_RANK = {LogLevel.DEBUG: 0, LogLevel.INFO: 1, LogLevel.WARN: 2, LogLevel.ERROR: 3}


def parse_level(line: str) -> LogLevel | None:
    """Level of a daemon log line, or None when it has no level prefix."""
    match = _LEVEL_PREFIX.match(line)
    if match is None:
        return None
    name = match.group(1)
    if name.startswith("WARN"):
        return LogLevel.WARN
    return LogLevel(name.lower())


def line_matches(line: str, minimum: LogLevel) -> bool:
    """Whether a line passes the level filter; blank lines never match."""
    if not line.strip():
        return False
    level = parse_level(line)
    if level is None:
        return minimum is LogLevel.DEBUG
    return level.rank >= minimum.rank


def split_lines(text: str) -> list[str]:
    """Split on LF or CRLF without keeping the terminators."""
    lines = _LINE_SPLIT.split(text)
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def filter_lines(text: str, minimum: LogLevel, limit: int | None = None) -> list[str]:
    """Matching lines of ``text`` in original order, keeping only the last ``limit``."""
    matched = [line for line in split_lines(text) if line_matches(line, minimum)]
    if limit is not None:
        matched = matched[-limit:] if limit > 0 else []
    return matched


@dataclass
class TailResult:
    """Outcome of a bounded read."""

    found: bool
    lines: list[str] = field(default_factory=list)
    size: int = 0


def read_tail(
    log_path: Path,
    lines: int = DEFAULT_LOG_LINES,
    level: LogLevel = LogLevel.DEBUG,
) -> TailResult:
    """Bounded read of the last ``lines`` matching entries.

    Returns:
        ``found=False`` when the log file does not exist.
    """
    try:
        data = log_path.read_bytes()
    except FileNotFoundError:
        return TailResult(found=False)
    text = data.decode("utf-8", errors="replace")
    return TailResult(found=True, lines=filter_lines(text, level, lines), size=len(data))


Watcher = Callable[..., Iterable[set[tuple[Change, str]]]]


class LogTailer:
    """Incremental reader of the daemon log for follow mode."""

    def __init__(
        self,
        log_path: Path,
        emit: Callable[[str], None],
        level: LogLevel = LogLevel.DEBUG,
        *,
        watcher: Watcher = watchfiles.watch,
    ) -> None:
        self._log_path = log_path
        self._emit = emit
        self._level = level
        self._watcher = watcher
        self._last_size = 0
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._error: BaseException | None = None
        self._resolved = self._resolve(log_path)

    @property
    def last_size(self) -> int:
        return self._last_size

    @property
    def error(self) -> BaseException | None:
        return self._error

    @staticmethod
    def _resolve(path: Path) -> Path:
        try:
            return path.resolve()
        except OSError:
            return path.absolute()

    def is_log_file(self, path: Path) -> bool:
        return path == self._log_path or self._resolve(path) == self._resolved

    def watch_filter(self, change: Change, path: str) -> bool:
        """Accept modifications of the log file; renames, deletions and creations are ignored."""
        return change == Change.modified and self.is_log_file(Path(path))

    def show_history(self, lines: int = DEFAULT_LOG_LINES) -> TailResult:
        """Emit the bounded tail and remember the size it covered."""
        result = read_tail(self._log_path, lines, self._level)
        for line in result.lines:
            self._emit(line)
        self._last_size = result.size
        return result

    def read_new_lines(self) -> list[str]:
        """Read the bytes appended since the last read and return matches.

        A file that did not grow yields nothing.  A file that shrank yields
        nothing and its new size becomes the baseline.
        """
        with self._lock:
            try:
                size = self._log_path.stat().st_size
            except FileNotFoundError:
                return []
            if size <= self._last_size:
                if size < self._last_size:
                    _logger.debug("logtail.truncated", previous=self._last_size, current=size)
                    self._last_size = size
                return []

            with open(self._log_path, "rb") as f:
                f.seek(self._last_size)
                chunk = f.read(size - self._last_size)
            self._last_size = size

        text = chunk.decode("utf-8", errors="replace")
        return filter_lines(text, self._level)

    def on_change(self) -> None:
        """Emit the lines appended since the previous change."""
        for line in self.read_new_lines():
            self._emit(line)

    def _fail(self, error: BaseException) -> None:
        self._error = error
        _logger.warning("logtail.watch_failed", error=str(error))
        self._stop.set()

    def stop(self) -> None:
        """Ask ``follow`` to close its watcher and return."""
        self._stop.set()

    def follow(self) -> int:
        """Stream new lines until ``stop()`` is called.

        The watcher generator is closed before returning, so no handle
        outlives the call.  A watcher or read failure is recorded in
        ``error`` and ends following with exit code 0.

        Returns:
            Process exit code (always 0).
        """
        changes = self._watcher(
            self._log_path.parent,
            watch_filter=self.watch_filter,
            stop_event=self._stop,
            recursive=False,
            debounce=200,
        )
        try:
            for batch in changes:
                if batch:
                    self.on_change()
                if self._stop.is_set():
                    break
        except (OSError, RuntimeError) as e:
            self._fail(e)
        finally:
            close = getattr(changes, "close", None)
            if close is not None:
                close()
        return 0


__all__ = [
    "LogLevel",
    "LogTailer",
    "TailResult",
    "filter_lines",
    "line_matches",
    "parse_level",
    "read_tail",
    "split_lines",
]
