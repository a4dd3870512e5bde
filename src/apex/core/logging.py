"""Structured logging infrastructure for APEX.

Provides structured logging using structlog with APEX-specific context such
as component names. Three output formats are supported:

- ``console``: human-readable output on stderr (CLI use).
- ``json``: one JSON object per line (machine consumption).
- ``daemon``: the append-only daemon log line format read back by
  ``apex daemon logs``::

      [2024-05-01T12:00:00.000Z] INFO   daemon.started pid=4242

Example usage:
    from apex.core.logging import get_logger, configure_logging

    # Configure once at startup
    configure_logging(level="INFO", format="daemon", file_path=log_path)

    # Get a component-specific logger
    logger = get_logger("daemon.health")

    # Log with structured fields
    logger.info("health.check_passed", passed=12)
"""

from __future__ import annotations

import logging
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from apex.core.constants import DAEMON_DIR_NAME, LOG_FILE_NAME

# Substrings of field names whose values are replaced before rendering.
SENSITIVE_PATTERNS = frozenset({
    "api_key",
    "apikey",
    "api-key",
    "token",
    "secret",
    "password",
    "credential",
    "bearer",
    "authorization",
})

LogLevelName = Literal["DEBUG", "INFO", "WARN", "WARNING", "ERROR"]
LogFormat = Literal["json", "console", "daemon"]

# Level names as they appear in the daemon log file, padded to 5 characters.
DAEMON_LEVEL_NAMES: dict[str, str] = {
    "debug": "DEBUG",
    "info": "INFO",
    "warning": "WARN",
    "warn": "WARN",
    "error": "ERROR",
    "critical": "ERROR",
    "exception": "ERROR",
}

# Keys the daemon renderer consumes itself instead of printing as key=value.
_DAEMON_RESERVED_KEYS = frozenset({"event", "level", "timestamp", "component"})

def get_default_log_path(project_path: Path) -> Path:
    """Get the daemon log file path for a project.

    The default log location is ``{project}/.apex/daemon.log``.

    Args:
        project_path: The project root directory.

    Returns:
        Path to the daemon log file.
    """
    return project_path / DAEMON_DIR_NAME / LOG_FILE_NAME


def format_log_timestamp(moment: datetime | None = None) -> str:
    """Format a timestamp the way daemon log lines carry it.

    Args:
        moment: Timestamp to format. Defaults to now.

    Returns:
        ISO-8601 UTC string with millisecond precision and a ``Z`` suffix.
    """
    moment = (moment or datetime.now(UTC)).astimezone(UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def normalize_level(level: str) -> str:
    """Map user-facing level names onto stdlib logging names.

    ``warn`` is accepted as an alias of ``WARNING``.

    Raises:
        ValueError: If the level name is unknown.
    """
    upper = level.upper()
    if upper == "WARN":
        upper = "WARNING"
    if upper not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ValueError(f"Unknown log level: {level}")
    return upper


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in SENSITIVE_PATTERNS)


def _redact_sensitive(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Replace values of sensitive keys with ``[REDACTED]``, one dict level deep."""
    redacted: EventDict = {}
    for key, value in event_dict.items():
        if _is_sensitive(key):
            redacted[key] = "[REDACTED]"
        elif isinstance(value, dict):
            redacted[key] = {
                k: "[REDACTED]" if _is_sensitive(str(k)) else v for k, v in value.items()
            }
        else:
            redacted[key] = value
    return redacted


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that adds an ISO8601 UTC timestamp."""
    event_dict["timestamp"] = format_log_timestamp()
    return event_dict


def _format_daemon_value(value: Any) -> str:
    """Render a field value on a single line, quoting when it has spaces."""
    text = str(value).replace("\r\n", " | ").replace("\n", " | ")
    if not text or any(ch.isspace() for ch in text):
        return '"' + text.replace('"', '\\"') + '"'
    return text


class DaemonLineRenderer:
    """Render an event dict as one daemon log line.

    Output shape: ``[<timestamp>] <LEVEL padded to 5>  <event> key=value ...``.
    Multi-line values (tracebacks) are folded onto the same line so every
    record stays a single line for the log tailer.
    """

    def __call__(
        self,
        logger: WrappedLogger,
        method_name: str,
        event_dict: EventDict,
    ) -> str:
        timestamp = event_dict.get("timestamp") or format_log_timestamp()
        raw_level = str(event_dict.get("level", method_name)).lower()
        level = DAEMON_LEVEL_NAMES.get(raw_level, raw_level.upper())
        event = _format_daemon_value(event_dict.get("event", "")).strip('"')

        fields = [
            f"{key}={_format_daemon_value(value)}"
            for key, value in event_dict.items()
            if key not in _DAEMON_RESERVED_KEYS
        ]
        line = f"[{timestamp}] {level:<5}  {event}"
        if fields:
            line += " " + " ".join(fields)
        return line


class ApexLogger:
    """Component-scoped logger.

    The structlog logger is looked up on every call instead of being cached,
    so module-level loggers pick up whatever ``configure_logging`` installed
    after import.
    """

    def __init__(self, component: str, **initial_context: Any) -> None:
        self._context: dict[str, Any] = {"component": component, **initial_context}

    def bind(self, **context: Any) -> ApexLogger:
        """Logger for the same component with extra bound fields."""
        return ApexLogger(**{**self._context, **context})

    def _emit(self, method: str, event: str, kw: dict[str, Any]) -> None:
        bound: structlog.stdlib.BoundLogger = structlog.get_logger().bind(**self._context)
        getattr(bound, method)(event, **kw)

    def debug(self, event: str, **kw: Any) -> None:
        self._emit("debug", event, kw)

    def info(self, event: str, **kw: Any) -> None:
        self._emit("info", event, kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._emit("warning", event, kw)

    def error(self, event: str, **kw: Any) -> None:
        self._emit("error", event, kw)

    def critical(self, event: str, **kw: Any) -> None:
        self._emit("critical", event, kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Log at error level with the active exception's traceback."""
        self._emit("exception", event, kw)


def _get_processors(format: LogFormat) -> list[Processor]:  # noqa: A002
    """Get the structlog processor chain for an output format.

    Args:
        format: One of ``console``, ``json`` or ``daemon``.

    Returns:
        List of processors ending in the format's renderer.
    """
    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,  # Filter before processing
        structlog.stdlib.add_log_level,
        _redact_sensitive,
        _add_timestamp,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if format == "json":
        processors.append(structlog.processors.JSONRenderer())
    elif format == "daemon":
        processors.append(DaemonLineRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    return processors


def configure_logging(
    level: str = "INFO",
    format: LogFormat = "console",  # noqa: A002
    file_path: Path | None = None,
) -> None:
    """Configure APEX structured logging.

    This should be called once at process startup before any logging occurs.

    Args:
        level: Minimum log level to capture (``warn`` is accepted for WARNING).
        format: Output format - "console" for human-readable stderr output,
            "json" for structured lines, "daemon" for the daemon log format.
        file_path: Optional file to append to. When omitted, console and
            daemon output go to stderr and JSON goes to stdout.

    Raises:
        ValueError: If the level or format name is unknown.
    """

    log_level = getattr(logging, normalize_level(level))
    if format not in ("json", "console", "daemon"):
        raise ValueError(f"Unknown log format: {format}")

    handler: logging.Handler
    if file_path is not None:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        # Append-only: readers treat a shrinking file as rotation.
        handler = logging.FileHandler(file_path, mode="a", encoding="utf-8")
    elif format == "json":
        handler = logging.StreamHandler(sys.stdout)
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
        existing.close()
    root_logger.addHandler(handler)

    # Loggers are not cached so ApexLogger instances created at import time
    # follow a later reconfiguration.
    structlog.configure(
        processors=_get_processors(format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str, **initial_context: Any) -> ApexLogger:
    """Get an APEX logger for a component.

    Args:
        component: The component name (e.g., "daemon", "supervisor").
        **initial_context: Additional context to bind.

    Returns:
        An ApexLogger instance bound to the component.
    """
    return ApexLogger(component, **initial_context)


__all__ = [
    "ApexLogger",
    "DAEMON_LEVEL_NAMES",
    "DaemonLineRenderer",
    "SENSITIVE_PATTERNS",
    "configure_logging",
    "format_log_timestamp",
    "get_default_log_path",
    "get_logger",
    "normalize_level",
]
