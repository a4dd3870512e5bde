"""Daemon state artifact (``.apex/daemon-state.json``).

The daemon is the only writer; the CLI only reads.  Writes go through a
temporary file followed by ``os.replace`` so a reader sees either the old
or the new document.  Readers that still observe a malformed document
retry once before reporting it as unavailable.
"""

from __future__ import annotations

import json
import os
import time
from pathlib import Path

from pydantic import ValidationError

from apex.core.constants import STATE_READ_RETRY_DELAY_SECONDS
from apex.core.logging import get_logger
from apex.daemon.exceptions import StateUnavailableError
from apex.daemon.types import DaemonState

_logger = get_logger("daemon.state")


class DaemonStateStore:
    """Atomic JSON persistence of ``DaemonState``."""

    def __init__(self, state_file: Path) -> None:
        self._path = state_file

    @property
    def path(self) -> Path:
        return self._path

    def write(self, state: DaemonState) -> None:
        """Replace the state file with ``state``."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(f"{self._path.name}.{os.getpid()}.tmp")
        try:
            tmp.write_text(state.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp, self._path)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise

    def read(self) -> DaemonState | None:
        """Read the state file.

        Returns:
            The state, or ``None`` if the daemon has not written one yet.

        Raises:
            StateUnavailableError: If the document is malformed or unreadable.
        """
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StateUnavailableError(
                f"Cannot read daemon state {self._path}: {e}", cause=e,
            ) from e

        try:
            return DaemonState.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            raise StateUnavailableError(
                f"Daemon state {self._path} is malformed", cause=e,
            ) from e

    def read_with_retry(self) -> DaemonState | None:
        """Read, retrying once on a transiently malformed document."""
        try:
            return self.read()
        except StateUnavailableError:
            _logger.debug("state.read_retry", path=str(self._path))
            time.sleep(STATE_READ_RETRY_DELAY_SECONDS)
            return self.read()


__all__ = ["DaemonStateStore"]
