"""PID file store: the durable proof that a daemon owns a project.

Two files live side by side in ``.apex/``:

- ``daemon.pid`` holds a JSON ``PidRecord`` (pid, startedAt, projectPath,
  version).  It is written by write-temp-then-rename, so readers never see
  a half-written record on POSIX filesystems.
- ``daemon.pid.lock`` is a create-exclusive start lock containing the PID of
  the process that holds it.  It serializes concurrent starters, which are
  separate OS processes and cannot share an in-memory mutex.

A PID record pointing at a dead process is stale and treated as absent
when acquiring.  A record that cannot be parsed is reported as corrupted
and is left in place; only ``remove()`` (used by a forced stop) deletes it.
"""

from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from apex import __version__
from apex.core.constants import PID_LOCK_SUFFIX, STATE_READ_RETRY_DELAY_SECONDS
from apex.core.logging import get_logger
from apex.daemon.exceptions import (
    DaemonAlreadyRunningError,
    DaemonError,
    DaemonPermissionError,
    LockFailedError,
    PidFileCorruptedError,
)
from apex.daemon.system_probe import SystemProbe
from apex.daemon.types import PidRecord

_logger = get_logger("daemon.pidfile")


@dataclass(frozen=True)
class LockHandle:
    """Proof of holding the start lock; pass it back to ``release``."""

    lock_file: Path
    owner_pid: int


class PidFileStore:
    """Reads, writes and locks the daemon PID file of one project."""

    def __init__(self, pid_file: Path) -> None:
        self._pid_file = pid_file
        self._lock_file = pid_file.with_name(pid_file.name + PID_LOCK_SUFFIX)

    @property
    def pid_file(self) -> Path:
        return self._pid_file

    @property
    def lock_file(self) -> Path:
        return self._lock_file

    # ─── Reading ──────────────────────────────────────────────────────

    def read(self) -> PidRecord | None:
        """Read the PID record.

        Returns:
            The record, or ``None`` when no PID file exists.

        Raises:
            PidFileCorruptedError: If the file is not a valid record.
            DaemonPermissionError: If the file cannot be read.
        """
        try:
            raw = self._pid_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except PermissionError as e:
            raise DaemonPermissionError(
                f"Cannot read PID file {self._pid_file}: {e}", cause=e,
            ) from e

        try:
            return PidRecord.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            raise PidFileCorruptedError(
                f"PID file {self._pid_file} is corrupted", cause=e,
            ) from e

    def read_with_retry(self) -> PidRecord | None:
        """Read the record, retrying once if it looks malformed.

        A concurrent writer on a filesystem without atomic rename can expose
        a partial record for a moment; a second failure is reported as
        corruption.
        """
        try:
            return self.read()
        except PidFileCorruptedError:
            time.sleep(STATE_READ_RETRY_DELAY_SECONDS)
            return self.read()

    def live_pid(self) -> int | None:
        """PID from the record if that process is alive, else None.

        Raises:
            PidFileCorruptedError: If the record cannot be parsed.
        """
        record = self.read_with_retry()
        if record is None or not SystemProbe.pid_alive(record.pid):
            return None
        return record.pid

    # ─── Locking ──────────────────────────────────────────────────────

    def acquire(self) -> LockHandle:
        """Take the start lock for this project.

        Raises:
            DaemonAlreadyRunningError: A live daemon already owns the project.
            PidFileCorruptedError: The PID file exists but cannot be parsed.
            LockFailedError: Another starter holds the lock.
            DaemonPermissionError: The daemon directory is not writable.
        """
        self._clear_stale_record()
        handle = self._create_lock() or self._reclaim_lock()

        # Another starter may have finished between the check and the lock.
        try:
            self._clear_stale_record()
        except DaemonError:
            self.release(handle)
            raise
        return handle

    def _clear_stale_record(self) -> None:
        record = self.read_with_retry()
        if record is None:
            return
        if SystemProbe.pid_alive(record.pid):
            raise DaemonAlreadyRunningError(record.pid)
        _logger.info("pidfile.stale_removed", pid=record.pid, path=str(self._pid_file))
        self._pid_file.unlink(missing_ok=True)

    def _reclaim_lock(self) -> LockHandle:
        """Take over a lock left behind by a starter that died mid-start."""
        holder = self._lock_holder()
        if holder is not None and SystemProbe.pid_alive(holder):
            raise LockFailedError(
                f"Start lock {self._lock_file} is held by PID {holder}",
            )

        # The holder died mid-start; reclaim once.
        _logger.info("pidfile.stale_lock_removed", holder=holder, path=str(self._lock_file))
        self._lock_file.unlink(missing_ok=True)
        handle = self._create_lock()
        if handle is None:
            raise LockFailedError(
                f"Lost the race for start lock {self._lock_file}",
            )
        return handle

    def release(self, handle: LockHandle) -> None:
        """Release a lock obtained from ``acquire``.

        The lock file is only removed if it still names the handle's owner.
        """
        holder = self._lock_holder()
        if holder is not None and holder != handle.owner_pid:
            _logger.warning(
                "pidfile.lock_owner_changed",
                expected=handle.owner_pid,
                actual=holder,
            )
            return
        handle.lock_file.unlink(missing_ok=True)

    def _create_lock(self) -> LockHandle | None:
        """Create the lock file exclusively; None if it already exists."""
        owner = os.getpid()
        try:
            self._lock_file.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(
                str(self._lock_file),
                os.O_CREAT | os.O_EXCL | os.O_WRONLY,
                0o644,
            )
        except FileExistsError:
            return None
        except PermissionError as e:
            raise DaemonPermissionError(
                f"Cannot create start lock {self._lock_file}: {e}", cause=e,
            ) from e
        try:
            os.write(fd, str(owner).encode("ascii"))
        finally:
            os.close(fd)
        return LockHandle(lock_file=self._lock_file, owner_pid=owner)

    def _lock_holder(self) -> int | None:
        try:
            return int(self._lock_file.read_text(encoding="ascii").strip())
        except (FileNotFoundError, ValueError, UnicodeDecodeError):
            return None

    # ─── Writing ──────────────────────────────────────────────────────

    def write(
        self,
        handle: LockHandle,
        pid: int,
        started_at: datetime | None = None,
        project_path: Path | None = None,
    ) -> PidRecord:
        """Atomically write the PID record while holding the start lock.

        Raises:
            DaemonPermissionError: If the record cannot be written.
        """
        if handle.lock_file != self._lock_file:
            raise ValueError("Lock handle belongs to a different PID file")

        record = PidRecord(
            pid=pid,
            started_at=started_at or datetime.now(UTC),
            project_path=project_path,
            version=__version__,
        )
        tmp = self._pid_file.with_name(f"{self._pid_file.name}.{os.getpid()}.tmp")
        try:
            tmp.write_text(
                record.model_dump_json(by_alias=True, exclude_none=True),
                encoding="utf-8",
            )
            os.replace(tmp, self._pid_file)
        except PermissionError as e:
            tmp.unlink(missing_ok=True)
            raise DaemonPermissionError(
                f"Cannot write PID file {self._pid_file}: {e}", cause=e,
            ) from e
        _logger.debug("pidfile.written", pid=pid, path=str(self._pid_file))
        return record

    def remove(self) -> None:
        """Delete the PID file (stop path, including forced clears)."""
        self._pid_file.unlink(missing_ok=True)


__all__ = ["LockHandle", "PidFileStore"]
