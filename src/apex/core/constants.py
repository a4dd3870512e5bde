"""Global constants for APEX.

Centralizes magic numbers and file names used by both the daemon process
and the CLI, so the two sides agree on the on-disk contract.
"""

# =============================================================================
# On-disk layout (relative to the project root)
# =============================================================================

DAEMON_DIR_NAME = ".apex"
"""Per-project directory holding every daemon artifact."""

PID_FILE_NAME = "daemon.pid"
"""PID record written by the starter and removed by the stopper."""

PID_LOCK_SUFFIX = ".lock"
"""Suffix of the create-exclusive start lock placed next to the PID file."""

LOG_FILE_NAME = "daemon.log"
"""Append-only daemon log read by ``apex daemon logs``."""

OUT_LOG_FILE_NAME = "daemon.out.log"
"""Captured stdout/stderr of the detached daemon process."""

STATE_FILE_NAME = "daemon-state.json"
"""State artifact (capacity + health) written only by the daemon."""

USAGE_FILE_NAME = "usage.json"
"""Daily usage ledger written by the task engine."""

CONFIG_FILE_NAME = "config.yaml"
"""Optional project configuration file."""

# =============================================================================
# Process exit codes
# =============================================================================

EXIT_CODE_WATCHDOG = 70
"""Exit code used when the watchdog self-terminates the worker."""

EXIT_CODE_SIGKILL = 137
"""Shell-style exit code of a process killed by SIGKILL (128 + 9)."""

# =============================================================================
# Restart attribution (environment passed to a relaunched worker)
# =============================================================================

ENV_RESTART_REASON = "APEX_RESTART_REASON"
ENV_RESTART_EXIT_CODE = "APEX_RESTART_EXIT_CODE"
ENV_RESTART_WATCHDOG = "APEX_RESTART_WATCHDOG"

# =============================================================================
# Limits and defaults
# =============================================================================

RESTART_HISTORY_LIMIT = 50
"""Restart events retained by the daemon (newest first)."""

RESTART_HISTORY_DISPLAY_LIMIT = 5
"""Restart events surfaced to callers in health reports."""

DEFAULT_LOG_LINES = 20
"""Lines shown by ``apex daemon logs`` when ``--lines`` is not given."""

STATE_READ_RETRY_DELAY_SECONDS = 0.05
"""Pause before the single retry of a transiently malformed read."""

STARTUP_POLL_INTERVAL_SECONDS = 0.1
"""How often ``start`` checks whether the spawned daemon became ready."""

FORCE_KILL_WAIT_SECONDS = 5.0
"""Bound on waiting for a process to disappear after SIGKILL."""

SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 3600
MS_PER_SECOND = 1000

MIN_POLL_INTERVAL_MS = 100
"""Smallest accepted task poll interval, from config or the command line."""

PROCESS_START_TOLERANCE_SECONDS = 60.0
"""Allowed gap between a PID record's start time and the process's own start time."""
