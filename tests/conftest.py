"""Pytest fixtures for APEX tests."""

import logging
from collections.abc import Generator
from datetime import UTC, datetime
from pathlib import Path

import pytest
import structlog

from apex.daemon.config import DaemonConfig, DaemonPaths
from apex.daemon.types import (
    HealthReport,
    MemoryUsage,
    RestartEvent,
    TaskCounts,
)


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset logging state before and after each test.

    This ensures test isolation for logging configuration.
    """
    import apex.cli.helpers as helpers_module

    helpers_module.reset_logging_state()

    # Reset structlog to default state
    structlog.reset_defaults()

    # Clear all handlers from root logger
    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    original_level = root_logger.level
    for handler in original_handlers:
        root_logger.removeHandler(handler)

    yield

    helpers_module.reset_logging_state()
    structlog.reset_defaults()

    # Restore original handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()
    for handler in original_handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(original_level)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A project directory with an empty ``.apex`` directory."""
    root = tmp_path / "project"
    (root / ".apex").mkdir(parents=True)
    return root


@pytest.fixture
def paths(project: Path) -> DaemonPaths:
    return DaemonPaths.for_project(project)


@pytest.fixture
def fast_config() -> DaemonConfig:
    """Config with short timers so loop tests finish quickly."""
    return DaemonConfig.model_validate({
        "poll_interval_ms": 100,
        "start_timeout_ms": 500,
        "stop_timeout_ms": 500,
        "health_check": {"interval_ms": 100, "timeout_ms": 50, "retries": 2},
        "watchdog": {"enabled": False},
    })


@pytest.fixture
def sample_health_report() -> HealthReport:
    """Health report used by the rendering tests."""
    return HealthReport(
        uptime_ms=5_400_000,
        memory_usage=MemoryUsage(
            heap_used_bytes=52_428_800,
            heap_total_bytes=104_857_600,
            rss_bytes=125_829_120,
        ),
        task_counts=TaskCounts(processed=100, succeeded=90, failed=10, active=2),
        last_health_check=datetime(2024, 3, 1, 12, 0, tzinfo=UTC),
        health_checks_passed=9,
        health_checks_failed=1,
        restart_history=[
            RestartEvent(
                timestamp=datetime(2024, 3, 1, 11, 0, tzinfo=UTC),
                reason="oom",
                exit_code=137,
                triggered_by_watchdog=True,
            ),
            RestartEvent(
                timestamp=datetime(2024, 3, 1, 10, 0, tzinfo=UTC),
                reason="manual",
            ),
        ],
    )
