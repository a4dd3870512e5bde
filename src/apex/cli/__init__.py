"""Command-line interface for the APEX daemon.

``apex daemon ...`` drives the daemon lifecycle for one project directory
and ``apex service ...`` registers it with the OS service manager.  The
global ``--log-*`` options configure structlog for the CLI process itself;
the daemon configures its own log file.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from apex import __version__

from . import helpers as helpers
from .commands import daemon_app, service_app
from .helpers import apply_logging_options, configure_global_logging
from .output import console

app = typer.Typer(
    name="apex",
    help="Background task daemon supervisor",
    add_completion=False,
    no_args_is_help=True,
)
app.add_typer(daemon_app)
app.add_typer(service_app)


def _show_version(value: bool) -> None:
    if value:
        console.print(f"APEX v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version", "-V", callback=_show_version, is_eager=True, help="Show version and exit",
        ),
    ] = False,
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level", "-L", envvar="APEX_LOG_LEVEL",
            help="CLI log level (debug, info, warn, error)",
        ),
    ] = None,
    log_file: Annotated[
        Path | None,
        typer.Option("--log-file", envvar="APEX_LOG_FILE", help="Write CLI logs to this file"),
    ] = None,
    log_format: Annotated[
        str | None,
        typer.Option("--log-format", envvar="APEX_LOG_FORMAT", help="console or json"),
    ] = None,
) -> None:
    """APEX - background task daemon supervisor."""
    apply_logging_options(log_level, log_file, log_format)
    configure_global_logging(console)


__all__ = ["app", "console", "main"]
