# apex/cli/commands: Command groups for the APEX CLI.
#
# Each module provides one Typer sub-app.

from .daemon import daemon_app
from .service import service_app

__all__ = [
    # daemon.py
    "daemon_app",
    # service.py
    "service_app",
]
