"""APEX daemon supervisor.

Starts, stops and monitors the long-running APEX task worker for a project,
throttles work with a time-of-day capacity scheduler, and exposes health
reports and log tailing through the ``apex`` CLI.
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
