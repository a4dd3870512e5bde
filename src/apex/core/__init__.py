"""Core infrastructure shared by the daemon and the CLI."""
