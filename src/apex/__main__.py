"""Allow ``python -m apex`` to invoke the CLI."""

from apex.cli import app

if __name__ == "__main__":
    app()
