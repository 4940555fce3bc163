"""Entry point for ``python -m taskpulse``."""

from taskpulse.cli.commands import app

if __name__ == "__main__":
    app()
