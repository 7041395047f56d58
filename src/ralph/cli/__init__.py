"""ralph command-line interface."""

from ralph.cli.app import app

__all__ = ["app"]
