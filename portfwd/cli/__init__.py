"""Command line interface for portfwd."""

from portfwd.cli import main
from portfwd.cli.main import cli

__all__ = ["cli", "main"]
