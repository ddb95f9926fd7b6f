"""
CLI module for atomdesk.

Provides a command-line interface to the repository sync engine.
"""

from atomdesk.cli.main import cli

__all__ = ["cli"]
