"""Command-line interface for edgeflow."""

from edgeflow.cli.app import main

__all__ = ["main"]
