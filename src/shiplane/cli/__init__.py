"""Command-line interface for shiplane."""

from __future__ import annotations

from shiplane.cli.main import cli, main

__all__ = ["cli", "main"]
