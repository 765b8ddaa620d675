"""CLI utility functions and error handling.

This module provides shared utilities for the shiplane CLI:
- Exit code constants aligned with ``ReleaseError.exit_code``
- Output helpers for consistent stderr/stdout usage
- Async command execution against the configured store

Errors go to stderr as plain text with a non-zero exit code so the CLI
composes with CI/CD pipelines.

Example:
    from shiplane.cli.utils import error_exit, ExitCode

    if deployment is None:
        error_exit("Deployment not found", exit_code=ExitCode.NOT_FOUND, env="dev")
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from enum import IntEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import click

from shiplane.config import load_release_config
from shiplane.errors import ReleaseError
from shiplane.schemas.promotion import ReleaseConfig
from shiplane.store.repository import SqlReleaseStore

if TYPE_CHECKING:
    from typing import NoReturn

T = TypeVar("T")


class ExitCode(IntEnum):
    """Standard exit codes for CLI commands.

    Values match the ``exit_code`` of the corresponding ReleaseError
    subclasses.
    """

    SUCCESS = 0
    """Command completed successfully."""

    GENERAL_ERROR = 1
    """General error (catch-all for failures)."""

    CONFIGURATION_ERROR = 2
    """Configuration file missing or invalid."""

    NOT_FOUND = 3
    """Image, deployment or promotion not found."""

    ENVIRONMENT_LOCKED = 4
    """Target environment is locked."""

    PROVISIONER_UNAVAILABLE = 5
    """Provisioner or other remote service unavailable."""

    VERIFICATION_FAILED = 6
    """Health checks or canary analysis failed."""

    DEGRADED = 7
    """Deployment degraded; manual intervention required."""


def error(message: str, **context: str | int | bool | None) -> None:
    """Print an error message to stderr.

    Example:
        error("Deployment not found", env="dev")
        # Output: Error: Deployment not found (env=dev)
    """
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        full_message = f"Error: {message} ({context_str})"
    else:
        full_message = f"Error: {message}"

    click.echo(full_message, err=True)


def error_exit(
    message: str,
    exit_code: ExitCode = ExitCode.GENERAL_ERROR,
    **context: str | int | bool | None,
) -> NoReturn:
    """Print an error message to stderr and exit with a code.

    Raises:
        SystemExit: Always exits with the specified code.
    """
    error(message, **context)
    sys.exit(exit_code)


def success(message: str) -> None:
    """Print a success message to stdout."""
    click.echo(message)


def info(message: str) -> None:
    """Print an informational message to stderr.

    Used for progress updates that should not be captured by stdout
    redirection (JSON output stays parseable).
    """
    click.echo(message, err=True)


def fail(exc: ReleaseError, output: str) -> NoReturn:
    """Report a ReleaseError in the requested output format and exit.

    Raises:
        SystemExit: With the error's exit code.
    """
    if output == "json":
        click.echo(json.dumps({"error": str(exc), "exit_code": exc.exit_code}))
    else:
        error(str(exc))
    sys.exit(exc.exit_code)


def load_config(path: Path | None) -> ReleaseConfig:
    """Load the release configuration, exiting with CONFIGURATION_ERROR on failure."""
    try:
        return load_release_config(path)
    except ReleaseError as e:
        error_exit(str(e), exit_code=ExitCode.CONFIGURATION_ERROR)


def run_with_store(
    config: ReleaseConfig, operation: Callable[[SqlReleaseStore], Awaitable[T]]
) -> T:
    """Run ``operation`` against the configured SQL store and close it afterwards."""

    async def _run() -> T:
        store = SqlReleaseStore.from_url(config.store_url)
        try:
            await store.create_schema()
            return await operation(store)
        finally:
            await store.close()

    return asyncio.run(_run())


def dump_json(data: Any) -> str:
    """Serialize command output as indented JSON."""
    return json.dumps(data, indent=2, default=str)


__all__ = [
    "ExitCode",
    "dump_json",
    "error",
    "error_exit",
    "fail",
    "info",
    "load_config",
    "run_with_store",
    "success",
]
