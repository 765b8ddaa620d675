"""Main entry point for the shiplane CLI.

Commands:
    shiplane validate: Validate the release configuration
    shiplane history: Promotion history of a service
    shiplane status: Live deployment of a service in an environment
    shiplane lock / unlock: Environment locks

Example:
    $ shiplane --help
    $ shiplane --config release.yaml status --env production --service web
"""

from __future__ import annotations

import sys
from importlib.metadata import version as get_version
from pathlib import Path

import click

from shiplane.cli.history import history_command
from shiplane.cli.lock import lock_command, unlock_command
from shiplane.cli.status import status_command
from shiplane.cli.validate import validate_command
from shiplane.config import CONFIG_ENV_VAR
from shiplane.telemetry.logging import configure_logging


def _get_version() -> str:
    """Get the shiplane package version, or 'unknown' if not installed."""
    try:
        return get_version("shiplane")
    except Exception:
        return "unknown"


@click.group(
    name="shiplane",
    help="shiplane - Release orchestration and autoscaling.",
    epilog="Use 'shiplane <command> --help' for command-specific help.",
    context_settings={
        "help_option_names": ["-h", "--help"],
    },
)
@click.version_option(
    version=_get_version(),
    prog_name="shiplane",
    message="%(prog)s %(version)s",
)
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar=CONFIG_ENV_VAR,
    default=None,
    help=f"Release configuration file (default: ${CONFIG_ENV_VAR} or ./release.yaml).",
    metavar="PATH",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Log level of the structured logs written to stderr.",
)
@click.option("--json-logs/--console-logs", default=False, help="Log format.")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, log_level: str, json_logs: bool) -> None:
    """Root command group for the shiplane CLI."""
    configure_logging(log_level, json_output=json_logs)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


cli.add_command(validate_command)
cli.add_command(history_command)
cli.add_command(status_command)
cli.add_command(lock_command)
cli.add_command(unlock_command)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the shiplane CLI.

    Args:
        argv: Command-line arguments (uses sys.argv if None).
    """
    try:
        cli(args=argv, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
