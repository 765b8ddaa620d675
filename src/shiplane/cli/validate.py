"""Validate command implementation.

Loads the release configuration and prints the promotion path it
describes: environments in order with their strategy and approval gate,
and the configured services.

Example:
    $ shiplane validate
    $ shiplane --config release.yaml validate --output json
"""

from __future__ import annotations

import sys

import click
import structlog

from shiplane.cli.utils import ExitCode, dump_json, error, success
from shiplane.config import load_release_config
from shiplane.errors import ConfigurationError
from shiplane.schemas.promotion import ReleaseConfig

logger = structlog.get_logger(__name__)


def _format_config_table(config: ReleaseConfig) -> str:
    lines = ["", "Promotion path:"]
    for env in config.ordered_environments:
        gate = ", approval required" if env.approval_required else ""
        locked = ", locked" if env.lock is not None and env.lock.locked else ""
        lines.append(f"  {env.order}. {env.name}: {env.strategy.value}{gate}{locked}")
    lines.append("")
    lines.append("Services:")
    if not config.services:
        lines.append("  (none)")
    for service in config.services:
        scaling = service.autoscaling
        bounds = f"{scaling.min_instances}-{scaling.max_instances}"
        lines.append(
            f"  {service.name} <- {service.repository} "
            f"(initial {service.initial_instances}, bounds {bounds}, "
            f"autoscaling {'on' if scaling.enabled else 'off'})"
        )
    lines.append("")
    return "\n".join(lines)


@click.command(
    name="validate",
    help="Validate the release configuration.",
    epilog="""
Exit Codes:
    0  - Configuration is valid
    2  - Configuration missing or invalid
""",
)
@click.option(
    "--output",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
@click.pass_context
def validate_command(ctx: click.Context, output: str) -> None:
    """Validate the release configuration file."""
    path = ctx.obj.get("config_path")
    try:
        config = load_release_config(path)
    except ConfigurationError as e:
        logger.warning("config_invalid", path=str(path), error=e.reason)
        if output == "json":
            click.echo(dump_json({"valid": False, "error": e.reason}))
        else:
            error(str(e))
        sys.exit(ExitCode.CONFIGURATION_ERROR)

    if output == "json":
        click.echo(dump_json({"valid": True, "config": config.model_dump(mode="json")}))
    else:
        click.echo(_format_config_table(config))
        success("Configuration is valid")


__all__ = ["validate_command"]
