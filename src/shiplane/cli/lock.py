"""Lock/unlock command implementation.

Locks are written to the shared store, so a running orchestrator refuses
promotions into the environment from its next promotion on.

Example:
    $ shiplane lock --env production --reason "Incident #123"
    $ shiplane unlock --env production
"""

from __future__ import annotations

import asyncio
import os
from datetime import datetime, timezone

import click
import structlog

from shiplane.cli.utils import dump_json, fail, info, load_config, run_with_store, success
from shiplane.errors import ConfigurationError, ReleaseError
from shiplane.schemas.promotion import EnvironmentLock, ReleaseConfig
from shiplane.webhooks import WebhookNotifier

logger = structlog.get_logger(__name__)


def _get_operator() -> str:
    """Operator identity from SHIPLANE_OPERATOR or $USER."""
    return os.environ.get("SHIPLANE_OPERATOR") or os.environ.get("USER") or "unknown"


def _check_environment(config: ReleaseConfig, environment: str) -> None:
    if config.get_environment(environment) is None:
        raise ConfigurationError(f"unknown environment '{environment}'")


def _notify(config: ReleaseConfig, event_type: str, event_data: dict[str, str | None]) -> None:
    if not config.webhooks:
        return
    try:
        asyncio.run(WebhookNotifier(config.webhooks).notify_all(event_type, event_data))
    except Exception as e:
        logger.error("webhook_notification_error", event_type=event_type, error=str(e))


_output_option = click.option(
    "--output",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
_operator_option = click.option(
    "--operator",
    "-o",
    default=None,
    help="Operator identity. Defaults to $SHIPLANE_OPERATOR, $USER or 'unknown'.",
    metavar="IDENTITY",
)


@click.command(
    name="lock",
    help="Lock an environment to prevent promotions.",
    epilog="""
Exit Codes:
    0  - Success
    2  - Configuration error (unknown environment)
""",
)
@click.option("--env", "environment", required=True, help="Environment to lock.", metavar="ENV")
@click.option("--reason", "-r", required=True, help="Reason for locking.", metavar="REASON")
@_operator_option
@_output_option
@click.pass_context
def lock_command(
    ctx: click.Context,
    environment: str,
    reason: str,
    operator: str | None,
    output: str,
) -> None:
    """Lock an environment to prevent promotions."""
    config = load_config(ctx.obj.get("config_path"))
    resolved_operator = operator or _get_operator()
    lock = EnvironmentLock(
        locked=True,
        reason=reason,
        locked_by=resolved_operator,
        locked_at=datetime.now(timezone.utc),
    )
    logger.info("lock_command_started", environment=environment, operator=resolved_operator)

    try:
        _check_environment(config, environment)
        run_with_store(config, lambda store: store.save_lock(environment, lock))
    except ReleaseError as e:
        fail(e, output)

    _notify(
        config,
        "lock",
        {
            "environment": environment,
            "reason": reason,
            "operator": resolved_operator,
            "timestamp": lock.locked_at.isoformat() if lock.locked_at else None,
        },
    )
    if output == "json":
        payload = {"status": "locked", "environment": environment, **lock.model_dump(mode="json")}
        click.echo(dump_json(payload))
    else:
        success(f"Environment '{environment}' locked")
        info(f"  Reason:    {reason}")
        info(f"  Locked by: {resolved_operator}")


@click.command(
    name="unlock",
    help="Unlock an environment to allow promotions.",
    epilog="""
Exit Codes:
    0  - Success
    2  - Configuration error (unknown environment)
""",
)
@click.option("--env", "environment", required=True, help="Environment to unlock.", metavar="ENV")
@_operator_option
@_output_option
@click.pass_context
def unlock_command(
    ctx: click.Context,
    environment: str,
    operator: str | None,
    output: str,
) -> None:
    """Remove the runtime lock of an environment."""
    config = load_config(ctx.obj.get("config_path"))
    resolved_operator = operator or _get_operator()

    try:
        _check_environment(config, environment)
        run_with_store(config, lambda store: store.save_lock(environment, None))
    except ReleaseError as e:
        fail(e, output)

    _notify(
        config,
        "unlock",
        {
            "environment": environment,
            "operator": resolved_operator,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
    if output == "json":
        click.echo(dump_json({"status": "unlocked", "environment": environment}))
    else:
        success(f"Environment '{environment}' unlocked")


__all__ = ["lock_command", "unlock_command"]
