"""Status command implementation.

Shows the live deployment of a service in an environment: active and
candidate images, strategy state, traffic weights, instance counts and
the environment's lock state.

Example:
    $ shiplane status --env production --service web
    $ shiplane status --env production --service web --output json
"""

from __future__ import annotations

import click

from shiplane.cli.utils import dump_json, fail, info, load_config, run_with_store
from shiplane.errors import DeploymentNotFoundError, ReleaseError
from shiplane.schemas.deployment import Deployment
from shiplane.schemas.promotion import EnvironmentLock, ReleaseConfig
from shiplane.store.repository import SqlReleaseStore


def _format_status_table(deployment: Deployment, lock: EnvironmentLock | None) -> str:
    lines = [
        "",
        f"Deployment: {deployment.deployment_id}",
        "=" * 50,
        f"Active image:    {deployment.active_image.reference} ({deployment.active_image.tag})",
        f"State:           {deployment.strategy_state.value}",
        f"Instances:       {deployment.instance_count} "
        f"(desired {deployment.desired_instance_count}, "
        f"bounds {deployment.min_instances}-{deployment.max_instances})",
    ]
    if deployment.candidate_image is not None:
        step = ""
        if deployment.canary_step is not None:
            step = f", canary step {deployment.canary_step}"
        lines.append(f"Candidate image: {deployment.candidate_image.reference}{step}")
    if deployment.traffic_weights:
        weights = ", ".join(
            f"{set_id}={weight}%" for set_id, weight in sorted(deployment.traffic_weights.items())
        )
        lines.append(f"Traffic:         {weights}")
    if deployment.reason:
        lines.append(f"Last reason:     {deployment.reason}")
    if deployment.is_degraded:
        lines.append("WARNING: deployment is degraded and requires manual intervention")
    if lock is not None and lock.locked:
        lines.append(f"Environment locked by {lock.locked_by or 'unknown'}: {lock.reason}")
    lines.append(f"Updated:         {deployment.updated_at.isoformat()}")
    lines.append("")
    return "\n".join(lines)


def _effective_lock(
    config: ReleaseConfig, environment: str, stored: EnvironmentLock | None
) -> EnvironmentLock | None:
    if stored is not None and stored.locked:
        return stored
    env = config.get_environment(environment)
    return env.lock if env is not None else None


@click.command(
    name="status",
    help="Show the live deployment of a service in an environment.",
    epilog="""
Exit Codes:
    0  - Success
    2  - Configuration error
    3  - Deployment not found
""",
)
@click.option("--env", "environment", required=True, help="Environment name.", metavar="ENV")
@click.option("--service", "-s", required=True, help="Service name.", metavar="SERVICE")
@click.option(
    "--output",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
@click.pass_context
def status_command(ctx: click.Context, environment: str, service: str, output: str) -> None:
    """Show the live deployment of a service in an environment."""
    config = load_config(ctx.obj.get("config_path"))
    if output == "table":
        info(f"Querying {service} in {environment}")

    async def _query(store: SqlReleaseStore) -> tuple[Deployment, EnvironmentLock | None]:
        deployment = await store.get_deployment(environment, service)
        if deployment is None:
            raise DeploymentNotFoundError(environment, service)
        return deployment, await store.get_lock(environment)

    try:
        deployment, stored_lock = run_with_store(config, _query)
    except ReleaseError as e:
        fail(e, output)

    lock = _effective_lock(config, environment, stored_lock)
    if output == "json":
        click.echo(
            dump_json(
                {
                    "deployment": deployment.model_dump(mode="json"),
                    "lock": lock.model_dump(mode="json") if lock is not None else None,
                }
            )
        )
    else:
        click.echo(_format_status_table(deployment, lock))


__all__ = ["status_command"]
