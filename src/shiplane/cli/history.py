"""History command implementation.

Lists the promotion audit records of a service from the configured store,
oldest first.

Example:
    $ shiplane history --service web
    $ shiplane history --service web --env production --limit 5 --output json
"""

from __future__ import annotations

import click

from shiplane.cli.utils import dump_json, fail, info, load_config, run_with_store
from shiplane.errors import ReleaseError
from shiplane.schemas.promotion import PromotionOutcome, PromotionRecord

_OUTCOME_ICONS = {
    PromotionOutcome.PENDING: "…",
    PromotionOutcome.SUCCEEDED: "✓",
    PromotionOutcome.FAILED: "✗",
    PromotionOutcome.ROLLED_BACK: "↺",
}


def _format_history_table(service: str, records: list[PromotionRecord]) -> str:
    lines = ["", f"Promotion history: {service}", "=" * 50]
    if not records:
        lines.append("  (no promotions)")
    for record in records:
        icon = _OUTCOME_ICONS[record.outcome]
        flag = " [DEGRADED]" if record.degraded else ""
        lines.append(
            f"  {icon} {record.started_at.isoformat()}  {record.to_environment:<12} "
            f"{record.image.reference}  {record.outcome.value}{flag}"
        )
        if record.reason:
            lines.append(f"      reason: {record.reason}")
        if record.approver:
            lines.append(f"      approver: {record.approver}")
    lines.append("")
    return "\n".join(lines)


@click.command(
    name="history",
    help="Show the promotion history of a service.",
    epilog="""
Exit Codes:
    0  - Success
    2  - Configuration error
""",
)
@click.option("--service", "-s", required=True, help="Service name.", metavar="SERVICE")
@click.option(
    "--env",
    "environment",
    default=None,
    help="Only show promotions into this environment.",
    metavar="ENV",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=None,
    help="Show only the most recent N records.",
    metavar="N",
)
@click.option(
    "--output",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
@click.pass_context
def history_command(
    ctx: click.Context,
    service: str,
    environment: str | None,
    limit: int | None,
    output: str,
) -> None:
    """Show the promotion history of a service."""
    config = load_config(ctx.obj.get("config_path"))
    if output == "table":
        info(f"Reading promotion history of {service}")

    try:
        records = run_with_store(config, lambda store: store.list_records(service))
    except ReleaseError as e:
        fail(e, output)

    if environment is not None:
        records = [r for r in records if r.to_environment == environment]
    if limit is not None:
        records = records[-limit:]

    if output == "json":
        click.echo(dump_json([r.model_dump(mode="json") for r in records]))
    else:
        click.echo(_format_history_table(service, records))


__all__ = ["history_command"]
