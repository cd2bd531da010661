"""Audit log CLI commands."""

from __future__ import annotations

import click

from samltest.cli import get_engine, json_option, output_result, saml_errors

STATUS_COLORS = {"success": "green", "failure": "red", "initiated": "cyan"}


@click.group()
def logs() -> None:
    """Inspect the SAML audit log."""
    pass


@logs.command("list")
@click.option("--limit", "-n", type=int, default=20, help="Number of entries to show")
@click.option("--offset", type=int, default=0, help="Entries to skip")
@click.option("--event-type", default=None, help="Filter by event type (e.g. acs, sp_login)")
@click.option(
    "--status",
    type=click.Choice(["initiated", "success", "failure"]),
    default=None,
    help="Filter by status",
)
@json_option
@click.pass_context
def logs_list(
    ctx: click.Context,
    limit: int,
    offset: int,
    event_type: str | None,
    status: str | None,
    output_json: bool,
) -> None:
    """Show recent protocol events, newest first."""
    engine = get_engine(ctx)
    with saml_errors(output_json):
        entries, total = engine.audit.list(
            limit=limit, offset=offset, event_type=event_type, status=status
        )

    if output_json:
        output_result({"logs": [entry.to_dict() for entry in entries], "total": total}, as_json=True)
        return

    if not entries:
        click.echo("No log entries.")
        return

    for entry in entries:
        created = entry.created_at.strftime("%Y-%m-%d %H:%M:%S") if entry.created_at else "-"
        status_text = click.style(f"{entry.status:<9}", fg=STATUS_COLORS.get(entry.status))
        click.echo(f"{entry.id:>5}  {created}  {entry.event_type:<15}  {status_text}  {entry.entity_id}")
        if error := (entry.details or {}).get("error"):
            click.echo(f"       {error}")
    click.echo("")
    click.echo(f"Showing {len(entries)} of {total} entries")


@logs.command("clear")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def logs_clear(ctx: click.Context, yes: bool) -> None:
    """Delete every audit log entry."""
    if not yes:
        click.confirm("Delete all audit log entries?", abort=True)
    engine = get_engine(ctx)
    with saml_errors():
        count = engine.audit.clear()
    click.echo(f"Deleted {count} log entries")
