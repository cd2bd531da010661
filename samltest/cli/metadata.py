"""Metadata and entity registry CLI commands."""

from __future__ import annotations

from pathlib import Path

import click

from samltest.cli import get_engine, json_option, output_result, saml_errors


@click.group()
def metadata() -> None:
    """Import, list and export SAML metadata."""
    pass


@metadata.command("import")
@click.argument(
    "metadata_file",
    required=False,
    type=click.Path(exists=True, path_type=Path),  # type: ignore[type-var]
)
@click.option("--url", help="Fetch the metadata from this URL instead of a file")
@click.option(
    "--type",
    "entity_type",
    type=click.Choice(["SP", "IDP"], case_sensitive=False),
    required=True,
    help="Role to register the entity as",
)
@json_option
@click.pass_context
def metadata_import(
    ctx: click.Context,
    metadata_file: Path | None,
    url: str | None,
    entity_type: str,
    output_json: bool,
) -> None:
    """Register an SP or IdP from its metadata.

    Re-importing an entity ID replaces the stored entity and reactivates it.

    Examples:

        samltest metadata import idp-metadata.xml --type IDP

        samltest metadata import --url https://idp.example/metadata --type IDP
    """
    if (metadata_file is None) == (url is None):
        raise click.UsageError("Give either METADATA_FILE or --url")

    engine = get_engine(ctx)
    with saml_errors(output_json):
        if metadata_file is not None:
            result = engine.import_metadata(metadata_file.read_text(), entity_type.upper())
        else:
            result = engine.import_metadata_url(str(url), entity_type.upper())

    entity = result.entity
    if output_json:
        output_result({**entity.to_dict(), "certificateFingerprints": result.fingerprints}, as_json=True)
        return

    click.echo(f"Imported {entity.type} {entity.entity_id} (id {entity.id})")
    if entity.sso_url:
        click.echo(f"  SSO URL: {entity.sso_url}")
    for acs_url in entity.acs_urls or []:
        click.echo(f"  ACS URL: {acs_url}")
    for value in result.fingerprints:
        click.echo(f"  Certificate: {value}")


@metadata.command("list")
@click.option(
    "--type",
    "entity_type",
    type=click.Choice(["SP", "IDP"], case_sensitive=False),
    default=None,
    help="Only list entities of this role",
)
@json_option
@click.pass_context
def metadata_list(ctx: click.Context, entity_type: str | None, output_json: bool) -> None:
    """List registered entities."""
    engine = get_engine(ctx)
    with saml_errors(output_json):
        entities = engine.registry.list(entity_type=entity_type.upper() if entity_type else None)

    if output_json:
        output_result([entity.to_dict() for entity in entities], as_json=True)
        return

    if not entities:
        click.echo("No entities registered.")
        return

    for entity in entities:
        status = click.style("active", fg="green") if entity.active else click.style("inactive", fg="yellow")
        click.echo(f"{entity.id:>4}  {entity.type:<4}  {status:<8}  {entity.entity_id}")


@metadata.command("export")
@click.argument("role", type=click.Choice(["sp", "idp"], case_sensitive=False))
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),  # type: ignore[type-var]
    help="Write to this file instead of stdout",
)
@click.pass_context
def metadata_export(ctx: click.Context, role: str, output: Path | None) -> None:
    """Export this platform's SP or IdP metadata."""
    engine = get_engine(ctx)
    xml = engine.sp_metadata() if role.lower() == "sp" else engine.idp_metadata()

    if output is None:
        click.echo(xml, nl=False)
        return
    output.write_text(xml)
    click.echo(f"{role.upper()} metadata written to: {output}")


@metadata.command("toggle")
@click.argument("entity_pk", type=int)
@click.pass_context
def metadata_toggle(ctx: click.Context, entity_pk: int) -> None:
    """Activate or deactivate an entity."""
    engine = get_engine(ctx)
    with saml_errors():
        entity = engine.registry.toggle_active(entity_pk)
    click.echo(f"{entity.entity_id} is now {'active' if entity.active else 'inactive'}")


@metadata.command("delete")
@click.argument("entity_pk", type=int)
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def metadata_delete(ctx: click.Context, entity_pk: int, yes: bool) -> None:
    """Delete an entity."""
    engine = get_engine(ctx)
    with saml_errors():
        entity = engine.registry.get_by_id(entity_pk)
        if not yes:
            click.confirm(f"Delete {entity.type} {entity.entity_id}?", abort=True)
        engine.registry.delete(entity_pk)
    click.echo(f"Deleted {entity.entity_id}")
