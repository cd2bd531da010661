"""CLI entry point for the SAML test platform."""

from pathlib import Path

import click

from samltest import __version__
from samltest.cli import certs as certs_commands
from samltest.cli import get_app_config, get_engine
from samltest.cli import logs as logs_commands
from samltest.cli import metadata as metadata_commands


@click.group()
@click.version_option(version=__version__, prog_name="samltest")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),  # type: ignore[type-var]
    default=None,
    help="Path to config.yaml (default: ~/.samltest/config.yaml)",
)
@click.option(
    "--log-level",
    type=click.Choice(["ERROR", "INFO", "DEBUG", "TRACE"], case_sensitive=False),
    default=None,
    help="Override the configured log level",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, log_level: str | None) -> None:
    """samltest - SAML 2.0 SSO Testing Platform (SP and IdP)."""
    from samltest.core.logging import configure_logging

    ctx.ensure_object(dict)
    if config_path is not None:
        ctx.obj["config_path"] = config_path

    app_config = get_app_config(ctx)
    level = log_level or app_config.logging.level
    configure_logging(
        level,
        trace_enabled=level.upper() == "TRACE",
        log_file=str(app_config.logging.file) if app_config.logging.file else None,
    )


@cli.command()
@click.option(
    "--force",
    is_flag=True,
    help="Rewrite the config file with defaults.",
)
@click.pass_context
def init(ctx: click.Context, force: bool) -> None:
    """Initialize configuration, database and signing material.

    Existing signing material is kept; use 'samltest certs generate --force'
    to replace it.
    """
    from samltest.core.config import DEFAULT_CONFIG_FILE, get_default_config_yaml

    config_file: Path = ctx.obj.get("config_path") or DEFAULT_CONFIG_FILE
    if force or not config_file.exists():
        config_file.parent.mkdir(parents=True, exist_ok=True)
        config_file.write_text(get_default_config_yaml())
        click.echo(f"Config file written to: {config_file}")
    else:
        click.echo(f"Using existing config file: {config_file}")

    engine = get_engine(ctx)

    click.echo(f"Database: {engine.db.path}")
    click.echo("")
    click.echo("SAML test platform initialized successfully!")
    click.echo("")
    click.echo(f"  Entity ID:   {engine.entity_id}")
    click.echo(f"  ACS URL:     {engine.settings.acs_url}")
    click.echo(f"  SSO URL:     {engine.settings.sso_url}")
    click.echo(f"  Fingerprint: {engine.signing.fingerprint}")
    click.echo("")
    click.echo("Next steps:")
    click.echo("  1. Run 'samltest metadata export sp' and register it with your IdP")
    click.echo("  2. Run 'samltest metadata import <file> --type IDP' to trust the IdP")
    click.echo("  3. Run 'samltest serve' and open /saml/login?idpEntityId=<entity>")


@cli.command()
@click.option(
    "--host",
    "-h",
    default=None,
    help="Host to bind to (default: from config or 127.0.0.1)",
)
@click.option(
    "--port",
    "-p",
    type=int,
    default=None,
    help="Port to bind to (default: from config or 3001)",
)
@click.option(
    "--debug",
    is_flag=True,
    help="Enable debug mode",
)
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, debug: bool) -> None:
    """Start the SAML test platform web server.

    Examples:

        # Start with the configured host and port
        samltest serve

        # Start on a custom port
        samltest serve --port 8080
    """
    from samltest.app import run_server

    app_config = get_app_config(ctx)
    if debug:
        app_config.server.debug = True

    run_server(app_config, host=host, port=port)


cli.add_command(certs_commands.certs)
cli.add_command(metadata_commands.metadata)
cli.add_command(logs_commands.logs)
