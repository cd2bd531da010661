"""Command-line interface for the SAML test platform."""

from __future__ import annotations

import json
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, NoReturn

import click

from samltest.core.errors import SamlError

if TYPE_CHECKING:
    from samltest.core.config import AppConfig
    from samltest.core.saml.engine import SamlEngine

# Common option for JSON output
json_option = click.option(
    "--json",
    "output_json",
    is_flag=True,
    help="Output results as JSON for scripting",
)


def output_result(data: Any, as_json: bool = False) -> None:
    """Output result as JSON.

    Args:
        data: Data to output
        as_json: If True, output as JSON
    """
    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))


def error_result(message: str, as_json: bool = False) -> NoReturn:
    """Output error message and exit.

    Args:
        message: Error message
        as_json: If True, output as JSON
    """
    if as_json:
        click.echo(json.dumps({"error": message}, indent=2), err=True)
        sys.exit(1)
    raise click.ClickException(message)


@contextmanager
def saml_errors(as_json: bool = False) -> Iterator[None]:
    """Turn platform errors into CLI errors."""
    try:
        yield
    except SamlError as e:
        error_result(f"{e.kind}: {e.message}", as_json)


def get_app_config(ctx: click.Context) -> AppConfig:
    """Load (once per invocation) the configuration selected by ``--config``."""
    from samltest.core.config import load_config

    obj = ctx.ensure_object(dict)
    if "app_config" not in obj:
        obj["app_config"] = load_config(obj.get("config_path"))
    return obj["app_config"]


def get_engine(ctx: click.Context) -> SamlEngine:
    """Build (once per invocation) the protocol engine."""
    from samltest.app import build_engine

    obj = ctx.ensure_object(dict)
    if "engine" not in obj:
        with saml_errors():
            obj["engine"] = build_engine(get_app_config(ctx))
    return obj["engine"]
