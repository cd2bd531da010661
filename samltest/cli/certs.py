"""Signing certificate CLI commands."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import click

from samltest.cli import get_app_config, get_engine, json_option, output_result, saml_errors

if TYPE_CHECKING:
    from samltest.core.crypto.certs import CertificateInfo


@click.group()
def certs() -> None:
    """Manage the SAML signing key and certificate.

    The platform signs AuthnRequests and Responses with one RSA key and a
    self-signed certificate. They are generated on first run and stored in
    the database; the PEM files in the certificate directory seed new
    databases.
    """


@certs.command("generate")
@click.option("--common-name", "-cn", default="localhost", show_default=True, help="Certificate subject CN")
@click.option("--days", "-d", type=int, default=3650, show_default=True, help="Validity period in days")
@click.option(
    "--output",
    "-o",
    type=click.Path(file_okay=False, path_type=Path),  # type: ignore[type-var]
    help="Target directory (default: configured certificate directory)",
)
@click.option("--force", "-f", is_flag=True, help="Replace an existing key pair")
@click.pass_context
def certs_generate(ctx: click.Context, common_name: str, days: int, output: Path | None, force: bool) -> None:
    """Write a new RSA-2048 key and self-signed certificate as PEM files.

    Only the files change. A database that already stores signing material
    keeps signing with it; the files seed databases created afterwards.

    Examples:

        samltest certs generate --common-name sso.test

        samltest certs generate --output ./certs --force
    """
    from samltest.core.crypto.certs import (
        CERT_FILENAME,
        KEY_FILENAME,
        generate_private_key,
        generate_self_signed_certificate,
        get_cert_dir,
        get_certificate_info,
        save_certificate,
        save_private_key,
    )

    target = output or get_app_config(ctx).saml.cert_dir or get_cert_dir()
    key_path, cert_path = target / KEY_FILENAME, target / CERT_FILENAME
    existing = [path.name for path in (key_path, cert_path) if path.exists()]
    if existing and not force:
        raise click.ClickException(
            f"Signing material already exists in {target} ({', '.join(existing)}); pass --force to replace"
        )

    private_key = generate_private_key()
    cert = generate_self_signed_certificate(private_key, common_name=common_name, days_valid=days)
    save_private_key(private_key, key_path)
    save_certificate(cert, cert_path)

    click.echo(f"Wrote {cert_path} and {key_path}")
    _echo_certificate(get_certificate_info(cert))


def _echo_certificate(info: CertificateInfo) -> None:
    click.echo(f"  Subject:     {info.subject}")
    click.echo(f"  Serial:      {info.serial_number}")
    click.echo(f"  Not before:  {info.not_before:%Y-%m-%d %H:%M:%S} UTC")
    click.echo(f"  Not after:   {info.not_after:%Y-%m-%d %H:%M:%S} UTC")
    click.echo(f"  Key size:    {info.key_size} bits")
    click.echo(f"  Fingerprint: {info.fingerprint_sha256}")
    if info.is_self_signed:
        click.echo(click.style("  Self-signed", fg="yellow"))


@certs.command("show")
@click.option("--pem", is_flag=True, help="Print the certificate PEM")
@json_option
@click.pass_context
def certs_show(ctx: click.Context, pem: bool, output_json: bool) -> None:
    """Show the certificate this platform signs with."""
    from samltest.core.crypto.certs import get_certificate_info, load_certificate_pem

    engine = get_engine(ctx)
    with saml_errors(output_json):
        info = get_certificate_info(load_certificate_pem(engine.signing.certificate_pem))

    if output_json:
        data = info.to_dict()
        if pem:
            data["pem"] = engine.signing.certificate_pem
        output_result(data, as_json=True)
        return

    click.echo("Signing certificate:")
    _echo_certificate(info)
    if pem:
        click.echo("")
        click.echo(engine.signing.certificate_pem.rstrip())


@certs.command("fingerprint")
@click.argument("cert_path", type=click.Path(exists=True, path_type=Path))  # type: ignore[type-var]
def certs_fingerprint(cert_path: Path) -> None:
    """Print the SHA-256 fingerprint of a PEM or base64 certificate file."""
    from samltest.core.crypto.certs import fingerprint

    value = fingerprint(cert_path.read_text())
    if not value:
        raise click.ClickException(f"Not a certificate: {cert_path}")
    click.echo(value)
