"""Certificate management for the platform's SAML signing identity.

Provides the signing key/certificate lifecycle (load or generate once, never
overwrite), SHA-256 fingerprints, and PEM normalization for certificates
taken out of metadata documents.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
import re
import stat
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from samltest.core.errors import SigningMaterialUnavailable

logger = logging.getLogger(__name__)

DEFAULT_CERT_DIR = Path.home() / ".samltest" / "certs"
KEY_FILENAME = "saml-private-key.pem"
CERT_FILENAME = "saml-cert.pem"

ENV_CERT_DIR = "SAMLTEST_CERT_DIR"

KEY_SIZE = 2048
DAYS_VALID = 3650

PEM_HEADER = "-----BEGIN CERTIFICATE-----"
PEM_FOOTER = "-----END CERTIFICATE-----"
_ARMOR_RE = re.compile(r"-----(BEGIN|END) [A-Z0-9 ]+-----")


@dataclass(frozen=True)
class SigningMaterial:
    """The platform's PEM-encoded signing key and matching certificate."""

    private_key_pem: str
    certificate_pem: str
    generated: bool = False

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.certificate_pem)


@dataclass
class CertificateInfo:
    """Information extracted from an X.509 certificate."""

    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    fingerprint_sha256: str
    is_self_signed: bool
    key_size: int

    def to_dict(self) -> dict[str, str | int | bool]:
        return {
            "subject": self.subject,
            "issuer": self.issuer,
            "serialNumber": self.serial_number,
            "notBefore": self.not_before.isoformat(),
            "notAfter": self.not_after.isoformat(),
            "fingerprint": self.fingerprint_sha256,
            "selfSigned": self.is_self_signed,
            "keySize": self.key_size,
        }


def get_cert_dir() -> Path:
    """Get the signing material directory from environment or default.

    Returns:
        Path to the certificate directory.
    """
    env_dir = os.environ.get(ENV_CERT_DIR)
    if env_dir:
        return Path(env_dir)
    return DEFAULT_CERT_DIR


def generate_private_key(key_size: int = KEY_SIZE) -> rsa.RSAPrivateKey:
    """Generate an RSA private key.

    Args:
        key_size: RSA key size in bits. Default 2048.

    Returns:
        RSA private key.
    """
    return rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size,
    )


def generate_self_signed_certificate(
    private_key: rsa.RSAPrivateKey,
    common_name: str = "localhost",
    days_valid: int = DAYS_VALID,
) -> x509.Certificate:
    """Generate the self-signed certificate used for SAML signing.

    Subject and issuer are identical:
    ``C=US, ST=State, L=City, O=SAML Test Platform, CN=<common_name>``.

    Args:
        private_key: RSA private key to sign the certificate.
        common_name: Common Name (CN) for the certificate subject.
        days_valid: Number of days the certificate is valid.

    Returns:
        Self-signed X.509 certificate.
    """
    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
        x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, "State"),
        x509.NameAttribute(NameOID.LOCALITY_NAME, "City"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "SAML Test Platform"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])

    now = datetime.now(UTC)

    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=days_valid))
        .add_extension(
            x509.BasicConstraints(ca=False, path_length=None),
            critical=True,
        )
        .sign(private_key, hashes.SHA256())
    )


def save_private_key(private_key: rsa.RSAPrivateKey, path: Path) -> None:
    """Save a private key to a PEM file with secure permissions.

    Args:
        private_key: RSA private key to save.
        path: Path to write the key file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    path.touch(mode=0o600)
    path.write_text(get_private_key_pem(private_key))
    os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)


def save_certificate(cert: x509.Certificate, path: Path) -> None:
    """Save a certificate to a PEM file.

    Args:
        cert: X.509 certificate to save.
        path: Path to write the certificate file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(get_certificate_pem(cert))


def load_signing_key(key_pem: str) -> rsa.RSAPrivateKey:
    """Parse a PEM-encoded RSA private key.

    Raises:
        SigningMaterialUnavailable: If the key is unreadable or not RSA.
    """
    try:
        key = serialization.load_pem_private_key(key_pem.encode("utf-8"), password=None)
    except (ValueError, TypeError) as e:
        raise SigningMaterialUnavailable(f"Failed to load signing key: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise SigningMaterialUnavailable(f"Expected RSA private key, got {type(key).__name__}")
    return key


def load_certificate_pem(cert_pem: str) -> x509.Certificate:
    """Parse a PEM-encoded X.509 certificate.

    Raises:
        SigningMaterialUnavailable: If the certificate is unreadable.
    """
    try:
        return x509.load_pem_x509_certificate(normalize_pem(cert_pem).encode("utf-8"))
    except ValueError as e:
        raise SigningMaterialUnavailable(f"Failed to load certificate: {e}") from e


def get_private_key_pem(private_key: rsa.RSAPrivateKey) -> str:
    """Get the unencrypted PKCS#8 PEM string of a private key."""
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def get_certificate_pem(cert: x509.Certificate) -> str:
    """Get the PEM string of a certificate."""
    return cert.public_bytes(serialization.Encoding.PEM).decode("utf-8")


def generate_signing_material(common_name: str = "localhost") -> SigningMaterial:
    """Generate a fresh key pair and self-signed certificate in memory."""
    private_key = generate_private_key()
    cert = generate_self_signed_certificate(private_key, common_name=common_name)
    return SigningMaterial(
        private_key_pem=get_private_key_pem(private_key),
        certificate_pem=get_certificate_pem(cert),
        generated=True,
    )


def ensure_signing_material(cert_dir: Path | None = None) -> SigningMaterial:
    """Load the platform signing key and certificate, generating them on first use.

    When both files exist they are validated and returned unchanged. When
    neither exists a new pair is generated and persisted. Existing material
    is never overwritten, so a half-present or corrupt pair is an error
    rather than a reason to regenerate.

    Args:
        cert_dir: Directory holding ``saml-private-key.pem`` and
            ``saml-cert.pem``. Uses the default directory if not specified.

    Returns:
        SigningMaterial with PEM strings and whether they were just generated.

    Raises:
        SigningMaterialUnavailable: If only one file exists, a file is
            unreadable, or the new pair cannot be written.
    """
    cert_dir = cert_dir or get_cert_dir()
    key_path = cert_dir / KEY_FILENAME
    cert_path = cert_dir / CERT_FILENAME

    key_exists = key_path.exists()
    cert_exists = cert_path.exists()

    if key_exists and cert_exists:
        try:
            key_pem = key_path.read_text()
            cert_pem = cert_path.read_text()
        except OSError as e:
            raise SigningMaterialUnavailable(f"Failed to read signing material: {e}") from e
        load_signing_key(key_pem)
        load_certificate_pem(cert_pem)
        return SigningMaterial(private_key_pem=key_pem, certificate_pem=cert_pem)

    if key_exists or cert_exists:
        present = key_path if key_exists else cert_path
        missing = cert_path if key_exists else key_path
        raise SigningMaterialUnavailable(
            f"Incomplete signing material: {present} exists but {missing} is missing"
        )

    private_key = generate_private_key()
    cert = generate_self_signed_certificate(private_key)
    try:
        save_private_key(private_key, key_path)
        save_certificate(cert, cert_path)
    except OSError as e:
        raise SigningMaterialUnavailable(f"Failed to write signing material: {e}") from e

    logger.info("Generated SAML signing certificate in %s", cert_dir)
    return SigningMaterial(
        private_key_pem=get_private_key_pem(private_key),
        certificate_pem=get_certificate_pem(cert),
        generated=True,
    )


def certificate_body(pem: str) -> str:
    """Strip PEM armor and all whitespace, leaving the base64 body."""
    return "".join(_ARMOR_RE.sub("", pem).split())


def normalize_pem(certificate: str) -> str:
    """Re-wrap a certificate body as a PEM block with 64-column lines.

    Accepts a bare base64 body (as found in ``ds:X509Certificate``) or an
    already-armored PEM, with arbitrary whitespace.

    Args:
        certificate: Certificate body or PEM.

    Returns:
        Canonical PEM string ending in a newline.
    """
    body = certificate_body(certificate)
    lines = [body[i:i + 64] for i in range(0, len(body), 64)]
    return "\n".join([PEM_HEADER, *lines, PEM_FOOTER]) + "\n"


def fingerprint(certificate: str) -> str:
    """Compute the SHA-256 fingerprint of a certificate.

    The DER bytes (the base64 body of the PEM) are hashed and rendered as
    uppercase hex pairs separated by colons.

    Args:
        certificate: PEM string or bare base64 body.

    Returns:
        Fingerprint such as ``"AB:CD:..."``, or an empty string when the
        input is not valid base64.
    """
    try:
        der = base64.b64decode(certificate_body(certificate), validate=True)
    except (binascii.Error, ValueError):
        return ""
    if not der:
        return ""
    digest = hashlib.sha256(der).hexdigest().upper()
    return ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))


def get_certificate_info(cert: x509.Certificate) -> CertificateInfo:
    """Extract information from an X.509 certificate.

    Args:
        cert: X.509 certificate.

    Returns:
        CertificateInfo with extracted details.
    """
    public_key = cert.public_key()
    key_size = public_key.key_size if isinstance(public_key, rsa.RSAPublicKey) else 0

    return CertificateInfo(
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        serial_number=format(cert.serial_number, "x"),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        fingerprint_sha256=fingerprint(get_certificate_pem(cert)),
        is_self_signed=cert.subject == cert.issuer,
        key_size=key_size,
    )
