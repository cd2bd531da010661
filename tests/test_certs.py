"""Tests for signing material management."""

import re
from pathlib import Path

import pytest

from samltest.core.crypto.certs import (
    CERT_FILENAME,
    KEY_FILENAME,
    SigningMaterial,
    certificate_body,
    ensure_signing_material,
    fingerprint,
    get_certificate_info,
    load_certificate_pem,
    normalize_pem,
)
from samltest.core.errors import SigningMaterialUnavailable

FINGERPRINT_RE = re.compile(r"^([0-9A-F]{2}:){31}[0-9A-F]{2}$")


class TestEnsureSigningMaterial:
    """Tests for loading or generating the platform key pair."""

    def test_generates_on_first_use(self, tmp_path: Path) -> None:
        """A missing pair is generated and written to disk."""
        material = ensure_signing_material(tmp_path)
        assert material.generated is True
        assert (tmp_path / KEY_FILENAME).exists()
        assert (tmp_path / CERT_FILENAME).exists()
        assert "PRIVATE KEY" in material.private_key_pem
        assert material.certificate_pem.startswith("-----BEGIN CERTIFICATE-----")

    def test_second_call_returns_same_material(self, tmp_path: Path) -> None:
        """Existing files are loaded, never regenerated."""
        first = ensure_signing_material(tmp_path)
        second = ensure_signing_material(tmp_path)
        assert second.generated is False
        assert second.private_key_pem == first.private_key_pem
        assert second.certificate_pem == first.certificate_pem

    def test_private_key_permissions(self, tmp_path: Path) -> None:
        ensure_signing_material(tmp_path)
        assert (tmp_path / KEY_FILENAME).stat().st_mode & 0o777 == 0o600

    def test_half_present_pair_is_refused(self, tmp_path: Path) -> None:
        """Only a certificate and no key is an error, not a reason to overwrite."""
        ensure_signing_material(tmp_path)
        (tmp_path / KEY_FILENAME).unlink()
        original_cert = (tmp_path / CERT_FILENAME).read_text()

        with pytest.raises(SigningMaterialUnavailable):
            ensure_signing_material(tmp_path)
        assert (tmp_path / CERT_FILENAME).read_text() == original_cert
        assert not (tmp_path / KEY_FILENAME).exists()

    def test_corrupt_key_is_refused(self, tmp_path: Path) -> None:
        ensure_signing_material(tmp_path)
        (tmp_path / KEY_FILENAME).write_text("not a key")

        with pytest.raises(SigningMaterialUnavailable):
            ensure_signing_material(tmp_path)
        assert (tmp_path / KEY_FILENAME).read_text() == "not a key"


class TestCertificate:
    """Tests for the generated certificate contents."""

    def test_subject_and_validity(self, signing_material: SigningMaterial) -> None:
        info = get_certificate_info(load_certificate_pem(signing_material.certificate_pem))
        assert "CN=localhost" in info.subject
        assert "O=SAML Test Platform" in info.subject
        assert info.is_self_signed is True
        assert info.key_size == 2048
        assert (info.not_after - info.not_before).days == 3650

    def test_load_invalid_certificate(self) -> None:
        with pytest.raises(SigningMaterialUnavailable):
            load_certificate_pem("-----BEGIN CERTIFICATE-----\nAAAA\n-----END CERTIFICATE-----\n")


class TestFingerprint:
    """Tests for certificate fingerprints."""

    def test_format(self, signing_material: SigningMaterial) -> None:
        """Uppercase hex pairs separated by colons."""
        assert FINGERPRINT_RE.match(fingerprint(signing_material.certificate_pem))

    def test_bare_body_matches_pem(self, signing_material: SigningMaterial) -> None:
        """A metadata-style base64 body has the same fingerprint as its PEM."""
        body = certificate_body(signing_material.certificate_pem)
        assert fingerprint(body) == fingerprint(signing_material.certificate_pem)

    def test_matches_certificate_info(self, signing_material: SigningMaterial) -> None:
        info = get_certificate_info(load_certificate_pem(signing_material.certificate_pem))
        assert info.fingerprint_sha256 == signing_material.fingerprint

    def test_invalid_input(self) -> None:
        assert fingerprint("not base64 at all!") == ""
        assert fingerprint("") == ""


class TestNormalizePem:
    """Tests for PEM normalization."""

    def test_wraps_at_64_columns(self, signing_material: SigningMaterial) -> None:
        body = certificate_body(signing_material.certificate_pem)
        pem = normalize_pem(body)
        lines = pem.strip().splitlines()
        assert lines[0] == "-----BEGIN CERTIFICATE-----"
        assert lines[-1] == "-----END CERTIFICATE-----"
        assert all(len(line) <= 64 for line in lines[1:-1])
        assert pem.endswith("\n")

    def test_whitespace_is_ignored(self, signing_material: SigningMaterial) -> None:
        body = certificate_body(signing_material.certificate_pem)
        spaced = "\n   ".join(body[i:i + 40] for i in range(0, len(body), 40))
        assert normalize_pem(spaced) == normalize_pem(signing_material.certificate_pem)

    def test_normalized_pem_loads(self, signing_material: SigningMaterial) -> None:
        body = certificate_body(signing_material.certificate_pem)
        load_certificate_pem(normalize_pem(body))
