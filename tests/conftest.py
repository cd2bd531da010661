"""Pytest configuration and fixtures."""

from collections.abc import Generator
from pathlib import Path

import pytest
from flask import Flask
from flask.testing import FlaskClient

from samltest.app import create_app
from samltest.core.config import AppConfig, SamlSettings
from samltest.core.crypto.certs import (
    CERT_FILENAME,
    KEY_FILENAME,
    SigningMaterial,
    generate_signing_material,
)
from samltest.core.crypto.tokens import TokenIssuer
from samltest.core.saml.engine import SamlEngine
from samltest.core.saml.idp import IdentityProvider
from samltest.core.saml.metadata import generate_idp_descriptor, generate_sp_descriptor
from samltest.storage.database import Database

PLATFORM_ISSUER = "http://localhost:3001"
IDP_ENTITY_ID = "https://idp.example"
IDP_SSO_URL = "https://idp.example/sso"
SP_ENTITY_ID = "https://sp.example/metadata"
SP_ACS_URL = "https://sp.example/acs"
FRONTEND_URL = "http://frontend.test"


@pytest.fixture(scope="session")
def signing_material() -> SigningMaterial:
    """The platform's own key pair (generated once per test session)."""
    return generate_signing_material()


@pytest.fixture(scope="session")
def idp_material() -> SigningMaterial:
    """Key pair of an external IdP."""
    return generate_signing_material("idp.example")


@pytest.fixture(scope="session")
def foreign_material() -> SigningMaterial:
    """A key pair nobody trusts."""
    return generate_signing_material("attacker.example")


@pytest.fixture
def database(tmp_path: Path) -> Generator[Database, None, None]:
    """Empty database in a temporary directory."""
    db = Database(tmp_path / "test.db")
    db.init_db()
    yield db
    db.close()


@pytest.fixture
def cert_dir(tmp_path: Path, signing_material: SigningMaterial) -> Path:
    """Certificate directory seeded with the session signing material."""
    path = tmp_path / "certs"
    path.mkdir()
    (path / KEY_FILENAME).write_text(signing_material.private_key_pem)
    (path / CERT_FILENAME).write_text(signing_material.certificate_pem)
    return path


@pytest.fixture
def saml_settings(cert_dir: Path) -> SamlSettings:
    return SamlSettings(issuer=PLATFORM_ISSUER, cert_dir=cert_dir)


@pytest.fixture
def token_issuer() -> TokenIssuer:
    return TokenIssuer("test-secret-for-session-tokens-0123456789")


@pytest.fixture
def engine(database: Database, saml_settings: SamlSettings, token_issuer: TokenIssuer) -> SamlEngine:
    """Protocol engine over the temporary database."""
    return SamlEngine.create(database, saml_settings, token_issuer)


@pytest.fixture
def idp_metadata(idp_material: SigningMaterial) -> str:
    """Metadata of the external IdP."""
    return generate_idp_descriptor(IDP_ENTITY_ID, IDP_SSO_URL, idp_material.certificate_pem)


@pytest.fixture
def sp_metadata(signing_material: SigningMaterial) -> str:
    """Metadata of an external SP (signing with the platform key for simplicity)."""
    return generate_sp_descriptor(SP_ENTITY_ID, SP_ACS_URL, signing_material.certificate_pem)


@pytest.fixture
def external_idp(idp_material: SigningMaterial) -> IdentityProvider:
    """An IdP that issues Responses the platform's SP role can consume."""
    return IdentityProvider(IDP_ENTITY_ID, idp_material)


@pytest.fixture
def app(engine: SamlEngine) -> Generator[Flask, None, None]:
    """Create application for testing with auth disabled."""
    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key",
            "AUTH_ENABLED": False,  # Disable auth for most tests
            "FRONTEND_URL": FRONTEND_URL,
        },
        engine=engine,
        app_config=AppConfig(),
    )
    yield app


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Create test client."""
    return app.test_client()
