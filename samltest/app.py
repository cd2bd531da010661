"""Flask application factory."""

from __future__ import annotations

import logging
import os
import secrets
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from flask import Flask, jsonify

from samltest.core.errors import (
    AssertionInvalid,
    CounterpartNotFound,
    MalformedMetadata,
    RequestInvalid,
    SamlError,
    SignatureInvalid,
    SigningMaterialUnavailable,
    StoreFailure,
)

if TYPE_CHECKING:
    from flask.typing import ResponseReturnValue

    from samltest.core.config import AppConfig
    from samltest.core.saml.engine import SamlEngine

logger = logging.getLogger(__name__)

# HTTP status for each error kind; anything else is a server error
ERROR_STATUS: dict[type[SamlError], int] = {
    MalformedMetadata: 400,
    CounterpartNotFound: 404,
    SignatureInvalid: 401,
    AssertionInvalid: 401,
    RequestInvalid: 400,
    SigningMaterialUnavailable: 500,
    StoreFailure: 500,
}


def error_status(error: SamlError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status
    return 500


def build_engine(app_config: AppConfig) -> SamlEngine:
    """Open the database and build the protocol engine from configuration."""
    from samltest.core.crypto.tokens import TokenIssuer
    from samltest.core.saml.engine import SamlEngine
    from samltest.storage.database import Database

    db = Database.from_settings(app_config.database)
    db.init_db()
    token_issuer = TokenIssuer(
        app_config.token_secret(),
        ttl=timedelta(minutes=app_config.auth.token_ttl_minutes),
    )
    return SamlEngine.create(db, app_config.saml, token_issuer)


def create_app(
    config: dict[str, Any] | None = None,
    engine: SamlEngine | None = None,
    app_config: AppConfig | None = None,
) -> Flask:
    """Create and configure the Flask application.

    Args:
        config: Optional configuration dictionary to override defaults.
        engine: Protocol engine to serve. Built from ``app_config`` if omitted.
        app_config: Platform configuration. Loaded from file/env if omitted.

    Returns:
        Configured Flask application instance.
    """
    from samltest.core.config import load_config

    if app_config is None:
        app_config = load_config()
    if engine is None:
        engine = build_engine(app_config)

    app = Flask(__name__)

    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SAMLTEST_SECRET_KEY") or secrets.token_hex(32),
        AUTH_ENABLED=app_config.auth.enabled,
        FRONTEND_URL=app_config.server.frontend_url,
        COOKIE_SECURE=app_config.saml.issuer.startswith("https://"),
    )

    if config:
        app.config.from_mapping(config)

    app.extensions["samltest"] = engine

    @app.errorhandler(SamlError)
    def handle_saml_error(error: SamlError) -> ResponseReturnValue:
        status = error_status(error)
        if status >= 500:
            logger.error("%s: %s", error.kind, error.message)
        return jsonify({"error": error.to_dict()}), status

    # Register main blueprints
    from samltest.web import routes

    routes.init_app(app)

    return app


def run_server(
    app_config: AppConfig | None = None,
    host: str | None = None,
    port: int | None = None,
) -> None:
    """Run the Flask development server.

    Args:
        app_config: Application configuration. Loads from file/env if not provided.
        host: Override host from config.
        port: Override port from config.
    """
    from samltest.core.config import load_config

    # Load configuration
    if app_config is None:
        app_config = load_config()

    # Apply overrides
    server_host = host or app_config.server.host
    server_port = port or app_config.server.port

    app = create_app(app_config=app_config)
    app.debug = app_config.server.debug
    engine: SamlEngine = app.extensions["samltest"]

    print("Starting SAML test platform...")
    print(f"  URL:       http://{server_host}:{server_port}")
    print(f"  Entity ID: {engine.entity_id}")
    print(f"  ACS URL:   {engine.settings.acs_url}")
    print(f"  SSO URL:   {engine.settings.sso_url}")
    print("")

    app.run(host=server_host, port=server_port)
