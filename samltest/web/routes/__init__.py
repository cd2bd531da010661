"""Web routes for the SAML test platform."""

from __future__ import annotations

from typing import TYPE_CHECKING, cast

from flask import Blueprint, Flask, current_app

if TYPE_CHECKING:
    from samltest.core.saml.engine import SamlEngine

main_bp = Blueprint("main", __name__)


def get_engine() -> SamlEngine:
    """Get the protocol engine from the app context."""
    return cast("SamlEngine", current_app.extensions["samltest"])


@main_bp.route("/health")
def health() -> dict[str, str]:
    """Health check endpoint (unauthenticated)."""
    engine = get_engine()
    engine.db.verify_connection()
    return {"status": "healthy", "entityId": engine.entity_id}


def init_app(app: Flask) -> None:
    """Register blueprints with the Flask app."""
    from samltest.web.routes.auth import auth_bp
    from samltest.web.routes.config import config_bp
    from samltest.web.routes.metadata import metadata_bp
    from samltest.web.routes.saml import saml_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(saml_bp)
    app.register_blueprint(metadata_bp)
    app.register_blueprint(config_bp)
    app.register_blueprint(auth_bp)
