"""Account and session token routes."""

from __future__ import annotations

from collections.abc import Callable
from functools import wraps
from typing import TYPE_CHECKING, Any

from flask import Blueprint, current_app, g, jsonify, request

from samltest.core.auth import CredentialError, CredentialStore
from samltest.core.crypto.tokens import TokenClaims, TokenError
from samltest.web.routes import get_engine

if TYPE_CHECKING:
    from flask.typing import ResponseReturnValue

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def get_credential_store() -> CredentialStore:
    return CredentialStore(get_engine().db)


def is_auth_enabled() -> bool:
    """Check if authentication is enabled."""
    return bool(current_app.config.get("AUTH_ENABLED", True))


def _unauthorized(message: str) -> ResponseReturnValue:
    return jsonify({"error": {"kind": "unauthorized", "message": message}}), 401


def bearer_token() -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _decode_request_token() -> TokenClaims:
    token = bearer_token()
    if token is None:
        raise TokenError("Missing bearer token")
    return get_engine().token_issuer.decode(token)


def token_required(f: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator for routes that act on the calling user; always needs a token."""
    @wraps(f)
    def decorated_function(*args: Any, **kwargs: Any) -> Any:
        try:
            g.claims = _decode_request_token()
        except TokenError as e:
            return _unauthorized(str(e))
        return f(*args, **kwargs)

    return decorated_function


def login_required(f: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator to require authentication for a management route."""
    @wraps(f)
    def decorated_function(*args: Any, **kwargs: Any) -> Any:
        if not is_auth_enabled():
            g.claims = None
            return f(*args, **kwargs)
        try:
            g.claims = _decode_request_token()
        except TokenError as e:
            return _unauthorized(str(e))
        return f(*args, **kwargs)

    return decorated_function


def _session_payload(user_id: int, email: str) -> dict[str, Any]:
    return {"token": get_engine().token_issuer.issue(user_id, email)}


@auth_bp.route("/signup", methods=["POST"])
def signup() -> ResponseReturnValue:
    """Create a local account and return a session token."""
    data = request.get_json(silent=True) or {}
    try:
        user = get_credential_store().create_user(
            str(data.get("email", "")),
            str(data.get("password", "")),
            display_name=data.get("displayName"),
        )
    except CredentialError as e:
        return jsonify({"error": {"kind": "invalid_credentials", "message": str(e)}}), 400

    return jsonify({**_session_payload(user.id, user.email), "user": user.to_dict()}), 201


@auth_bp.route("/login", methods=["POST"])
def login() -> ResponseReturnValue:
    """Check email and password and return a session token."""
    data = request.get_json(silent=True) or {}
    user = get_credential_store().authenticate(
        str(data.get("email", "")), str(data.get("password", ""))
    )
    if user is None:
        return _unauthorized("Invalid email or password")
    return jsonify({**_session_payload(user.id, user.email), "user": user.to_dict()})


@auth_bp.route("/me")
@token_required
def me() -> ResponseReturnValue:
    user = get_credential_store().get_user(g.claims.user_id)
    if user is None:
        return _unauthorized("User no longer exists")
    return jsonify({"user": user.to_dict()})


@auth_bp.route("/me/saml-logs")
@token_required
def my_saml_logs() -> ResponseReturnValue:
    """Most recent audit entries attributed to the calling user."""
    limit = request.args.get("limit", 10, type=int)
    entries = get_engine().audit.for_user(g.claims.user_id, limit=limit)
    return jsonify({"logs": [entry.to_dict() for entry in entries]})
