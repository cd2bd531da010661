"""SAML protocol endpoints for the SP and IdP roles."""

from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import urlencode

from flask import Blueprint, Response, current_app, jsonify, redirect, request

from samltest.core.crypto.tokens import TokenError
from samltest.core.errors import SamlError
from samltest.core.saml.bindings import POST, REDIRECT
from samltest.web.routes import get_engine
from samltest.web.routes.auth import bearer_token, get_credential_store

if TYPE_CHECKING:
    from flask.typing import ResponseReturnValue

    from samltest.storage.models import User

saml_bp = Blueprint("saml", __name__, url_prefix="/saml")

# Short-lived cookies carrying request correlation between protocol legs
SP_REQUEST_ID_COOKIE = "saml_sp_request_id"
IDP_REQUEST_ID_COOKIE = "saml_idp_request_id"
RELAY_STATE_COOKIE = "saml_relay_state"
SP_ENTITY_COOKIE = "saml_sp_entity_id"
CORRELATION_MAX_AGE = 600

XML_MIMETYPE = "application/samlmetadata+xml"


def _set_correlation_cookie(response: Response, name: str, value: str | None) -> None:
    secure = bool(current_app.config.get("COOKIE_SECURE", False))
    response.set_cookie(
        name,
        value or "",
        max_age=CORRELATION_MAX_AGE,
        httponly=True,
        secure=secure,
        samesite="None" if secure else "Lax",
    )


def _clear_correlation_cookies(response: Response, *names: str) -> None:
    for name in names:
        response.delete_cookie(name)


def _frontend_url(path: str, **params: str) -> str:
    base = str(current_app.config["FRONTEND_URL"]).rstrip("/")
    query = urlencode({key: value for key, value in params.items() if value})
    return f"{base}{path}?{query}" if query else f"{base}{path}"


# SP role


@saml_bp.route("/metadata")
def sp_metadata() -> Response:
    """SP metadata of this platform."""
    return Response(get_engine().sp_metadata(), mimetype=XML_MIMETYPE)


@saml_bp.route("/login")
def sp_login() -> ResponseReturnValue:
    """Start SP-initiated SSO against a registered IdP."""
    idp_entity_id = request.args.get("idpEntityId")
    if not idp_entity_id:
        return jsonify({"error": {"kind": "bad_request", "message": "idpEntityId query parameter is required"}}), 400

    initiation = get_engine().initiate(idp_entity_id, relay_state=request.args.get("RelayState"))
    response = redirect(initiation.redirect_url)
    _set_correlation_cookie(response, SP_REQUEST_ID_COOKIE, initiation.request_id)
    return response


@saml_bp.route("/acs", methods=["POST"])
def acs() -> ResponseReturnValue:
    """Assertion Consumer Service: validate the Response and hand a token to the frontend."""
    expected_request_id = request.cookies.get(SP_REQUEST_ID_COOKIE) or None
    try:
        result = get_engine().handle_acs(request.form, POST, expected_request_id=expected_request_id)
        target = _frontend_url("/saml/callback", token=result.token)
    except SamlError as e:
        target = _frontend_url("/saml/callback", error=e.message)

    response = redirect(target)
    _clear_correlation_cookies(response, SP_REQUEST_ID_COOKIE)
    return response


@saml_bp.route("/slo", methods=["POST"])
def sp_slo() -> ResponseReturnValue:
    get_engine().record_logout("sp", request.form.to_dict())
    return jsonify({"message": "Logged out successfully"})


# IdP role


@saml_bp.route("/idp/metadata")
def idp_metadata() -> Response:
    """IdP metadata of this platform."""
    return Response(get_engine().idp_metadata(), mimetype=XML_MIMETYPE)


@saml_bp.route("/idp/sso", methods=["GET", "POST"])
def idp_sso() -> ResponseReturnValue:
    """Receive an AuthnRequest and send the user to the IdP login page.

    Without a SAMLRequest the login page starts IdP-initiated SSO.
    """
    if request.method == "GET":
        params, binding = request.args, REDIRECT
        raw_query = request.query_string.decode("utf-8")
    else:
        params, binding, raw_query = request.form, POST, None

    if not params.get("SAMLRequest"):
        response = redirect(_frontend_url("/idp-login"))
        _clear_correlation_cookies(response, IDP_REQUEST_ID_COOKIE, RELAY_STATE_COOKIE, SP_ENTITY_COOKIE)
        return response

    accepted = get_engine().accept_authn_request(params, binding, raw_query=raw_query)
    response = redirect(
        _frontend_url("/idp-login", requestId=accepted.request_id, spEntityId=accepted.issuer)
    )
    _set_correlation_cookie(response, IDP_REQUEST_ID_COOKIE, accepted.request_id)
    _set_correlation_cookie(response, RELAY_STATE_COOKIE, accepted.relay_state)
    _set_correlation_cookie(response, SP_ENTITY_COOKIE, accepted.issuer)
    return response


def _login_user(data: dict[str, str]) -> User | None:
    """Identify the user from a bearer token or from email and password."""
    store = get_credential_store()
    token = bearer_token()
    if token:
        try:
            claims = get_engine().token_issuer.decode(token)
        except TokenError:
            return None
        return store.get_user(claims.user_id)

    email, password = data.get("email"), data.get("password")
    if email and password:
        return store.authenticate(email, password)
    return None


@saml_bp.route("/idp/login", methods=["POST"])
def idp_login() -> ResponseReturnValue:
    """Authenticate the user and post a signed Response to the SP."""
    data = request.get_json(silent=True) or request.form.to_dict()
    sp_entity_id = data.get("spEntityId")
    if not sp_entity_id:
        return jsonify({"error": {"kind": "bad_request", "message": "spEntityId is required"}}), 400

    user = _login_user(data)
    if user is None:
        return jsonify({"error": {"kind": "unauthorized", "message": "Invalid credentials"}}), 401

    # A pending request id only answers the SP that sent it
    in_response_to = None
    if request.cookies.get(SP_ENTITY_COOKIE) == sp_entity_id:
        in_response_to = request.cookies.get(IDP_REQUEST_ID_COOKIE) or None

    engine = get_engine()
    issued = engine.build_response(
        user,
        sp_entity_id,
        in_response_to=in_response_to,
        relay_state=request.cookies.get(RELAY_STATE_COOKIE) or None,
    )
    response = Response(engine.render_post_form(issued), mimetype="text/html")
    _clear_correlation_cookies(response, IDP_REQUEST_ID_COOKIE, RELAY_STATE_COOKIE, SP_ENTITY_COOKIE)
    return response


@saml_bp.route("/idp/slo", methods=["POST"])
def idp_slo() -> ResponseReturnValue:
    get_engine().record_logout("idp", request.form.to_dict())
    return jsonify({"message": "Logged out successfully"})
