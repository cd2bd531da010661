"""Platform configuration and audit log API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from flask import Blueprint, jsonify, request

from samltest.web.routes import get_engine
from samltest.web.routes.auth import login_required

if TYPE_CHECKING:
    from flask.typing import ResponseReturnValue

config_bp = Blueprint("config", __name__, url_prefix="/api/config")

MAX_PAGE_SIZE = 500


@config_bp.route("/", methods=["GET"])
@login_required
def get_config() -> ResponseReturnValue:
    """Current SAML configuration, without private key material."""
    return jsonify({"config": get_engine().describe()})


@config_bp.route("/", methods=["PUT"])
@login_required
def update_config() -> ResponseReturnValue:
    data = request.get_json(silent=True) or {}
    try:
        config = get_engine().update_config(
            app_role=data.get("appRole") or None,
            default_entity_id=data.get("defaultEntityId") or None,
        )
    except ValueError as e:
        return jsonify({"error": {"kind": "bad_request", "message": str(e)}}), 400

    return jsonify({"message": "Configuration updated successfully", "config": config})


@config_bp.route("/logs")
@login_required
def list_logs() -> ResponseReturnValue:
    """Page through the audit log, newest first.

    Query parameters: ``limit`` (default 50), ``offset``, ``eventType``, ``status``.
    """
    limit = min(request.args.get("limit", 50, type=int), MAX_PAGE_SIZE)
    offset = request.args.get("offset", 0, type=int)
    entries, total = get_engine().audit.list(
        limit=limit,
        offset=offset,
        event_type=request.args.get("eventType"),
        status=request.args.get("status"),
    )
    return jsonify({
        "logs": [entry.to_dict() for entry in entries],
        "pagination": {"total": total, "limit": limit, "offset": offset},
    })


@config_bp.route("/logs/<int:log_id>")
@login_required
def get_log(log_id: int) -> ResponseReturnValue:
    return jsonify({"log": get_engine().audit.get(log_id).to_dict()})


@config_bp.route("/logs", methods=["DELETE"])
@login_required
def clear_logs() -> ResponseReturnValue:
    count = get_engine().audit.clear()
    return jsonify({"message": "Logs cleared successfully", "count": count})
