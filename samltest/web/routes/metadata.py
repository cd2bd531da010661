"""Metadata import/export and entity management API."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from flask import Blueprint, Response, jsonify, request

from samltest.core.crypto.certs import fingerprint
from samltest.web.routes import get_engine
from samltest.web.routes.auth import login_required
from samltest.web.routes.saml import XML_MIMETYPE

if TYPE_CHECKING:
    from flask.typing import ResponseReturnValue

    from samltest.storage.models import SamlEntity

metadata_bp = Blueprint("metadata", __name__, url_prefix="/api/metadata")

ENTITY_TYPES = ("SP", "IDP")


def _entity_summary(entity: SamlEntity, include_raw: bool = False) -> dict[str, Any]:
    data = entity.to_dict()
    data["certificateFingerprints"] = [fingerprint(cert) for cert in entity.certificates or []]
    if include_raw:
        data["rawXml"] = entity.raw_xml
        data["parsedJson"] = entity.parsed_json
    return data


def _bad_request(message: str) -> ResponseReturnValue:
    return jsonify({"error": {"kind": "bad_request", "message": message}}), 400


@metadata_bp.route("/import", methods=["POST"])
@login_required
def import_metadata() -> ResponseReturnValue:
    """Register an SP or IdP from metadata XML or a metadata URL.

    Body: ``{"type": "SP"|"IDP", "xml": "..."}`` or ``{"type": ..., "url": "..."}``.
    """
    data = request.get_json(silent=True) or {}
    entity_type = str(data.get("type", "")).upper()
    if entity_type not in ENTITY_TYPES:
        return _bad_request("type must be SP or IDP")

    engine = get_engine()
    if data.get("xml"):
        result = engine.import_metadata(str(data["xml"]), entity_type)
    elif data.get("url"):
        result = engine.import_metadata_url(str(data["url"]), entity_type)
    else:
        return _bad_request("xml or url is required")

    return jsonify({
        "message": "Metadata imported successfully",
        "entity": _entity_summary(result.entity),
    })


@metadata_bp.route("/entities")
@login_required
def list_entities() -> ResponseReturnValue:
    entity_type = request.args.get("type")
    entities = get_engine().registry.list(entity_type=entity_type.upper() if entity_type else None)
    return jsonify({"entities": [_entity_summary(entity) for entity in entities]})


@metadata_bp.route("/entities/<int:entity_pk>")
@login_required
def get_entity(entity_pk: int) -> ResponseReturnValue:
    entity = get_engine().registry.get_by_id(entity_pk)
    return jsonify({"entity": _entity_summary(entity, include_raw=True)})


@metadata_bp.route("/entities/<int:entity_pk>", methods=["DELETE"])
@login_required
def delete_entity(entity_pk: int) -> ResponseReturnValue:
    get_engine().registry.delete(entity_pk)
    return jsonify({"message": "Entity deleted successfully"})


@metadata_bp.route("/entities/<int:entity_pk>/toggle", methods=["PATCH"])
@login_required
def toggle_entity(entity_pk: int) -> ResponseReturnValue:
    entity = get_engine().registry.toggle_active(entity_pk)
    return jsonify({"entity": _entity_summary(entity)})


@metadata_bp.route("/export/sp")
def export_sp() -> Response:
    return Response(get_engine().sp_metadata(), mimetype=XML_MIMETYPE)


@metadata_bp.route("/export/idp")
def export_idp() -> Response:
    return Response(get_engine().idp_metadata(), mimetype=XML_MIMETYPE)
