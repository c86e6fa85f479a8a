"""
Organization settings Blueprint.

Routes:
  GET         /api/v1/settings/organization   – current settings (defaults merged in)
  PUT, PATCH  /api/v1/settings/organization   – update (founders only)
  GET         /api/v1/settings/activity       – settings activity log (?action=&limit=)
"""

from flask import Blueprint, jsonify, request

from app.auth import current_auth, require_auth
from app.services import settings_service
from app.utils.errors import register_error_handlers

settings_bp = Blueprint("settings", __name__, url_prefix="/api/v1/settings")
register_error_handlers(settings_bp)


@settings_bp.route("/organization", methods=["GET"])
@require_auth
def get_organization_settings():
    org = settings_service.get_organization_settings(current_auth())
    return jsonify({"organization": org.to_dict()})


@settings_bp.route("/organization", methods=["PUT", "PATCH"])
@require_auth
def update_organization_settings():
    data = request.get_json(silent=True) or {}
    org = settings_service.update_organization_settings(current_auth(), data)
    return jsonify({"organization": org.to_dict()})


@settings_bp.route("/activity", methods=["GET"])
@require_auth
def list_activity():
    entries = settings_service.list_activity_log(
        current_auth(),
        action=request.args.get("action") or None,
        limit=request.args.get("limit", 100, type=int),
    )
    return jsonify({"items": [e.to_dict() for e in entries]})
