"""
Commitments Blueprint — internal (authenticated) commitment lifecycle.

Routes:
  POST   /api/v1/commitments                                   – create (optionally send approval)
  GET    /api/v1/commitments                                   – list (filters + pagination)
  GET    /api/v1/commitments/<id>                              – detail
  PATCH  /api/v1/commitments/<id>                              – partial update (may bump version)
  POST   /api/v1/commitments/<id>/assign                       – reassign (plan-gated)
  POST   /api/v1/commitments/<id>/deliver                      – mark delivered
  POST   /api/v1/commitments/<id>/approval-link                – send approval link
  POST   /api/v1/commitments/<id>/approval-link/resend         – resend approval link
  POST   /api/v1/commitments/<id>/acceptance-link              – send acceptance link
  POST   /api/v1/commitments/<id>/acceptance-link/resend       – resend acceptance link
  GET    /api/v1/commitments/<id>/history                      – audit events, oldest first
  GET    /api/v1/commitments/<id>/lineage                      – all versions of this commitment
  GET    /api/v1/commitments/<id>/change-requests              – change requests, newest first
  POST   /api/v1/commitments/<id>/change-requests              – raise a change request
  POST   /api/v1/commitments/<id>/change-requests/<cr>/accept  – accept → new version
  POST   /api/v1/commitments/<id>/change-requests/<cr>/reject  – reject → previous status

Monetary fields are stripped from every commitment payload for MANAGER callers.
"""

import logging

from flask import Blueprint, jsonify, request

from app.auth import current_auth, require_auth
from app.services import change_request_service, commitment_service
from app.services.commitment_service import serialize_commitment
from app.utils.errors import register_error_handlers
from app.utils.helpers import parse_pagination

logger = logging.getLogger(__name__)

commitments_bp = Blueprint("commitments", __name__, url_prefix="/api/v1/commitments")
register_error_handlers(commitments_bp)

_CONTROL_KEYS = ("send_approval", "assigned_to_user_id", "resolution_note")


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _int_or_none(value):
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ═════════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════════

@commitments_bp.route("", methods=["POST"])
@require_auth
def create_commitment():
    """Create version 1.

    Body: { client_id, title, scope_description, scope_title?, amount?, currency?,
            payment_terms?, milestones?, deliverables?, attachments?, approval_rules?,
            assigned_to_user_id?, send_approval? }
    """
    ctx = current_auth()
    data = _body()
    payload = {k: v for k, v in data.items() if k not in _CONTROL_KEYS}
    commitment = commitment_service.create_commitment(
        ctx,
        payload,
        assigned_to_user_id=_int_or_none(data.get("assigned_to_user_id")),
        send_approval=data.get("send_approval") is True,
    )
    return jsonify({"commitment": serialize_commitment(commitment, ctx)}), 201


@commitments_bp.route("", methods=["GET"])
@require_auth
def list_commitments():
    ctx = current_auth()
    page, limit = parse_pagination(request.args)
    result = commitment_service.list_commitments(ctx, {
        "status": request.args.get("status"),
        "client_id": request.args.get("client_id", type=int),
        "assigned_to": request.args.get("assigned_to", type=int),
        "from": request.args.get("from"),
        "to": request.args.get("to"),
        "page": page,
        "limit": limit,
    })
    result["items"] = [serialize_commitment(c, ctx) for c in result["items"]]
    return jsonify(result)


@commitments_bp.route("/<int:commitment_id>", methods=["GET"])
@require_auth
def get_commitment(commitment_id):
    ctx = current_auth()
    commitment = commitment_service.get_commitment(ctx, commitment_id)
    return jsonify({"commitment": serialize_commitment(commitment, ctx)})


@commitments_bp.route("/<int:commitment_id>", methods=["PATCH"])
@require_auth
def update_commitment(commitment_id):
    ctx = current_auth()
    commitment = commitment_service.update_commitment(ctx, commitment_id, _body())
    return jsonify({"commitment": serialize_commitment(commitment, ctx)})


@commitments_bp.route("/<int:commitment_id>/assign", methods=["POST"])
@require_auth
def assign_commitment(commitment_id):
    ctx = current_auth()
    commitment = commitment_service.assign_commitment(
        ctx, commitment_id, _int_or_none(_body().get("assigned_to_user_id")),
    )
    return jsonify({"commitment": serialize_commitment(commitment, ctx)})


# ═════════════════════════════════════════════════════════════════════════════
# LIFECYCLE
# ═════════════════════════════════════════════════════════════════════════════

@commitments_bp.route("/<int:commitment_id>/deliver", methods=["POST"])
@require_auth
def mark_delivered(commitment_id):
    ctx = current_auth()
    commitment = commitment_service.mark_delivered(ctx, commitment_id)
    return jsonify({"commitment": serialize_commitment(commitment, ctx)})


@commitments_bp.route("/<int:commitment_id>/approval-link", methods=["POST"])
@require_auth
def send_approval_link(commitment_id):
    url = commitment_service.send_approval_link(current_auth(), commitment_id)
    return jsonify({"approval_url": url})


@commitments_bp.route("/<int:commitment_id>/approval-link/resend", methods=["POST"])
@require_auth
def resend_approval_link(commitment_id):
    url = commitment_service.send_approval_link(current_auth(), commitment_id, resend=True)
    return jsonify({"approval_url": url})


@commitments_bp.route("/<int:commitment_id>/acceptance-link", methods=["POST"])
@require_auth
def send_acceptance_link(commitment_id):
    url = commitment_service.send_acceptance_link(current_auth(), commitment_id)
    return jsonify({"acceptance_url": url})


@commitments_bp.route("/<int:commitment_id>/acceptance-link/resend", methods=["POST"])
@require_auth
def resend_acceptance_link(commitment_id):
    url = commitment_service.send_acceptance_link(current_auth(), commitment_id, resend=True)
    return jsonify({"acceptance_url": url})


@commitments_bp.route("/<int:commitment_id>/history", methods=["GET"])
@require_auth
def get_history(commitment_id):
    events = commitment_service.get_history(current_auth(), commitment_id)
    return jsonify({"events": [e.to_dict() for e in events]})


@commitments_bp.route("/<int:commitment_id>/lineage", methods=["GET"])
@require_auth
def get_lineage(commitment_id):
    ctx = current_auth()
    versions = commitment_service.get_lineage(ctx, commitment_id)
    return jsonify({"items": [serialize_commitment(c, ctx, include_client=False) for c in versions]})


# ═════════════════════════════════════════════════════════════════════════════
# CHANGE REQUESTS
# ═════════════════════════════════════════════════════════════════════════════

@commitments_bp.route("/<int:commitment_id>/change-requests", methods=["GET"])
@require_auth
def list_change_requests(commitment_id):
    items = change_request_service.list_change_requests(current_auth(), commitment_id)
    return jsonify({"items": [cr.to_dict() for cr in items]})


@commitments_bp.route("/<int:commitment_id>/change-requests", methods=["POST"])
@require_auth
def raise_change_request(commitment_id):
    """Body: { reason }"""
    change_request = change_request_service.raise_change_request(
        current_auth(), commitment_id, _body().get("reason"),
    )
    return jsonify({"change_request": change_request.to_dict()}), 201


@commitments_bp.route(
    "/<int:commitment_id>/change-requests/<int:change_request_id>/accept", methods=["POST"],
)
@require_auth
def accept_change_request(commitment_id, change_request_id):
    """Body: patch fields for the new version + assigned_to_user_id? + resolution_note?"""
    ctx = current_auth()
    data = _body()
    patch = {k: v for k, v in data.items() if k not in _CONTROL_KEYS}
    new_version = change_request_service.accept_change_request(
        ctx,
        commitment_id,
        change_request_id,
        patch,
        assigned_to_user_id=_int_or_none(data.get("assigned_to_user_id")),
        resolution_note=data.get("resolution_note"),
    )
    return jsonify({"commitment": serialize_commitment(new_version, ctx)}), 201


@commitments_bp.route(
    "/<int:commitment_id>/change-requests/<int:change_request_id>/reject", methods=["POST"],
)
@require_auth
def reject_change_request(commitment_id, change_request_id):
    change_request = change_request_service.reject_change_request(
        current_auth(), commitment_id, change_request_id,
        resolution_note=_body().get("resolution_note"),
    )
    return jsonify({"status": change_request.status, "change_request": change_request.to_dict()})
