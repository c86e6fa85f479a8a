"""
Public secure-link Blueprint — no authentication; the token is the capability.

Routes:
  GET  /api/v1/public/approve/<token>   – preview (burns nothing)
  POST /api/v1/public/approve/<token>   – { action: approve | request_change, comment? }
  GET  /api/v1/public/accept/<token>    – preview
  POST /api/v1/public/accept/<token>    – { comment? }

Requester IP (X-Forwarded-For aware) and user agent are stored on the
resulting audit event.
"""

import logging

from flask import Blueprint, jsonify, request

from app.models.secure_link import PURPOSE_ACCEPTANCE, PURPOSE_APPROVAL
from app.services import public_link_service
from app.services.public_link_service import ACTION_REQUEST_CHANGE
from app.utils.errors import E, api_error, register_error_handlers
from app.utils.helpers import request_meta

logger = logging.getLogger(__name__)

public_bp = Blueprint("public", __name__, url_prefix="/api/v1/public")
register_error_handlers(public_bp)

MAX_COMMENT_LENGTH = 1000


def _comment(data: dict):
    comment = data.get("comment")
    if comment is None:
        return None, None
    if not isinstance(comment, str):
        return None, api_error(E.VALIDATION_ERROR, "comment must be a string")
    comment = comment.strip()
    if len(comment) > MAX_COMMENT_LENGTH:
        return None, api_error(
            E.VALIDATION_ERROR, f"comment must be at most {MAX_COMMENT_LENGTH} characters",
        )
    return comment or None, None


@public_bp.route("/approve/<token>", methods=["GET"])
def preview_approval(token):
    return jsonify(public_link_service.preview_link(token, PURPOSE_APPROVAL))


@public_bp.route("/approve/<token>", methods=["POST"])
def consume_approval(token):
    data = request.get_json(silent=True) or {}
    action = data.get("action")
    comment, err = _comment(data)
    if err:
        return err
    if action == ACTION_REQUEST_CHANGE and not comment:
        return api_error(E.VALIDATION_ERROR, "comment is required to request a change")

    result = public_link_service.consume_approval_token(
        token, action, comment=comment, meta=request_meta(),
    )
    return jsonify(result)


@public_bp.route("/accept/<token>", methods=["GET"])
def preview_acceptance(token):
    return jsonify(public_link_service.preview_link(token, PURPOSE_ACCEPTANCE))


@public_bp.route("/accept/<token>", methods=["POST"])
def consume_acceptance(token):
    data = request.get_json(silent=True) or {}
    comment, err = _comment(data)
    if err:
        return err
    result = public_link_service.consume_acceptance_token(
        token, comment=comment, meta=request_meta(),
    )
    return jsonify(result)
