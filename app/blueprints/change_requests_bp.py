"""
Change Request queue Blueprint.

Routes:
  GET /api/v1/change-requests   – org-wide queue (?status=&commitment_id=&page=&limit=)
"""

from flask import Blueprint, jsonify, request

from app.auth import current_auth, require_auth
from app.services.change_request_service import (
    QUEUE_DEFAULT_LIMIT,
    QUEUE_MAX_LIMIT,
    list_change_request_queue,
)
from app.utils.errors import register_error_handlers
from app.utils.helpers import parse_pagination

change_requests_bp = Blueprint("change_requests", __name__, url_prefix="/api/v1/change-requests")
register_error_handlers(change_requests_bp)


@change_requests_bp.route("", methods=["GET"])
@require_auth
def list_queue():
    page, limit = parse_pagination(
        request.args, default_limit=QUEUE_DEFAULT_LIMIT, max_limit=QUEUE_MAX_LIMIT,
    )
    result = list_change_request_queue(
        current_auth(),
        status=request.args.get("status") or None,
        commitment_id=request.args.get("commitment_id", type=int),
        page=page,
        limit=limit,
    )
    return jsonify(result)
