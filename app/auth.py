"""
Authentication & Authorization boundary.

Provides:
    - require_auth decorator: turns the JWT claims parsed by
      app.middleware.jwt_auth into an AuthContext on ``g.auth``
    - current_auth(): accessor used by blueprints to hand the context to services
    - CSRF protection for state-changing requests (non-GET/HEAD/OPTIONS)

Security model:
    - Every internal /api/v1/* endpoint requires a Bearer access token
      whose user still exists, is active and belongs to the claimed org
    - /api/v1/public/* (secure links) and /api/v1/health never require one
"""

import functools
import logging

from flask import g, jsonify, request

from app.core.identity import AuthContext
from app.models import db
from app.models.auth import VALID_ROLES, User

logger = logging.getLogger(__name__)


def _resolve_context() -> AuthContext | None:
    user_id = getattr(g, "jwt_user_id", None)
    org_id = getattr(g, "jwt_org_id", None)
    role = getattr(g, "jwt_role", None)
    if not user_id or not org_id or role not in VALID_ROLES:
        return None

    user = db.session.get(User, user_id)
    if user is None or not user.is_active or user.org_id != org_id:
        logger.warning(
            "Rejected token for user=%s org=%s (missing, inactive or org mismatch)",
            user_id, org_id,
        )
        return None

    # The stored role wins over a stale token claim
    return AuthContext(user_id=user.id, org_id=user.org_id, role=user.role)


# ── Authentication decorator ─────────────────────────────────────────────────

def require_auth(f):
    """
    Decorator: require a valid access token for the endpoint.

    Sets ``g.auth`` to the caller's AuthContext.
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        ctx = _resolve_context()
        if ctx is None:
            return jsonify({"error": "Authentication required", "code": "UNAUTHORIZED"}), 401
        g.auth = ctx
        return f(*args, **kwargs)

    return decorated


def current_auth() -> AuthContext:
    """AuthContext set by ``require_auth`` for the current request."""
    return g.auth


# ── CSRF protection for API ──────────────────────────────────────────────────

def _check_content_type():
    """
    For state-changing requests (POST/PUT/PATCH/DELETE), require
    Content-Type: application/json. This acts as a lightweight CSRF mitigation
    because HTML forms cannot send application/json content type.
    """
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        ct = request.content_type or ""
        if "application/json" not in ct and request.content_length and request.content_length > 0:
            return jsonify({
                "error": "Content-Type must be application/json for state-changing requests",
                "code": "UNSUPPORTED_MEDIA_TYPE",
            }), 415
    return None


def init_auth(app):
    """Install the Content-Type check for API routes."""
    @app.before_request
    def _before_request_auth():
        if not request.path.startswith("/api/v1/"):
            return None
        if request.method == "OPTIONS":
            return None
        return _check_content_type()

    logger.info("Auth middleware installed")
