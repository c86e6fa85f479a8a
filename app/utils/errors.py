"""Standardised API error responses.

Usage
-----
    from app.utils.errors import api_error, register_error_handlers, E

    register_error_handlers(commitments_bp)

    return api_error(E.VALIDATION_ERROR, "title is required")
"""

from __future__ import annotations

import logging

from flask import jsonify

from app.core.exceptions import (
    CommitmentCoreError,
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    LinkInvalidError,
    LinkOldVersionError,
    NotFoundError,
    PlanForbiddenError,
    ValidationError,
)
from app.models import db

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (mirror ``CommitmentCoreError.code``)."""

    VALIDATION_ERROR = ValidationError.code
    NOT_FOUND = NotFoundError.code
    CONFLICT = ConflictError.code
    INVALID_STATE = InvalidStateError.code
    FORBIDDEN = ForbiddenError.code
    PLAN_FORBIDDEN = PlanForbiddenError.code
    LINK_INVALID = LinkInvalidError.code
    LINK_OLD_VERSION = LinkOldVersionError.code
    INTERNAL = "INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_ERROR: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT: 409,
    E.INVALID_STATE: 400,
    E.FORBIDDEN: 403,
    E.PLAN_FORBIDDEN: 403,
    E.LINK_INVALID: 400,
    E.LINK_OLD_VERSION: 400,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field errors, link versions, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_error_handlers(bp) -> None:
    """Attach taxonomy → HTTP handlers to a blueprint.

    Every handler rolls back the session first so a guard failure can
    never leave a half-applied change behind.
    """

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(exc: NotFoundError):
        db.session.rollback()
        logger.info("Not found: %s", exc)
        return api_error(E.NOT_FOUND, exc.public_message)

    @bp.errorhandler(CommitmentCoreError)
    def _handle_core_error(exc: CommitmentCoreError):
        db.session.rollback()
        logger.info("%s: %s", exc.code, exc)
        return api_error(exc.code, str(exc), details=exc.details or None)

    @bp.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        # HTTPExceptions (404 routing, 405, 413, 415, 429) keep their own response
        from werkzeug.exceptions import HTTPException

        if isinstance(exc, HTTPException):
            return exc
        db.session.rollback()
        logger.exception("Unhandled error in %s", bp.name)
        return api_error(E.INTERNAL, "Internal server error")
