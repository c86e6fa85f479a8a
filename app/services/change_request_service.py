"""
Change-request engine.

A change request interrupts a commitment version and is resolved once:

    open_change_request     shared by the public request_change action and
                            the internal raise_change_request
    accept_change_request   forks version N+1 (AWAITING_CLIENT_APPROVAL);
                            the predecessor row keeps its status
    reject_change_request   restores the commitment's previous_status

The "one OPEN request per commitment" rule is checked up front and again
by the partial unique index uq_change_requests_one_open, so a race
between two requesters still ends in CONFLICT for one of them.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, InvalidStateError, ValidationError
from app.core.identity import AuthContext, ClientActor, UserActor
from app.models import db
from app.models.audit import append_event
from app.models.change_request import (
    CR_STATUS_ACCEPTED,
    CR_STATUS_OPEN,
    CR_STATUS_REJECTED,
    CR_STATUSES,
    REQUESTED_BY_USER,
    ChangeRequest,
)
from app.models.commitment import (
    STATUS_AWAITING_CLIENT_APPROVAL,
    STATUS_CHANGE_REQUEST_CREATED,
    STATUS_DELIVERED,
    STATUS_IN_PROGRESS,
    Commitment,
)
from app.services.commitment_service import (
    check_amount,
    create_commitment_core,
    ensure_assignee,
    get_commitment,
    load_for_mutation,
)
from app.services.helpers.scoped_queries import get_scoped
from app.services.plan_service import FEATURE_ASSIGN_COMMITMENT, require_feature
from app.services.versioning import build_fork_payload

logger = logging.getLogger(__name__)

USER_RAISABLE_STATUSES = frozenset({
    STATUS_AWAITING_CLIENT_APPROVAL,
    STATUS_IN_PROGRESS,
    STATUS_DELIVERED,
})
MAX_REASON_LENGTH = 1000
QUEUE_DEFAULT_LIMIT = 50
QUEUE_MAX_LIMIT = 200


def _has_open_request(org_id: int, commitment_id: int) -> bool:
    return db.session.execute(
        select(ChangeRequest.id).where(
            ChangeRequest.org_id == org_id,
            ChangeRequest.commitment_id == commitment_id,
            ChangeRequest.status == CR_STATUS_OPEN,
        )
    ).first() is not None


def open_change_request(
    org_id: int,
    commitment: Commitment,
    reason: str,
    requested_by_type: str,
    requester: UserActor | ClientActor,
    meta: dict | None = None,
) -> ChangeRequest:
    """Insert an OPEN change request against the commitment's current version.

    Flushes only. Raises ConflictError when one is already open.
    """
    if _has_open_request(org_id, commitment.id):
        raise ConflictError(
            resource="ChangeRequest", field="commitment_id", value=str(commitment.id),
            message="Change request already open",
        )

    change_request = ChangeRequest(
        org_id=org_id,
        commitment_id=commitment.id,
        commitment_version=commitment.version,
        reason=(reason or "").strip(),
        status=CR_STATUS_OPEN,
        previous_status=commitment.status,
        requested_by_type=requested_by_type,
        meta=meta or {},
    )
    if isinstance(requester, UserActor):
        change_request.requested_by_user_id = requester.user_id
    else:
        change_request.requested_by_name = requester.name
        change_request.requested_by_email = requester.email

    db.session.add(change_request)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(
            resource="ChangeRequest", field="commitment_id", value=str(commitment.id),
            message="Change request already open",
        )
    return change_request


def raise_change_request(ctx: AuthContext, commitment_id: int, reason: str | None) -> ChangeRequest:
    """Internal user asks for a change on behalf of the client."""
    commitment = load_for_mutation(ctx, commitment_id)
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("reason is required", details={"reason": "required"})
    if len(reason) > MAX_REASON_LENGTH:
        raise ValidationError(f"reason must be at most {MAX_REASON_LENGTH} characters")
    if commitment.status not in USER_RAISABLE_STATUSES:
        raise InvalidStateError("Change request cannot be raised in the current state")

    change_request = open_change_request(
        ctx.org_id, commitment, reason, REQUESTED_BY_USER, ctx.as_actor(),
    )
    version = commitment.version
    commitment.status = STATUS_CHANGE_REQUEST_CREATED
    append_event(
        org_id=ctx.org_id,
        commitment_id=commitment.id,
        commitment_version=version,
        actor=ctx.as_actor(),
        event_type="USER_REQUESTED_CHANGE",
        message=reason,
        meta={"change_request_id": change_request.id},
    )
    db.session.commit()
    return change_request


def list_change_requests(ctx: AuthContext, commitment_id: int) -> list[ChangeRequest]:
    commitment = get_commitment(ctx, commitment_id)
    return list(db.session.execute(
        select(ChangeRequest)
        .where(ChangeRequest.org_id == ctx.org_id, ChangeRequest.commitment_id == commitment.id)
        .order_by(ChangeRequest.created_at.desc(), ChangeRequest.id.desc())
    ).scalars())


def list_change_request_queue(
    ctx: AuthContext,
    status: str | None = None,
    commitment_id: int | None = None,
    page: int = 1,
    limit: int = QUEUE_DEFAULT_LIMIT,
) -> dict:
    """Org-wide queue with a commitment summary per request."""
    if status and status not in CR_STATUSES:
        raise ValidationError(f"status must be one of {sorted(CR_STATUSES)}")

    clauses = [ChangeRequest.org_id == ctx.org_id, Commitment.org_id == ctx.org_id]
    if status:
        clauses.append(ChangeRequest.status == status)
    if commitment_id:
        clauses.append(ChangeRequest.commitment_id == commitment_id)
    if ctx.is_manager:
        clauses.append(Commitment.assigned_to_user_id == ctx.user_id)

    page = max(int(page or 1), 1)
    limit = min(max(int(limit or QUEUE_DEFAULT_LIMIT), 1), QUEUE_MAX_LIMIT)
    joined = select(ChangeRequest, Commitment).join(
        Commitment, Commitment.id == ChangeRequest.commitment_id,
    ).where(*clauses)

    total = db.session.execute(
        select(func.count(ChangeRequest.id))
        .select_from(ChangeRequest)
        .join(Commitment, Commitment.id == ChangeRequest.commitment_id)
        .where(*clauses)
    ).scalar_one()
    rows = db.session.execute(
        joined.order_by(ChangeRequest.created_at.desc(), ChangeRequest.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).unique().all()

    items = []
    for change_request, commitment in rows:
        item = change_request.to_dict()
        item["commitment"] = {
            "id": commitment.id,
            "title": commitment.title,
            "status": commitment.status,
            "version": commitment.version,
            "client_snapshot": commitment.client_snapshot,
            "assigned_to_user_id": commitment.assigned_to_user_id,
        }
        items.append(item)
    return {"items": items, "page": page, "limit": limit, "total": total}


def _load_open_request(ctx: AuthContext, commitment_id: int, change_request_id: int):
    commitment = load_for_mutation(ctx, commitment_id)
    change_request = get_scoped(
        ChangeRequest, change_request_id,
        org_id=ctx.org_id,
        resource="Change request",
        commitment_id=commitment.id,
        status=CR_STATUS_OPEN,
    )
    return commitment, change_request


def accept_change_request(
    ctx: AuthContext,
    commitment_id: int,
    change_request_id: int,
    patch: dict | None = None,
    assigned_to_user_id: int | None = None,
    resolution_note: str | None = None,
) -> Commitment:
    """Fork version N+1 from the patched content of version N.

    The new row starts in AWAITING_CLIENT_APPROVAL with the same root. The
    predecessor row is not modified; its history gains CHANGE_REQUEST_ACCEPTED.
    """
    previous, change_request = _load_open_request(ctx, commitment_id, change_request_id)
    patch = patch or {}
    if patch.get("amount") is not None:
        check_amount(patch["amount"])

    if assigned_to_user_id:
        require_feature(ctx, FEATURE_ASSIGN_COMMITMENT)
        assignee = ensure_assignee(ctx.org_id, assigned_to_user_id)
    else:
        assignee = previous.assigned_to_user_id

    values = build_fork_payload(previous, patch, ctx.user_id)
    new_version = create_commitment_core(
        ctx.org_id, ctx.user_id, values,
        assigned_to_user_id=assignee,
        version=(previous.version or 1) + 1,
        status=STATUS_AWAITING_CLIENT_APPROVAL,
        root_commitment_id=previous.root_commitment_id or previous.id,
        previous_commitment_id=previous.id,
        change_request_id=change_request.id,
        snapshot_fallback={
            "client_name_snapshot": previous.client_name_snapshot,
            "client_email_snapshot": previous.client_email_snapshot,
            "client_company_snapshot": previous.client_company_snapshot,
        },
    )

    change_request.status = CR_STATUS_ACCEPTED
    change_request.resolved_at = datetime.now(timezone.utc)
    change_request.resolved_by_user_id = ctx.user_id
    change_request.resolution_note = resolution_note or None
    change_request.created_version_id = new_version.id

    append_event(
        org_id=ctx.org_id,
        commitment_id=previous.id,
        commitment_version=previous.version,
        actor=ctx.as_actor(),
        event_type="CHANGE_REQUEST_ACCEPTED",
        message=str(new_version.id),
        meta={"change_request_id": change_request.id, "created_version_id": new_version.id},
    )
    db.session.commit()

    logger.info(
        "Change request accepted, forked v%s", new_version.version,
        extra={"org_id": ctx.org_id, "user_id": ctx.user_id, "commitment_id": new_version.id,
               "commitment_version": new_version.version, "change_request_id": change_request.id},
    )
    return new_version


def reject_change_request(
    ctx: AuthContext,
    commitment_id: int,
    change_request_id: int,
    resolution_note: str | None = None,
) -> ChangeRequest:
    """Close the request and return the commitment to its pre-request status."""
    commitment, change_request = _load_open_request(ctx, commitment_id, change_request_id)

    change_request.status = CR_STATUS_REJECTED
    change_request.resolved_at = datetime.now(timezone.utc)
    change_request.resolved_by_user_id = ctx.user_id
    change_request.resolution_note = resolution_note or None
    if change_request.previous_status:
        commitment.status = change_request.previous_status

    append_event(
        org_id=ctx.org_id,
        commitment_id=commitment.id,
        commitment_version=commitment.version,
        actor=ctx.as_actor(),
        event_type="CHANGE_REQUEST_REJECTED",
        message=resolution_note or "Rejected",
        meta={"change_request_id": change_request.id},
    )
    db.session.commit()

    logger.info(
        "Change request rejected",
        extra={"org_id": ctx.org_id, "user_id": ctx.user_id, "commitment_id": commitment.id,
               "change_request_id": change_request.id},
    )
    return change_request
