"""
Commitment lifecycle state machine — internal (authenticated) operations.

    create_commitment     DRAFT (or INTERNAL_REVIEW), version 1, root = self
    list / get / lineage / history
    update_commitment     locked-field guards + in-place version bump
    assign_commitment     plan-gated reassignment
    mark_delivered        IN_PROGRESS → DELIVERED | CLOSED (auto-accept)
    send_approval_link    DRAFT / INTERNAL_REVIEW (+ AWAITING on resend) → AWAITING
    send_acceptance_link  DELIVERED only

Every successful transition appends exactly one ApprovalEvent and commits
once; a failed guard raises before anything is written. Token consumption
(the client side of the machine) lives in public_link_service.

Manager scoping:
    reads      manager predicate is part of the SELECT (→ 404)
    mutations  fetch by org, then _assert_assigned (→ 403)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import NotSupportedError

from app.core.exceptions import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from app.core.identity import AuthContext, UserActor
from app.models import db
from app.models.audit import append_event, list_events
from app.models.auth import ROLE_MANAGER, User
from app.models.client import Client
from app.models.commitment import (
    DEFAULT_CURRENCY,
    DELIVERABLE_DONE_STATUSES,
    DELIVERABLES_LOCKED_STATUSES,
    LOCKED_FIELDS,
    LOCKED_STATUSES,
    STATUS_AWAITING_CLIENT_APPROVAL,
    STATUS_CLOSED,
    STATUS_DELIVERED,
    STATUS_DRAFT,
    STATUS_IN_PROGRESS,
    STATUS_INTERNAL_REVIEW,
    TERMS_LOCKED_STATUSES,
    ApprovalRules,
    Commitment,
)
from app.models.secure_link import PURPOSE_ACCEPTANCE, PURPOSE_APPROVAL
from app.services.client_service import get_client_or_snapshot, snapshot_client
from app.services.commitment_payload import (
    normalize_attachments,
    normalize_deliverables,
    normalize_milestones,
    normalize_payment_terms,
)
from app.services.email_service import (
    TEMPLATE_ACCEPTANCE_REQUEST,
    TEMPLATE_APPROVAL_REQUEST,
    dispatch_link_email,
)
from app.services.helpers.scoped_queries import get_scoped, get_scoped_or_none
from app.services.plan_service import (
    FEATURE_ACCEPTANCE_PROOF,
    FEATURE_ASSIGN_COMMITMENT,
    can_use,
    get_organization,
    require_feature,
)
from app.services.secure_link_service import issue_link
from app.services.versioning import apply_version_bump, needs_version_bump
from app.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

CREATABLE_STATUSES = frozenset({STATUS_DRAFT, STATUS_INTERNAL_REVIEW})
MAX_LIST_LIMIT = 100
MONETARY_FIELDS = ("amount", "currency")


# ── Private helpers ────────────────────────────────────────────────────────────


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _read_scope(ctx: AuthContext) -> dict:
    """Extra predicates for reads: managers only see their assignments."""
    return {"assigned_to_user_id": ctx.user_id} if ctx.is_manager else {}


def _assert_assigned(commitment: Commitment, ctx: AuthContext) -> None:
    if ctx.is_manager and commitment.assigned_to_user_id != ctx.user_id:
        logger.info(
            "Manager outside assignment",
            extra={"org_id": ctx.org_id, "user_id": ctx.user_id, "commitment_id": commitment.id},
        )
        raise ForbiddenError("Not allowed")


def load_for_mutation(ctx: AuthContext, commitment_id: int) -> Commitment:
    commitment = get_scoped(Commitment, commitment_id, org_id=ctx.org_id, resource="Commitment")
    _assert_assigned(commitment, ctx)
    return commitment


def ensure_assignee(org_id: int, user_id: int | None) -> int | None:
    """Active user of the same organization, or NOT_FOUND."""
    if not user_id:
        return None
    user = db.session.execute(
        select(User).where(User.id == user_id, User.org_id == org_id, User.is_active.is_(True))
    ).scalar_one_or_none()
    if user is None:
        raise NotFoundError(resource="Assignee", resource_id=user_id, org_id=org_id)
    return user.id


def _flush_or_commit(step_commit: bool) -> None:
    if step_commit:
        db.session.commit()
    else:
        db.session.flush()


def check_amount(amount) -> None:
    if amount is None:
        return
    if isinstance(amount, bool) or not isinstance(amount, int | float):
        raise ValidationError("amount must be a number", details={"amount": "invalid"})
    if amount < 0:
        raise ValidationError("amount must not be negative", details={"amount": "negative"})


def _validate_create(data: dict, org_defaults: dict, user_id: int) -> dict:
    """Caller payload → normalised column values for a new version 1."""
    errors = {}
    if not data.get("client_id"):
        errors["client_id"] = "required"
    title = data.get("title")
    if not isinstance(title, str) or not title.strip():
        errors["title"] = "required"
    scope_description = data.get("scope_description")
    if not isinstance(scope_description, str) or not scope_description.strip():
        errors["scope_description"] = "required"
    status = data.get("status") or STATUS_DRAFT
    if status not in CREATABLE_STATUSES:
        errors["status"] = f"must be one of {sorted(CREATABLE_STATUSES)}"
    if errors:
        raise ValidationError("Invalid commitment payload", details=errors)

    check_amount(data.get("amount"))
    scope_title = data.get("scope_title")
    currency = data.get("currency")
    return {
        "client_id": data["client_id"],
        "title": title.strip(),
        "scope_title": scope_title.strip() if isinstance(scope_title, str) and scope_title.strip() else None,
        "scope_description": scope_description,
        "amount": data.get("amount"),
        "currency": currency.strip().upper() if isinstance(currency, str) and currency.strip() else DEFAULT_CURRENCY,
        "attachments": normalize_attachments(data.get("attachments"), user_id),
        "payment_terms": normalize_payment_terms(data.get("payment_terms")),
        "milestones": normalize_milestones(data.get("milestones")),
        "deliverables": normalize_deliverables(data.get("deliverables")),
        "approval_rules": ApprovalRules.normalize(
            data.get("approval_rules") if isinstance(data.get("approval_rules"), dict) else None,
            fallback=org_defaults,
        ).to_dict(),
        "status": status,
    }


def create_commitment_core(
    org_id: int,
    user_id: int,
    values: dict,
    *,
    assigned_to_user_id: int | None,
    version: int = 1,
    status: str = STATUS_DRAFT,
    root_commitment_id: int | None = None,
    previous_commitment_id: int | None = None,
    change_request_id: int | None = None,
    snapshot_fallback: dict | None = None,
    step_commit: bool = False,
) -> Commitment:
    """Insert one commitment version plus its COMMITMENT_CREATED event.

    Flushes by default so the caller owns the transaction. With
    ``step_commit`` every write is committed on its own.
    """
    client = get_scoped_or_none(Client, values.get("client_id"), org_id=org_id)
    if client is not None:
        snapshot = snapshot_client(client)
    elif snapshot_fallback is not None:
        snapshot = snapshot_fallback
    else:
        raise NotFoundError(resource="Client", resource_id=values.get("client_id"), org_id=org_id)

    commitment = Commitment(
        org_id=org_id,
        client_id=client.id if client is not None else None,
        **snapshot,
        title=values["title"],
        scope_title=values.get("scope_title"),
        scope_description=values["scope_description"],
        amount=values.get("amount"),
        currency=values.get("currency") or DEFAULT_CURRENCY,
        payment_terms=values.get("payment_terms") or [],
        milestones=values.get("milestones") or [],
        deliverables=values.get("deliverables") or [],
        attachments=values.get("attachments") or [],
        approval_rules=values.get("approval_rules") or ApprovalRules().to_dict(),
        status=status,
        version=version,
        root_commitment_id=root_commitment_id,
        previous_commitment_id=previous_commitment_id,
        change_request_id=change_request_id,
        created_by_user_id=user_id,
        assigned_to_user_id=assigned_to_user_id,
    )
    db.session.add(commitment)
    _flush_or_commit(step_commit)

    if commitment.root_commitment_id is None:
        commitment.root_commitment_id = commitment.id
        _flush_or_commit(step_commit)

    append_event(
        org_id=org_id,
        commitment_id=commitment.id,
        commitment_version=commitment.version,
        actor=UserActor(user_id=user_id),
        event_type="COMMITMENT_CREATED",
        message=commitment.title,
    )
    _flush_or_commit(step_commit)
    return commitment


def _recipient(commitment: Commitment) -> dict:
    recipient = get_client_or_snapshot(commitment)
    if not recipient.get("email"):
        raise NotFoundError(resource="Client", resource_id=commitment.client_id, org_id=commitment.org_id)
    return recipient


def _notify(commitment: Commitment, recipient: dict, template_name: str, url: str) -> None:
    org = get_organization(commitment.org_id)
    dispatch_link_email(
        commitment=commitment,
        recipient=recipient,
        template_name=template_name,
        link=url,
        org_name=org.name,
    )


# ── Serialization ──────────────────────────────────────────────────────────────


def sanitize_commitment_for_role(data: dict, role: str) -> dict:
    """Strip monetary fields for roles that must not see them."""
    if data is None or role != ROLE_MANAGER:
        return data
    return {k: v for k, v in data.items() if k not in MONETARY_FIELDS}


def serialize_commitment(commitment: Commitment, ctx: AuthContext, **kwargs) -> dict:
    return sanitize_commitment_for_role(commitment.to_dict(**kwargs), ctx.role)


# ── Create / read ──────────────────────────────────────────────────────────────


def create_commitment(
    ctx: AuthContext,
    data: dict,
    assigned_to_user_id: int | None = None,
    send_approval: bool = False,
) -> Commitment:
    """Create version 1 of a commitment.

    The assignee defaults to the creator; an explicit assignee requires
    the ASSIGN_COMMITMENT feature. When the store cannot run the writes
    in one transaction, they are retried committing step by step.
    """
    can_assign = can_use(ctx, FEATURE_ASSIGN_COMMITMENT)
    if assigned_to_user_id and not can_assign:
        require_feature(ctx, FEATURE_ASSIGN_COMMITMENT)
    effective_assignee = assigned_to_user_id if (can_assign and assigned_to_user_id) else ctx.user_id

    org = get_organization(ctx.org_id)
    values = _validate_create(data, org.approval_defaults or {}, ctx.user_id)
    status = values.pop("status")

    def _write(step_commit: bool) -> Commitment:
        assignee = ensure_assignee(ctx.org_id, effective_assignee)
        return create_commitment_core(
            ctx.org_id, ctx.user_id, values,
            assigned_to_user_id=assignee,
            status=status,
            step_commit=step_commit,
        )

    try:
        commitment = _write(step_commit=False)
        db.session.commit()
    except NotSupportedError:
        db.session.rollback()
        logger.warning(
            "Transactional create unsupported, retrying step by step",
            extra={"org_id": ctx.org_id, "user_id": ctx.user_id},
        )
        commitment = _write(step_commit=True)

    logger.info(
        "Commitment created",
        extra={"org_id": ctx.org_id, "user_id": ctx.user_id,
               "commitment_id": commitment.id, "commitment_version": commitment.version},
    )

    if send_approval:
        send_approval_link(ctx, commitment.id)
    return commitment


def list_commitments(ctx: AuthContext, filters: dict | None = None) -> dict:
    """Page of commitments, newest ``updated_at`` first."""
    filters = filters or {}
    clauses = [Commitment.org_id == ctx.org_id]

    if filters.get("status"):
        clauses.append(Commitment.status == filters["status"])
    if filters.get("client_id"):
        clauses.append(Commitment.client_id == filters["client_id"])
    if filters.get("assigned_to"):
        clauses.append(Commitment.assigned_to_user_id == filters["assigned_to"])
    created_from = parse_datetime(filters.get("from"))
    if created_from:
        clauses.append(Commitment.created_at >= created_from)
    created_to = parse_datetime(filters.get("to"))
    if created_to:
        clauses.append(Commitment.created_at <= created_to)
    if ctx.is_manager:
        clauses.append(Commitment.assigned_to_user_id == ctx.user_id)

    page = max(int(filters.get("page") or 1), 1)
    limit = min(max(int(filters.get("limit") or 20), 1), MAX_LIST_LIMIT)

    total = db.session.execute(select(func.count(Commitment.id)).where(*clauses)).scalar_one()
    items = db.session.execute(
        select(Commitment)
        .where(*clauses)
        .order_by(Commitment.updated_at.desc(), Commitment.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).unique().scalars().all()

    return {"items": list(items), "page": page, "limit": limit, "total": total}


def get_commitment(ctx: AuthContext, commitment_id: int) -> Commitment:
    return get_scoped(
        Commitment, commitment_id, org_id=ctx.org_id, resource="Commitment", **_read_scope(ctx),
    )


def get_lineage(ctx: AuthContext, commitment_id: int) -> list[Commitment]:
    """Every version sharing this commitment's root, oldest first."""
    commitment = get_commitment(ctx, commitment_id)
    root_id = commitment.root_commitment_id or commitment.id
    stmt = select(Commitment).where(
        Commitment.org_id == ctx.org_id,
        Commitment.root_commitment_id == root_id,
    )
    if ctx.is_manager:
        stmt = stmt.where(Commitment.assigned_to_user_id == ctx.user_id)
    return list(db.session.execute(stmt.order_by(Commitment.version.asc())).unique().scalars())


def get_history(ctx: AuthContext, commitment_id: int):
    commitment = get_commitment(ctx, commitment_id)
    return list_events(org_id=ctx.org_id, commitment_id=commitment.id)


# ── Update ─────────────────────────────────────────────────────────────────────


def _check_edit_locks(commitment: Commitment, patch: dict) -> None:
    status = commitment.status
    if isinstance(patch.get("deliverables"), list) and status in DELIVERABLES_LOCKED_STATUSES:
        raise InvalidStateError("Deliverables cannot be edited after delivery")
    if isinstance(patch.get("payment_terms"), list) and status in TERMS_LOCKED_STATUSES:
        raise InvalidStateError("Payment terms cannot be edited after delivery")
    if isinstance(patch.get("milestones"), list) and status in TERMS_LOCKED_STATUSES:
        raise InvalidStateError("Milestones cannot be edited after delivery")

    is_locked = status in LOCKED_STATUSES or (
        status == STATUS_AWAITING_CLIENT_APPROVAL and commitment.change_request_id is None
    )
    if is_locked and any(patch.get(field) is not None for field in LOCKED_FIELDS):
        raise InvalidStateError("Commitment is locked after approval")


def _collect_updates(commitment: Commitment, patch: dict, user_id: int) -> dict:
    """Well-typed patch entries, normalised. Anything else is ignored."""
    updates = {}
    if isinstance(patch.get("title"), str):
        title = patch["title"].strip()
        if not title:
            raise ValidationError("title must not be empty", details={"title": "required"})
        updates["title"] = title
    if isinstance(patch.get("scope_title"), str):
        updates["scope_title"] = patch["scope_title"].strip()
    if isinstance(patch.get("scope_description"), str):
        updates["scope_description"] = patch["scope_description"]
    amount = patch.get("amount")
    if isinstance(amount, int | float) and not isinstance(amount, bool):
        check_amount(amount)
        updates["amount"] = amount
    if isinstance(patch.get("currency"), str) and patch["currency"].strip():
        updates["currency"] = patch["currency"].strip().upper()

    if isinstance(patch.get("attachments"), list):
        updates["attachments"] = normalize_attachments(patch["attachments"], user_id)
    if isinstance(patch.get("payment_terms"), list):
        updates["payment_terms"] = normalize_payment_terms(patch["payment_terms"])
    if isinstance(patch.get("milestones"), list):
        updates["milestones"] = normalize_milestones(patch["milestones"])
    if isinstance(patch.get("deliverables"), list):
        updates["deliverables"] = normalize_deliverables(patch["deliverables"])

    if isinstance(patch.get("approval_rules"), dict):
        merged = {**commitment.rules.to_dict(), **patch["approval_rules"]}
        updates["approval_rules"] = ApprovalRules.normalize(merged).to_dict()
    return updates


def update_commitment(ctx: AuthContext, commitment_id: int, patch: dict) -> Commitment:
    """Apply a partial edit; bump the version in place when promised content changed."""
    commitment = load_for_mutation(ctx, commitment_id)
    patch = patch or {}
    _check_edit_locks(commitment, patch)

    updates = _collect_updates(commitment, patch, ctx.user_id)
    if not updates:
        return commitment

    bumped = needs_version_bump(commitment, updates)
    for field, value in updates.items():
        setattr(commitment, field, value)
    if bumped:
        apply_version_bump(commitment)

    append_event(
        org_id=ctx.org_id,
        commitment_id=commitment.id,
        commitment_version=commitment.version,
        actor=ctx.as_actor(),
        event_type="SCOPE_TERMS_UPDATED_VERSION_BUMP" if bumped else "COMMITMENT_UPDATED",
        message="Scope/terms updated; re-approval required" if bumped else "Updated",
        meta={"fields": sorted(updates)},
    )
    db.session.commit()
    return commitment


def assign_commitment(ctx: AuthContext, commitment_id: int, assigned_to_user_id: int | None) -> Commitment:
    require_feature(ctx, FEATURE_ASSIGN_COMMITMENT)
    commitment = load_for_mutation(ctx, commitment_id)
    if not assigned_to_user_id:
        raise ValidationError("assigned_to_user_id is required",
                              details={"assigned_to_user_id": "required"})
    assignee_id = ensure_assignee(ctx.org_id, assigned_to_user_id)

    previous_assignee = commitment.assigned_to_user_id
    commitment.assigned_to_user_id = assignee_id
    append_event(
        org_id=ctx.org_id,
        commitment_id=commitment.id,
        commitment_version=commitment.version,
        actor=ctx.as_actor(),
        event_type="COMMITMENT_ASSIGNED",
        message=str(assignee_id),
        meta={"previous_assigned_to_user_id": previous_assignee},
    )
    db.session.commit()
    return commitment


# ── Delivery ───────────────────────────────────────────────────────────────────


def mark_delivered(ctx: AuthContext, commitment_id: int) -> Commitment:
    """IN_PROGRESS → DELIVERED, or straight to CLOSED when acceptance is not required."""
    commitment = load_for_mutation(ctx, commitment_id)
    if commitment.status != STATUS_IN_PROGRESS:
        raise InvalidStateError("Commitment is not in progress")

    deliverables = commitment.deliverables or []
    if any(str((d or {}).get("status") or "").upper() not in DELIVERABLE_DONE_STATUSES for d in deliverables):
        raise InvalidStateError("All deliverables must be delivered before marking delivered")

    acceptance_required = commitment.rules.acceptance_required
    now = _now()
    version = commitment.version
    commitment.delivered_at = now
    if acceptance_required:
        commitment.status = STATUS_DELIVERED
    else:
        commitment.status = STATUS_CLOSED
        commitment.accepted_at = now

    append_event(
        org_id=ctx.org_id,
        commitment_id=commitment.id,
        commitment_version=version,
        actor=ctx.as_actor(),
        event_type="MARKED_DELIVERED" if acceptance_required else "MARKED_DELIVERED_AUTO_ACCEPTED",
        message="Delivered" if acceptance_required else "Delivered (auto-accepted)",
    )
    db.session.commit()
    return commitment


# ── Secure link issuance ───────────────────────────────────────────────────────


def send_approval_link(ctx: AuthContext, commitment_id: int, resend: bool = False) -> str:
    """Move to AWAITING_CLIENT_APPROVAL and issue a fresh APPROVAL link. Returns its URL."""
    commitment = load_for_mutation(ctx, commitment_id)
    allowed = {STATUS_DRAFT, STATUS_INTERNAL_REVIEW}
    if resend:
        allowed.add(STATUS_AWAITING_CLIENT_APPROVAL)
    if commitment.status not in allowed:
        raise InvalidStateError("Commitment is not ready for client approval")

    recipient = _recipient(commitment)
    commitment.approval_sent_at = _now()
    commitment.status = STATUS_AWAITING_CLIENT_APPROVAL
    url = issue_link(commitment, PURPOSE_APPROVAL)
    append_event(
        org_id=ctx.org_id,
        commitment_id=commitment.id,
        commitment_version=commitment.version,
        actor=ctx.as_actor(),
        event_type="APPROVAL_LINK_RESENT" if resend else "APPROVAL_LINK_SENT",
        message=recipient["email"],
    )
    db.session.commit()

    _notify(commitment, recipient, TEMPLATE_APPROVAL_REQUEST, url)
    return url


def send_acceptance_link(ctx: AuthContext, commitment_id: int, resend: bool = False) -> str:
    """Issue a fresh ACCEPTANCE link for a DELIVERED commitment. Returns its URL."""
    commitment = load_for_mutation(ctx, commitment_id)
    require_feature(ctx, FEATURE_ACCEPTANCE_PROOF)
    if not commitment.rules.acceptance_required:
        raise InvalidStateError("Acceptance not required for this commitment")
    if commitment.delivered_at is None or commitment.status != STATUS_DELIVERED:
        raise InvalidStateError("Acceptance can be sent only after delivery")

    recipient = _recipient(commitment)
    url = issue_link(commitment, PURPOSE_ACCEPTANCE)
    append_event(
        org_id=ctx.org_id,
        commitment_id=commitment.id,
        commitment_version=commitment.version,
        actor=ctx.as_actor(),
        event_type="ACCEPTANCE_LINK_RESENT" if resend else "ACCEPTANCE_LINK_SENT",
        message=recipient["email"],
    )
    db.session.commit()

    _notify(commitment, recipient, TEMPLATE_ACCEPTANCE_REQUEST, url)
    return url
